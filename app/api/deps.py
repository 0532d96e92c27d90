# app/api/deps.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Generator, Any, Set
import logging

from fastapi import Header, HTTPException, Request
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db import session as db_session
from app.services.mpesa_client import MpesaClient

logger = logging.getLogger(__name__)


# =========================================================
# DB (per request)
# =========================================================
def get_db() -> Generator[Session, None, None]:
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =========================================================
# AUTH HELPERS
# =========================================================
@dataclass
class Principal:
    """Caller identity as issued by the auth service; nothing is looked up."""
    id: str
    name: Optional[str] = None
    is_admin: bool = False
    permissions: Set[str] = field(default_factory=set)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _decode_token(raw_token: str) -> dict:
    try:
        return jwt.decode(raw_token,
                          settings.JWT_SECRET,
                          algorithms=[settings.JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def current_user(authorization: Optional[str] = Header(None)) -> Principal:
    raw = _extract_bearer(authorization)
    if not raw:
        raise HTTPException(status_code=401, detail="Missing token")

    payload = _decode_token(raw)
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    perms = payload.get("permissions") or payload.get("perms") or []
    return Principal(
        id=str(sub),
        name=payload.get("name"),
        is_admin=bool(payload.get("is_admin", False)),
        permissions={str(p) for p in perms if p},
    )


def user_perm_codes(u: Any) -> Set[str]:
    codes: Set[str] = set()
    for p in (getattr(u, "permissions", None) or []):
        code = p if isinstance(p, str) else getattr(p, "code", None)
        if code:
            codes.add(code)
    return codes


def require_perm(u: Any, perm: str) -> None:
    if bool(getattr(u, "is_admin", False)) is True:
        return
    if perm not in user_perm_codes(u):
        raise HTTPException(status_code=403,
                            detail=f"Forbidden: missing {perm}")


# =========================================================
# M-PESA
# =========================================================
def get_mpesa_client(request: Request) -> MpesaClient:
    client = getattr(request.app.state, "mpesa_client", None)
    if client is None:
        raise HTTPException(status_code=503,
                            detail="M-Pesa client not configured")
    return client


def client_ip(request: Request) -> Optional[str]:
    fwd = request.headers.get("X-Forwarded-For")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else None


def callback_source_allowed(request: Request) -> Optional[str]:
    """Gateway callbacks are unauthenticated; optionally pin them to known IPs."""
    ip = client_ip(request)
    allowed = settings.MPESA_CALLBACK_ALLOWED_IPS
    if allowed and ip not in allowed:
        logger.warning("M-Pesa callback from %s rejected (not allow-listed)",
                       ip)
        raise HTTPException(status_code=403, detail="Forbidden")
    return ip
