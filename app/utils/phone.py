# FILE: app/utils/phone.py
from __future__ import annotations

import re

from app.core.config import settings

_KE_MOBILE = re.compile(r"^(?:\+?254|0)[17]\d{8}$")


def is_valid_msisdn(phone: str) -> bool:
    """
    Kenyan mobile numbers as accepted at the counter:
    0712345678 / +254712345678 / 254712345678 (also 01xx ranges).
    """
    if not phone:
        return False
    return bool(_KE_MOBILE.fullmatch(re.sub(r"[\s-]", "", phone.strip())))


def normalize_msisdn(phone: str, country_code: str | None = None) -> str:
    """
    Canonical international format without '+', e.g. "0712 345 678" ->
    "254712345678". The gateway rejects anything else.
    """
    cc = country_code or settings.MPESA_DEFAULT_COUNTRY_CODE
    cleaned = re.sub(r"\D", "", phone or "")
    if not cleaned:
        return ""
    if cleaned.startswith("0"):
        return cc + cleaned[1:]
    if cleaned.startswith(cc):
        return cleaned
    return cc + cleaned
