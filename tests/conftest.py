import os
import tempfile
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

# Point the app at a throwaway SQLite file before anything imports settings
TEST_DB_PATH = os.path.join(tempfile.gettempdir(),
                            f"hospital_ledger_test_{os.getpid()}.db")
os.environ["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALG"] = "HS256"
os.environ["MPESA_SHORTCODE"] = "174379"
os.environ["MPESA_PASSKEY"] = "test-passkey"
os.environ["MPESA_CALLBACK_URL"] = "https://ledger.example.com/api/mpesa"
os.environ["MPESA_CALLBACK_ALLOWED_IPS"] = ""
os.environ["MPESA_VALIDATE_BILL_REF"] = "false"

from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402

from app.api.deps import get_mpesa_client  # noqa: E402
from app.core.config import settings  # noqa: E402
from app.db import session as db_session  # noqa: E402
from app.db.base import Base, import_models  # noqa: E402
from app.db.init_db import LEDGER_PERMISSIONS  # noqa: E402
from app.main import app  # noqa: E402
from app.services import invoice_ledger  # noqa: E402
from app.services.mpesa_client import MpesaClient  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from empty tables."""
    import_models()
    Base.metadata.drop_all(bind=db_session.engine)
    Base.metadata.create_all(bind=db_session.engine)
    yield
    db_session.engine.dispose()


@pytest.fixture
def db():
    s = db_session.SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def make_invoice(db):
    """Single-line invoice, zero tax, so total_amount == `total`."""

    def _make(total="100.00", patient_id="P-001", **kw):
        return invoice_ledger.create_invoice(
            db,
            patient_id=patient_id,
            items=[{
                "item_type": "consultation",
                "description": "General consultation",
                "quantity": 1,
                "unit_price": Decimal(str(total)),
            }],
            actor="cashier-1",
            tax_rate=0,
            **kw,
        )

    return _make


def make_token(sub="cashier-1", permissions=None, is_admin=False):
    return jwt.encode(
        {
            "sub": sub,
            "permissions": list(permissions or []),
            "is_admin": is_admin,
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALG,
    )


@pytest.fixture
def bearer():
    """bearer(permissions=[...], is_admin=False) -> request headers"""

    def _bearer(permissions=None, is_admin=False):
        token = make_token(permissions=permissions, is_admin=is_admin)
        return {"Authorization": f"Bearer {token}"}

    return _bearer


@pytest.fixture
def auth_headers(bearer):
    return bearer(LEDGER_PERMISSIONS)


@pytest.fixture
def fake_mpesa():
    client = MagicMock(spec=MpesaClient)
    client.stk_push.return_value = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }
    return client


@pytest.fixture
def client(fake_mpesa):
    app.dependency_overrides[get_mpesa_client] = lambda: fake_mpesa
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def pytest_sessionfinish(session, exitstatus):
    db_session.engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)
