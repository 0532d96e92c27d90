# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All ledger tables (invoices, payments, M-Pesa, audit) inherit from this."""
    pass


def import_models() -> None:
    # Import all models so metadata is complete for create_all()
    from app.models import (  # noqa: F401
        audit,
        billing,
        error_log,
        gateway,
    )
