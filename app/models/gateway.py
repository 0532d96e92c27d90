# FILE: app/models/gateway.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Index,
    ForeignKey,
    JSON,
)
from sqlalchemy.orm import relationship

from app.db.base import Base


class GatewayTxnStatus(str, enum.Enum):
    PENDING = "pending"  # received, not (yet) matched to an invoice
    ALLOCATED = "allocated"
    FAILED = "failed"


class PushRequestStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GatewayTransaction(Base):
    """
    Money that already moved on M-Pesa (C2B confirmation or a successful
    STK push). `transaction_id` is the M-Pesa receipt (TransID) and carries
    the unique constraint that makes ingestion idempotent.
    """

    __tablename__ = "mpesa_transactions"
    __table_args__ = (
        Index("ix_mpesa_txn_status", "status"),
        Index("ix_mpesa_txn_bill_ref", "bill_ref_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(40), unique=True, nullable=False)

    # CustomerPayBillOnline | Pay Bill | ...
    transaction_type = Column(String(40), nullable=True)
    transaction_time = Column(String(20), nullable=True)  # YYYYMMDDHHMMSS as sent
    amount = Column(Numeric(12, 2), nullable=False)
    business_short_code = Column(String(20), nullable=True)

    # free text typed by the payer; expected to be an invoice number
    bill_ref_number = Column(String(100), nullable=True)
    invoice_number = Column(String(100), nullable=True)
    org_account_balance = Column(Numeric(14, 2), nullable=True)
    third_party_trans_id = Column(String(100), nullable=True)

    msisdn = Column(String(20), nullable=True)
    first_name = Column(String(100), nullable=True)
    middle_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)

    raw_payload = Column(JSON, nullable=True)

    status = Column(String(16),
                    nullable=False,
                    default=GatewayTxnStatus.PENDING.value)
    allocated_invoice_id = Column(Integer,
                                  ForeignKey("billing_invoices.id"),
                                  nullable=True)
    allocated_at = Column(DateTime, nullable=True)
    allocated_by = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    allocated_invoice = relationship("Invoice")


class PushPaymentRequest(Base):
    """STK push prompt sent to a payer's phone; resolved once by its callback."""

    __tablename__ = "mpesa_stk_requests"
    __table_args__ = (Index("ix_mpesa_stk_status", "status"), )

    id = Column(Integer, primary_key=True, index=True)
    checkout_request_id = Column(String(64), unique=True, nullable=False)
    merchant_request_id = Column(String(64), nullable=True)

    phone_number = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    account_reference = Column(String(40), nullable=False)
    description = Column(String(100), nullable=True)

    status = Column(String(16),
                    nullable=False,
                    default=PushRequestStatus.PENDING.value)
    result_code = Column(String(10), nullable=True)
    result_desc = Column(String(255), nullable=True)
    callback_data = Column(JSON, nullable=True)

    # receipt of the GatewayTransaction booked from the callback
    mpesa_receipt_number = Column(String(40), nullable=True)

    requested_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )
