# FILE: app/models/billing.py
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    DateTime,
    Index,
    ForeignKey,
    UniqueConstraint,
    Text,
)
from sqlalchemy.orm import relationship

from app.db.base import Base


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Statuses that refuse any further money
CLOSED_STATUSES = {
    InvoiceStatus.PAID.value,
    InvoiceStatus.CANCELLED.value,
    InvoiceStatus.REFUNDED.value,
}


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    MOBILE_MONEY = "mobile_money"
    CARD = "card"
    INSURANCE = "insurance"
    BANK_TRANSFER = "bank_transfer"


class ItemType(str, enum.Enum):
    CONSULTATION = "consultation"
    PROCEDURE = "procedure"
    LAB_TEST = "lab_test"
    DRUG = "drug"
    OTHER = "other"


class NumberDocType(str, enum.Enum):
    INVOICE = "invoice"


class NumberResetPeriod(str, enum.Enum):
    NONE = "none"
    YEAR = "year"
    MONTH = "month"


class Invoice(Base):
    """
    One billable encounter.

    Money columns obey:
      paid_amount + balance_amount == total_amount
      balance_amount >= 0
    Anything paid beyond total lands in overpaid_amount.

    `version` is bumped on every UPDATE; a writer holding a stale copy gets
    StaleDataError instead of silently overwriting another payment.
    """

    __tablename__ = "billing_invoices"
    __table_args__ = (
        Index("ix_billing_invoices_patient", "patient_id"),
        Index("ix_billing_invoices_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # INV-202501-0001 etc. (also the M-Pesa account / bill reference)
    invoice_number = Column(String(32), unique=True, index=True, nullable=False)

    # external patient registry reference
    patient_id = Column(String(64), nullable=False)
    visit_id = Column(String(64), nullable=True)

    status = Column(String(16), nullable=False, default=InvoiceStatus.PENDING.value)

    # Totals (fixed at creation)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax_total = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # Running balance
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    balance_amount = Column(Numeric(12, 2), nullable=False, default=0)
    overpaid_amount = Column(Numeric(12, 2), nullable=False, default=0)

    notes = Column(Text, nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.seq",
    )
    payments = relationship(
        "Payment",
        back_populates="invoice",
        order_by="Payment.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_payable(self) -> bool:
        return (self.status or "") not in CLOSED_STATUSES

    def ledger_balanced(self) -> bool:
        paid = Decimal(str(self.paid_amount or 0))
        bal = Decimal(str(self.balance_amount or 0))
        total = Decimal(str(self.total_amount or 0))
        return paid + bal == total and bal >= 0


class InvoiceItem(Base):
    """Line snapshot taken at invoice creation; never edited afterwards."""

    __tablename__ = "billing_invoice_items"
    __table_args__ = (Index("ix_billing_items_invoice", "invoice_id"), )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    # S.no order for UI/print
    seq = Column(Integer, default=1)

    # consultation | procedure | lab_test | drug | other
    item_type = Column(String(32), nullable=False)
    item_ref = Column(String(64), nullable=True)

    description = Column(String(300), nullable=False)

    quantity = Column(Numeric(10, 2), default=1)
    unit_price = Column(Numeric(12, 2), default=0)
    discount_amount = Column(Numeric(12, 2), default=0)

    # qty * unit_price - discount_amount
    line_total = Column(Numeric(12, 2), default=0)

    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="items")


class Payment(Base):
    """
    Funds applied to exactly one invoice. Insert-only: a correction is a
    new row, never an edit.
    """

    __tablename__ = "billing_payments"
    __table_args__ = (Index("ix_billing_payments_invoice", "invoice_id"), )

    id = Column(Integer, primary_key=True, index=True)
    payment_number = Column(String(40), unique=True, index=True, nullable=False)

    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id"),
        nullable=False,
    )

    amount = Column(Numeric(12, 2), nullable=False)
    # cash | mobile_money | card | insurance | bank_transfer
    method = Column(String(32), nullable=False)
    reference_no = Column(String(100), nullable=True)
    notes = Column(String(255), nullable=True)

    # unique: one M-Pesa transaction can fund at most one payment
    gateway_transaction_id = Column(
        Integer,
        ForeignKey("mpesa_transactions.id"),
        nullable=True,
        unique=True,
    )

    received_by = Column(String(64), nullable=False)
    paid_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="payments")
    gateway_transaction = relationship("GatewayTransaction")


class NumberSeries(Base):
    """Counter row per document prefix; locked while the next number is taken."""

    __tablename__ = "billing_number_series"
    __table_args__ = (UniqueConstraint(
        "doc_type",
        "prefix",
        "reset_period",
        name="uq_billing_number_series",
    ), )

    id = Column(Integer, primary_key=True, index=True)
    doc_type = Column(String(20), nullable=False)
    prefix = Column(String(20), nullable=False, default="")
    reset_period = Column(String(10),
                          nullable=False,
                          default=NumberResetPeriod.MONTH.value)
    padding = Column(Integer, nullable=False, default=4)
    next_number = Column(Integer, nullable=False, default=1)
    last_period_key = Column(String(10), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
