# FILE: app/schemas/billing.py
from __future__ import annotations

from typing import Optional, List, Dict
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from decimal import Decimal

from app.models.billing import ItemType, PaymentMethod


class InvoiceItemIn(BaseModel):
    item_type: ItemType = ItemType.OTHER
    item_ref: Optional[str] = None
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    discount: Decimal = Decimal("0")


class InvoiceCreate(BaseModel):
    patient_id: str
    visit_id: Optional[str] = None
    items: List[InvoiceItemIn]
    discount: Decimal = Decimal("0")
    notes: Optional[str] = None

    @field_validator("items")
    @classmethod
    def _items(cls, v):
        if not v:
            raise ValueError("at least one item is required")
        return v


class InvoiceCancelIn(BaseModel):
    reason: str = Field(min_length=1, max_length=255)


class PaymentCreate(BaseModel):
    invoice_id: int
    amount: Decimal
    method: PaymentMethod = PaymentMethod.CASH
    reference: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _amount(cls, v):
        if Decimal(str(v)) < Decimal("0.01"):
            raise ValueError("amount must be at least 0.01")
        return Decimal(str(v))


class InvoiceItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    seq: int
    item_type: str
    item_ref: Optional[str] = None
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal
    line_total: Decimal


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_number: str
    invoice_id: int
    amount: Decimal
    method: str
    reference_no: Optional[str] = None
    notes: Optional[str] = None
    gateway_transaction_id: Optional[int] = None
    received_by: str
    paid_at: Optional[datetime] = None


class InvoiceListOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    patient_id: str
    visit_id: Optional[str] = None
    status: str
    subtotal: Decimal
    tax_total: Decimal
    discount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    overpaid_amount: Decimal
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


class InvoiceOut(InvoiceListOut):
    notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    items: List[InvoiceItemOut] = []
    payments: List[PaymentOut] = []


class FinancialSummaryOut(BaseModel):
    total_invoiced: Decimal
    total_collected: Decimal
    total_outstanding: Decimal
    payments_by_method: Dict[str, Decimal]
    invoice_count: int
    payment_count: int
