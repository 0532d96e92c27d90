# FILE: app/schemas/mpesa.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from app.utils.phone import is_valid_msisdn


class StkPushIn(BaseModel):
    phone_number: str
    amount: Decimal
    invoice_number: Optional[str] = None
    account_reference: Optional[str] = None
    description: Optional[str] = None

    @field_validator("phone_number")
    @classmethod
    def _phone(cls, v):
        if not is_valid_msisdn(v):
            raise ValueError("Invalid Kenyan phone number")
        return v.strip()

    @field_validator("amount")
    @classmethod
    def _amount(cls, v):
        if Decimal(str(v)) < 1:
            raise ValueError("amount must be at least 1")
        return Decimal(str(v))


class PushRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    phone_number: str
    amount: Decimal
    account_reference: str
    description: Optional[str] = None
    status: str
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    requested_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GatewayTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: str
    transaction_type: Optional[str] = None
    transaction_time: Optional[str] = None
    amount: Decimal
    business_short_code: Optional[str] = None
    bill_ref_number: Optional[str] = None
    msisdn: Optional[str] = None
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    status: str
    allocated_invoice_id: Optional[int] = None
    allocated_at: Optional[datetime] = None
    allocated_by: Optional[str] = None
    created_at: Optional[datetime] = None


class ManualAllocateIn(BaseModel):
    invoice_id: int


class RegisterUrlsIn(BaseModel):
    confirmation_url: Optional[str] = None
    validation_url: Optional[str] = None
    response_type: str = "Completed"


class TransactionStatisticsOut(BaseModel):
    start: datetime
    end: datetime
    total_transactions: int
    total_amount: Decimal
    allocated_count: int
    allocated_amount: Decimal
    pending_count: int
    pending_amount: Decimal
