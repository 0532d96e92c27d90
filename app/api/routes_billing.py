# FILE: app/api/routes_billing.py
from __future__ import annotations

from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import Principal, current_user, get_db, require_perm
from app.api.response import ok
from app.models.billing import InvoiceStatus
from app.schemas.billing import (
    FinancialSummaryOut,
    InvoiceCancelIn,
    InvoiceCreate,
    InvoiceListOut,
    InvoiceOut,
    PaymentCreate,
    PaymentOut,
)
from app.services import invoice_ledger as ledger

router = APIRouter(prefix="/billing", tags=["Billing"])


def _day_start(d: Optional[date]) -> Optional[datetime]:
    return datetime.combine(d, time.min) if d else None


def _day_end(d: Optional[date]) -> Optional[datetime]:
    return datetime.combine(d, time.max) if d else None


@router.post("/invoices")
def create_invoice(
        inp: InvoiceCreate,
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "billing.create")
    inv = ledger.create_invoice(
        db,
        patient_id=inp.patient_id,
        visit_id=inp.visit_id,
        items=inp.items,
        discount=inp.discount,
        notes=inp.notes,
        actor=user.id,
    )
    inv = ledger.get_invoice(db, inv.id)
    return ok(InvoiceOut.model_validate(inv), status_code=201)


@router.get("/invoices")
def list_invoices(
        patient_id: Optional[str] = Query(None),
        status: Optional[InvoiceStatus] = Query(None),
        date_from: Optional[date] = Query(None),
        date_to: Optional[date] = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "billing.view")
    rows, meta = ledger.list_invoices(
        db,
        patient_id=patient_id,
        status=status.value if status else None,
        start=_day_start(date_from),
        end=_day_end(date_to),
        page=page,
        limit=limit,
    )
    return ok([InvoiceListOut.model_validate(r) for r in rows], meta=meta)


@router.get("/invoices/by-number/{invoice_number}")
def get_invoice_by_number(
        invoice_number: str,
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "billing.view")
    inv = ledger.get_invoice_by_number(db, invoice_number)
    return ok(InvoiceOut.model_validate(inv))


@router.get("/invoices/{invoice_id}")
def get_invoice(
        invoice_id: int,
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "billing.view")
    return ok(InvoiceOut.model_validate(ledger.get_invoice(db, invoice_id)))


@router.post("/invoices/{invoice_id}/cancel")
def cancel_invoice(
        invoice_id: int,
        inp: InvoiceCancelIn,
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "billing.cancel")
    ledger.cancel_invoice(db,
                          invoice_id=invoice_id,
                          reason=inp.reason,
                          actor=user.id)
    return ok(InvoiceOut.model_validate(ledger.get_invoice(db, invoice_id)))


@router.get("/invoices/{invoice_id}/payments")
def list_invoice_payments(
        invoice_id: int,
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "billing.view")
    rows = ledger.list_invoice_payments(db, invoice_id)
    return ok([PaymentOut.model_validate(p) for p in rows])


@router.post("/payments")
def record_payment(
        inp: PaymentCreate,
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "billing.payments.create")
    pay = ledger.apply_payment(
        db,
        invoice_id=inp.invoice_id,
        amount=inp.amount,
        method=inp.method.value,
        reference=inp.reference,
        notes=inp.notes,
        actor=user.id,
    )
    inv = ledger.get_invoice(db, inp.invoice_id)
    return ok(
        {
            "payment": PaymentOut.model_validate(pay),
            "invoice": InvoiceListOut.model_validate(inv),
        },
        status_code=201,
    )


@router.get("/summary")
def financial_summary(
        date_from: Optional[date] = Query(None),
        date_to: Optional[date] = Query(None),
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "billing.view")
    today = date.today()
    start = _day_start(date_from or today.replace(day=1))
    end = _day_end(date_to or today)
    data = ledger.financial_summary(db, start=start, end=end)
    return ok(FinancialSummaryOut(**data), meta={"start": start, "end": end})
