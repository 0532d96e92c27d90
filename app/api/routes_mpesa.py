# FILE: app/api/routes_mpesa.py
from __future__ import annotations

from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import (
    Principal,
    current_user,
    get_db,
    get_mpesa_client,
    require_perm,
)
from app.api.response import ok
from app.models.gateway import GatewayTxnStatus
from app.schemas.billing import PaymentOut
from app.schemas.mpesa import (
    GatewayTransactionOut,
    ManualAllocateIn,
    PushRequestOut,
    RegisterUrlsIn,
    StkPushIn,
    TransactionStatisticsOut,
)
from app.services import allocation
from app.services.mpesa_client import MpesaClient
from app.services.mpesa_push import (
    initiate_push,
    list_stale_push_requests,
    query_push_status,
)

router = APIRouter(prefix="/mpesa", tags=["M-Pesa"])


@router.post("/stk-push")
def stk_push(
        inp: StkPushIn,
        db: Session = Depends(get_db),
        client: MpesaClient = Depends(get_mpesa_client),
        user: Principal = Depends(current_user),
):
    require_perm(user, "mpesa.write")
    req = initiate_push(
        db,
        client,
        phone=inp.phone_number,
        amount=inp.amount,
        invoice_number=inp.invoice_number,
        account_reference=inp.account_reference,
        description=inp.description,
        actor=user.id,
    )
    return ok(PushRequestOut.model_validate(req), status_code=201)


@router.get("/stk-status/{checkout_request_id}")
def stk_status(
        checkout_request_id: str,
        db: Session = Depends(get_db),
        client: MpesaClient = Depends(get_mpesa_client),
        user: Principal = Depends(current_user),
):
    require_perm(user, "mpesa.read")
    res = query_push_status(db, client, checkout_request_id)
    return ok({
        "request": PushRequestOut.model_validate(res["request"]),
        "gateway": res["gateway"],
        "in_progress": res["in_progress"],
    })


@router.get("/stk-requests/stale")
def stale_push_requests(
        older_than_minutes: Optional[int] = Query(None, ge=0),
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "mpesa.read")
    rows = list_stale_push_requests(db, older_than_minutes=older_than_minutes)
    return ok([PushRequestOut.model_validate(r) for r in rows])


@router.get("/transactions")
def list_transactions(
        status: Optional[GatewayTxnStatus] = Query(None),
        date_from: Optional[date] = Query(None),
        date_to: Optional[date] = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "mpesa.read")
    rows, meta = allocation.list_transactions(
        db,
        status=status.value if status else None,
        start=datetime.combine(date_from, time.min) if date_from else None,
        end=datetime.combine(date_to, time.max) if date_to else None,
        page=page,
        limit=limit,
    )
    return ok([GatewayTransactionOut.model_validate(r) for r in rows],
              meta=meta)


@router.get("/transactions/unallocated")
def list_unallocated(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "mpesa.read")
    rows, meta = allocation.list_unallocated(db, page=page, limit=limit)
    return ok([GatewayTransactionOut.model_validate(r) for r in rows],
              meta=meta)


@router.post("/transactions/{transaction_id}/allocate")
def allocate_transaction(
        transaction_id: int,
        inp: ManualAllocateIn,
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "mpesa.allocate")
    pay = allocation.manual_allocate(
        db,
        transaction_id=transaction_id,
        invoice_id=inp.invoice_id,
        actor=user.id,
    )
    return ok(PaymentOut.model_validate(pay))


@router.get("/statistics")
def statistics(
        date_from: Optional[date] = Query(None),
        date_to: Optional[date] = Query(None),
        db: Session = Depends(get_db),
        user: Principal = Depends(current_user),
):
    require_perm(user, "mpesa.read")
    data = allocation.transaction_statistics(
        db,
        start=datetime.combine(date_from, time.min) if date_from else None,
        end=datetime.combine(date_to, time.max) if date_to else None,
    )
    return ok(TransactionStatisticsOut(**data))


@router.post("/register-urls")
def register_urls(
        inp: Optional[RegisterUrlsIn] = Body(default=None),
        client: MpesaClient = Depends(get_mpesa_client),
        user: Principal = Depends(current_user),
):
    require_perm(user, "mpesa.admin")
    inp = inp or RegisterUrlsIn()
    data = client.register_c2b_urls(
        confirmation_url=inp.confirmation_url,
        validation_url=inp.validation_url,
        response_type=inp.response_type,
    )
    return ok(data)
