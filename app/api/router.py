# app/api/router.py
from fastapi import APIRouter
from app.api import (
    routes_billing,
    routes_mpesa,
    routes_mpesa_callbacks,
)

api_router = APIRouter()

# ---- Billing (invoices, payments, reports)
api_router.include_router(routes_billing.router)

# ---- M-Pesa (staff side)
api_router.include_router(routes_mpesa.router)

# ---- M-Pesa callbacks (public, called by Safaricom)
api_router.include_router(routes_mpesa_callbacks.router)
