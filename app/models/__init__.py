# app/models/__init__.py
from .billing import (
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    ItemType,
    NumberSeries,
    Payment,
    PaymentMethod,
)
from .gateway import (
    GatewayTransaction,
    GatewayTxnStatus,
    PushPaymentRequest,
    PushRequestStatus,
)
from .audit import AuditLog
from .error_log import ErrorLog

__all__ = [
    "Invoice",
    "InvoiceItem",
    "InvoiceStatus",
    "ItemType",
    "NumberSeries",
    "Payment",
    "PaymentMethod",
    "GatewayTransaction",
    "GatewayTxnStatus",
    "PushPaymentRequest",
    "PushRequestStatus",
    "AuditLog",
    "ErrorLog",
]
