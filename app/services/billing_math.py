# app/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict

ZERO = Decimal("0.00")


def D(x) -> Decimal:
    """Safe Decimal conversion (str() avoids float binary issues)."""
    if x is None:
        return Decimal("0")
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def money2(x) -> Decimal:
    return D(x).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def compute_line_amounts(qty, unit_price, discount_amount) -> Dict[str, Decimal]:
    """
    line_total = qty * unit_price
    net_amount = max(line_total - discount, 0)
    Caller rejects negative inputs before getting here.
    """
    qty = D(qty)
    unit_price = D(unit_price)
    discount_amount = D(discount_amount)

    line_total = qty * unit_price
    if discount_amount > line_total:
        discount_amount = line_total
    net_amount = line_total - discount_amount

    return {
        "line_total": money2(line_total),
        "discount_amount": money2(discount_amount),
        "net_amount": money2(net_amount),
    }


def compute_tax(subtotal, rate_percent) -> Decimal:
    return money2(D(subtotal) * D(rate_percent) / Decimal("100"))


def split_payment(total, paid, amount) -> Dict[str, Decimal]:
    """
    Apply `amount` on top of `paid` for an invoice of `total`.

    paid never exceeds total; the remainder is reported as overpaid so that
    paid + balance == total always holds.
    """
    total = money2(total)
    raw_paid = money2(D(paid) + D(amount))
    new_paid = min(raw_paid, total)
    return {
        "paid": new_paid,
        "balance": money2(total - new_paid),
        "overpaid": money2(raw_paid - new_paid),
    }
