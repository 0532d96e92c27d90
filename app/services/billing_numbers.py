# FILE: app/services/billing_numbers.py
from __future__ import annotations

import secrets
from datetime import datetime
from sqlalchemy.orm import Session

from app.models.billing import NumberSeries, NumberDocType, NumberResetPeriod


def _period_key(now: datetime, reset: NumberResetPeriod) -> str | None:
    if reset == NumberResetPeriod.NONE:
        return None
    if reset == NumberResetPeriod.YEAR:
        return now.strftime("%Y")
    if reset == NumberResetPeriod.MONTH:
        return now.strftime("%Y%m")
    return None


def next_number(
    db: Session,
    *,
    doc_type: NumberDocType,
    prefix: str,
    reset_period: NumberResetPeriod = NumberResetPeriod.MONTH,
    padding: int = 4,
    now: datetime | None = None,
) -> str:
    """
    Sequential document number from a locked counter row.

    MONTH reset with prefix "INV-" -> INV-202501-0001, INV-202501-0002, ...
    Must run inside the caller's transaction; the row lock is released on
    commit/rollback. Uniqueness is still enforced by the target column.
    """
    now = now or datetime.now()
    key = _period_key(now, reset_period)

    row = (db.query(NumberSeries).filter(
        NumberSeries.doc_type == doc_type.value).filter(
            NumberSeries.prefix == (prefix or "")).filter(
                NumberSeries.reset_period ==
                reset_period.value).with_for_update().first())

    if not row:
        row = NumberSeries(
            doc_type=doc_type.value,
            prefix=prefix or "",
            reset_period=reset_period.value,
            padding=padding,
            next_number=1,
            last_period_key=key,
            is_active=True,
        )
        db.add(row)
        db.flush()

    # reset if period changed
    if reset_period != NumberResetPeriod.NONE and row.last_period_key != key:
        row.last_period_key = key
        row.next_number = 1

    n = int(row.next_number or 1)
    row.next_number = n + 1
    db.flush()

    body = str(n).zfill(int(row.padding or padding))
    if key:
        return f"{row.prefix}{key}-{body}"
    return f"{row.prefix}{body}"


def make_payment_number(now: datetime | None = None) -> str:
    """
    PAY-20250114093012-9F3A1C07. Random suffix, no counter row, so
    concurrent payments never queue on numbering.
    """
    now = now or datetime.now()
    return f"PAY-{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4).upper()}"
