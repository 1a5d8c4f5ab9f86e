# clinic_billing/services/billing_numbers.py
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_billing.core.config import settings
from clinic_billing.models.billing import InvoiceNumberSeries

logger = logging.getLogger(__name__)


def format_number(prefix: str, n: int, padding: int) -> str:
    return f"{prefix}{str(int(n)).zfill(int(padding))}"


def _locked_series(db: Session, prefix: str) -> Optional[InvoiceNumberSeries]:
    return (db.query(InvoiceNumberSeries).filter(
        InvoiceNumberSeries.prefix == prefix).with_for_update().populate_existing(
        ).first())


def next_invoice_number(
    db: Session,
    *,
    prefix: Optional[str] = None,
    padding: Optional[int] = None,
) -> str:
    """
    Hand out the next number of the series, e.g. INV-00000001.

    The series row is read FOR UPDATE so two transactions serialize on it;
    the caller still inserts under the unique invoice_number constraint and
    retries on collision (see invoice_ledger.create_invoice).
    """
    prefix = prefix if prefix is not None else settings.INVOICE_NUMBER_PREFIX
    padding = padding or settings.INVOICE_NUMBER_PADDING

    row = _locked_series(db, prefix)
    if not row:
        # first use of this prefix: another request may create it too
        try:
            with db.begin_nested():
                db.add(
                    InvoiceNumberSeries(prefix=prefix,
                                        padding=padding,
                                        next_number=1))
        except IntegrityError:
            logger.info("Invoice series %s created concurrently", prefix)
        row = _locked_series(db, prefix)

    n = int(row.next_number or 1)
    row.next_number = n + 1
    db.flush()

    return format_number(prefix, n, int(row.padding or padding))
