# clinic_billing/services/exoneration.py
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from clinic_billing.core.errors import (
    AlreadyExoneratedError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from clinic_billing.models.billing import (
    Exoneration,
    Invoice,
    InvoiceStatus,
)
from clinic_billing.services.billing_math import ZERO, money2
from clinic_billing.services.invoice_ledger import _lock_invoice, _status_value, write_tx

logger = logging.getLogger(__name__)


def exonerate_invoice(
    db: Session,
    invoice_id: int,
    *,
    reason: str,
    authorized_by: Optional[int],
) -> Exoneration:
    """
    Write off the invoice's remaining balance, once.

    exonerated_amount = pending_amount at this moment, so partial payments
    already collected stay on the books. The exoneration row and the
    EXONERATED status commit together or not at all.
    """
    reason = (reason or "").strip()
    try:
        return _exonerate(db, invoice_id, reason, authorized_by)
    except IntegrityError as e:
        # unique invoice_id on exonerations: a parallel request won
        raise AlreadyExoneratedError(
            "Invoice already has an exoneration",
            details={"invoice_id": invoice_id}) from e


def _exonerate(db: Session, invoice_id: int, reason: str,
               authorized_by: Optional[int]) -> Exoneration:
    with write_tx(db, "exonerate_invoice", invoice_id):
        inv = _lock_invoice(db, invoice_id)

        existing = (db.query(Exoneration).filter(
            Exoneration.invoice_id == inv.id).first())
        if existing is not None:
            raise AlreadyExoneratedError(
                f"Invoice {inv.invoice_number} already has an exoneration",
                details={
                    "invoice_id": inv.id,
                    "exoneration_id": existing.id
                })
        if inv.is_terminal:
            raise InvalidStateError(
                f"Invoice {inv.invoice_number} cannot be exonerated "
                f"(status={_status_value(inv.status)})",
                details={
                    "invoice_id": inv.id,
                    "status": _status_value(inv.status)
                })
        if not reason:
            raise ValidationError("Exoneration reason is required")

        ex = Exoneration(
            invoice_id=inv.id,
            original_amount=money2(inv.total_amount),
            exonerated_amount=money2(inv.pending_amount),
            reason=reason,
            authorized_by=authorized_by,
            is_printed=False,
        )
        db.add(ex)
        inv.status = InvoiceStatus.EXONERATED
        inv.is_overdue = False

    logger.info("Invoice %s exonerated amount=%s by=%s", inv.invoice_number,
                ex.exonerated_amount, authorized_by)
    return ex


def get_exoneration(db: Session, exoneration_id: int) -> Exoneration:
    ex = db.get(Exoneration, int(exoneration_id))
    if not ex:
        raise NotFoundError("Exoneration", exoneration_id)
    return ex


def mark_exoneration_printed(db: Session, exoneration_id: int) -> Exoneration:
    ex = get_exoneration(db, exoneration_id)
    if not ex.is_printed:
        ex.is_printed = True
        ex.printed_at = datetime.utcnow()
        db.commit()
        db.refresh(ex)
    return ex


def list_exonerations(
    db: Session,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    patient_id: Optional[int] = None,
    include_printed: bool = False,
) -> Dict[str, Any]:
    q = db.query(Exoneration).options(joinedload(Exoneration.invoice))

    if start_date:
        q = q.filter(Exoneration.created_at >= datetime.combine(
            start_date, datetime.min.time()))
    if end_date:
        q = q.filter(Exoneration.created_at <= datetime.combine(
            end_date, datetime.max.time()))
    if patient_id:
        q = q.join(Invoice, Invoice.id == Exoneration.invoice_id).filter(
            Invoice.patient_id == int(patient_id))
    if not include_printed:
        q = q.filter(Exoneration.is_printed.is_(False))

    rows: List[Exoneration] = q.order_by(Exoneration.created_at.desc(),
                                         Exoneration.id.desc()).all()

    total: Decimal = ZERO
    printed = 0
    for ex in rows:
        total += money2(ex.exonerated_amount)
        if ex.is_printed:
            printed += 1

    return {
        "exonerations": rows,
        "summary": {
            "total_exonerated": money2(total),
            "total_count": len(rows),
            "printed_count": printed,
            "pending_print_count": len(rows) - printed,
        },
    }
