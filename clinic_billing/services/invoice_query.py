# clinic_billing/services/invoice_query.py
from __future__ import annotations

from datetime import datetime
from typing import List, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from clinic_billing.models.billing import Invoice
from clinic_billing.models.patient import Patient
from clinic_billing.schemas.billing import InvoiceFilter


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace(
        "_", "\\_")


def _apply_filter(q, flt: InvoiceFilter):
    if flt.status is not None:
        q = q.filter(Invoice.status == flt.status)
    if flt.patient_id:
        q = q.filter(Invoice.patient_id == flt.patient_id)
    if flt.doctor_id:
        q = q.filter(Invoice.doctor_id == flt.doctor_id)
    if flt.is_overdue is not None:
        q = q.filter(Invoice.is_overdue.is_(flt.is_overdue))
    if flt.date_from:
        q = q.filter(Invoice.created_at >= datetime.combine(
            flt.date_from, datetime.min.time()))
    if flt.date_to:
        q = q.filter(Invoice.created_at <= datetime.combine(
            flt.date_to, datetime.max.time()))
    if flt.search:
        term = f"%{_like_escape(flt.search)}%"
        q = q.join(Patient, Patient.id == Invoice.patient_id).filter(
            or_(
                Invoice.invoice_number.ilike(term, escape="\\"),
                Patient.name.ilike(term, escape="\\"),
                Patient.patient_number.ilike(term, escape="\\"),
            ))
    return q


def list_invoices(db: Session, flt: InvoiceFilter) -> Tuple[List[Invoice], int]:
    """Read-only; returns (page rows, total matching)."""
    total = _apply_filter(
        db.query(func.count(Invoice.id)).select_from(Invoice), flt).scalar() or 0

    q = _apply_filter(db.query(Invoice), flt).options(
        selectinload(Invoice.items),
        selectinload(Invoice.payments),
        selectinload(Invoice.exoneration),
    )
    rows = (q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).offset(
        (flt.page - 1) * flt.per_page).limit(flt.per_page).all())
    return rows, int(total)
