# FILE: clinic_billing/api/routes_billing.py
from __future__ import annotations

from datetime import date
from math import ceil
from typing import Optional
import logging

from pydantic import ValidationError as PydanticValidationError
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinic_billing.api.deps import (
    CurrentUser,
    get_db,
    require_admin,
    require_billing_user,
)
from clinic_billing.api.response import ok
from clinic_billing.core.errors import ValidationError
from clinic_billing.models.billing import InvoiceStatus
from clinic_billing.schemas.billing import (
    AddItemIn,
    CancelIn,
    ExonerateIn,
    ExonerationOut,
    ExonerationResultOut,
    InvoiceCreate,
    InvoiceFilter,
    InvoiceOut,
    MarkOverdueIn,
    PaymentIn,
    PaymentOut,
    PaymentResultOut,
    SnapshotRefreshIn,
)
from clinic_billing.services import exoneration as exoneration_svc
from clinic_billing.services import invoice_ledger as ledger
from clinic_billing.services.invoice_query import list_invoices

router = APIRouter()
logger = logging.getLogger(__name__)


def _invoice_out(inv) -> InvoiceOut:
    return InvoiceOut.model_validate(inv)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------
@router.post("/invoices")
def create_invoice(
        payload: InvoiceCreate,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    breakdown = None
    if payload.apply_insurance:
        breakdown = ledger.preview_breakdown(
            db,
            patient_id=payload.patient_id,
            policy_id=payload.insurance_policy_id,
            lines=payload.items,
        )
        if breakdown.policy_id is None:
            # patient has no policy: bill the plain line total
            breakdown = None

    inv = ledger.create_invoice(
        db,
        patient_id=payload.patient_id,
        lines=payload.items,
        actor_id=user.id,
        doctor_id=payload.doctor_id,
        due_date=payload.due_date,
        notes=payload.notes,
        breakdown=breakdown,
    )
    return ok(_invoice_out(inv), status_code=201)


@router.get("/invoices")
def get_invoices(
        status: Optional[InvoiceStatus] = Query(None),
        patient_id: Optional[int] = Query(None),
        doctor_id: Optional[int] = Query(None),
        date_from: Optional[date] = Query(None),
        date_to: Optional[date] = Query(None),
        is_overdue: Optional[bool] = Query(None),
        search: Optional[str] = Query(None),
        page: int = Query(1),
        per_page: int = Query(20),
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    raw = {
        "status": status,
        "patient_id": patient_id,
        "doctor_id": doctor_id,
        "date_from": date_from,
        "date_to": date_to,
        "is_overdue": is_overdue,
        "search": search,
        "page": page,
        "per_page": per_page,
    }
    try:
        flt = InvoiceFilter.model_validate(
            {k: v
             for k, v in raw.items() if v is not None})
    except PydanticValidationError as e:
        raise ValidationError("Invalid invoice filter",
                              details=e.errors(include_url=False,
                                                include_context=False)) from e

    rows, total = list_invoices(db, flt)
    return ok(
        [_invoice_out(inv) for inv in rows],
        meta={
            "page": flt.page,
            "per_page": flt.per_page,
            "total": total,
            "pages": ceil(total / flt.per_page) if total else 0,
        },
    )


@router.get("/invoices/{invoice_id}")
def get_invoice(
        invoice_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    return ok(_invoice_out(ledger.get_invoice(db, invoice_id)))


@router.delete("/invoices/{invoice_id}")
def delete_invoice(
        invoice_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_admin),
):
    ledger.delete_invoice(db, invoice_id, actor_id=user.id)
    return ok({"id": invoice_id, "deleted": True})


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------
@router.post("/invoices/{invoice_id}/items")
def add_item(
        invoice_id: int,
        payload: AddItemIn,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    inv = ledger.add_line_item(
        db,
        invoice_id,
        service_id=payload.service_id,
        quantity=payload.quantity,
        notes=payload.notes,
        actor_id=user.id,
    )
    return ok(_invoice_out(inv))


@router.delete("/invoices/{invoice_id}/items/{item_id}")
def remove_item(
        invoice_id: int,
        item_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    inv = ledger.remove_line_item(db, invoice_id, item_id, actor_id=user.id)
    return ok(_invoice_out(inv))


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------
@router.post("/invoices/{invoice_id}/payments")
def add_payment(
        invoice_id: int,
        payload: PaymentIn,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    inv, pay = ledger.run_with_retry(
        db,
        lambda: ledger.record_payment(
            db,
            invoice_id,
            amount=payload.amount,
            method=payload.method,
            notes=payload.notes,
            actor_id=user.id,
        ),
    )
    out = PaymentResultOut(invoice=_invoice_out(inv),
                           payment=PaymentOut.model_validate(pay))
    return ok(out, status_code=201)


@router.get("/invoices/{invoice_id}/payments")
def get_payments(
        invoice_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    rows = ledger.list_payments(db, invoice_id)
    return ok([PaymentOut.model_validate(p) for p in rows])


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------
@router.post("/invoices/{invoice_id}/exonerate")
def exonerate(
        invoice_id: int,
        payload: ExonerateIn,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    ex = exoneration_svc.exonerate_invoice(db,
                                           invoice_id,
                                           reason=payload.reason,
                                           authorized_by=user.id)
    out = ExonerationResultOut(
        invoice=_invoice_out(ledger.get_invoice(db, invoice_id)),
        exoneration=ExonerationOut.model_validate(ex),
    )
    return ok(out, status_code=201)


@router.post("/invoices/{invoice_id}/cancel")
def cancel(
        invoice_id: int,
        payload: CancelIn,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    inv = ledger.cancel_invoice(db,
                                invoice_id,
                                reason=payload.reason,
                                actor_id=user.id)
    return ok(_invoice_out(inv))


@router.post("/invoices/{invoice_id}/mark-overdue")
def mark_overdue(
        invoice_id: int,
        payload: MarkOverdueIn,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    inv = ledger.mark_overdue(db,
                              invoice_id,
                              as_of=payload.as_of,
                              force=payload.force)
    return ok(_invoice_out(inv))


@router.post("/invoices/{invoice_id}/insurance-snapshot")
def refresh_snapshot(
        invoice_id: int,
        payload: SnapshotRefreshIn,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    inv = ledger.refresh_insurance_snapshot(
        db, invoice_id, policy_id=payload.insurance_policy_id)
    return ok(_invoice_out(inv))


# ---------------------------------------------------------------------------
# Exonerations
# ---------------------------------------------------------------------------
@router.get("/exonerations")
def get_exonerations(
        start_date: Optional[date] = Query(None),
        end_date: Optional[date] = Query(None),
        patient_id: Optional[int] = Query(None),
        include_printed: bool = Query(False),
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    if start_date and end_date and start_date > end_date:
        raise ValidationError("start_date must be on or before end_date")
    res = exoneration_svc.list_exonerations(
        db,
        start_date=start_date,
        end_date=end_date,
        patient_id=patient_id,
        include_printed=include_printed,
    )
    return ok({
        "exonerations": [
            ExonerationOut.model_validate(ex) for ex in res["exonerations"]
        ],
        "summary": res["summary"],
    })


@router.post("/exonerations/{exoneration_id}/mark-printed")
def mark_printed(
        exoneration_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    ex = exoneration_svc.mark_exoneration_printed(db, exoneration_id)
    return ok(ExonerationOut.model_validate(ex))
