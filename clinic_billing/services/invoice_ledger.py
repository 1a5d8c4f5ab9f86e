# FILE: clinic_billing/services/invoice_ledger.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from clinic_billing.core.config import settings
from clinic_billing.core.errors import (
    BillingError,
    ConcurrencyConflictError,
    InvalidStateError,
    NotFoundError,
    OverpaymentError,
    ValidationError,
)
from clinic_billing.models.billing import (
    OPEN_STATUSES,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Payment,
)
from clinic_billing.models.patient import Patient
from clinic_billing.models.service import Service
from clinic_billing.services.billing_math import (
    ZERO,
    D,
    check_money_range,
    line_total,
    money2,
    parse_money,
    parse_quantity,
)
from clinic_billing.services.billing_numbers import next_invoice_number
from clinic_billing.services.coverage import (
    CoverageBreakdown,
    CoverageRequestLine,
    compute_breakdown,
    pick_policy_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# MySQL: 1205 lock wait timeout, 1213 deadlock
_LOCK_ERROR_CODES = {1205, 1213}


@dataclass(frozen=True)
class LineRequest:
    service_id: int
    quantity: int = 1
    notes: Optional[str] = None


def _status_value(x) -> str:
    if x is None:
        return ""
    if hasattr(x, "value"):
        return str(x.value).upper()
    return str(x).upper()


def _now() -> datetime:
    return datetime.utcnow()


def _is_lock_conflict(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    args = getattr(orig, "args", None) or ()
    if args and args[0] in _LOCK_ERROR_CODES:
        return True
    return "database is locked" in str(orig or exc).lower()


@contextmanager
def write_tx(db: Session, action: str, invoice_id: Optional[int] = None) -> Iterator[None]:
    """
    Commit the block as one unit or roll all of it back.

    Lost optimistic-version races and lock timeouts surface as
    ConcurrencyConflictError; everything else is re-raised untouched.
    """
    try:
        yield
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning("%s lost a concurrent update invoice_id=%s", action,
                       invoice_id)
        raise ConcurrencyConflictError(
            "Invoice was modified concurrently; retry with fresh state",
            details={"invoice_id": invoice_id}) from e
    except OperationalError as e:
        db.rollback()
        if _is_lock_conflict(e):
            logger.warning("%s hit a lock conflict invoice_id=%s", action,
                           invoice_id)
            raise ConcurrencyConflictError(
                "Invoice is locked by another transaction; retry",
                details={"invoice_id": invoice_id}) from e
        raise
    except BillingError as e:
        db.rollback()
        logger.warning("%s rejected invoice_id=%s: %s", action, invoice_id,
                       e.code)
        raise
    except Exception:
        db.rollback()
        raise


def run_with_retry(db: Session,
                   fn: Callable[[], T],
                   attempts: Optional[int] = None) -> T:
    """
    Re-run `fn` after a ConcurrencyConflictError. Each attempt re-reads the
    invoice, so the retry validates against fresh state (a lost payment race
    usually turns into OverpaymentError on the second pass).
    """
    attempts = max(1, int(attempts or settings.PAYMENT_RETRY_ATTEMPTS))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrencyConflictError:
            db.rollback()
            if attempt >= attempts:
                raise
            logger.info("Retrying after concurrency conflict (attempt %d/%d)",
                        attempt + 1, attempts)
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def get_invoice(db: Session, invoice_id: int) -> Invoice:
    inv = db.get(Invoice, int(invoice_id))
    if not inv:
        raise NotFoundError("Invoice", invoice_id)
    return inv


def _lock_invoice(db: Session, invoice_id: int) -> Invoice:
    """SELECT ... FOR UPDATE, overwriting whatever the identity map holds."""
    inv = (db.query(Invoice).filter(
        Invoice.id == int(invoice_id)).with_for_update().populate_existing(
        ).first())
    if not inv:
        raise NotFoundError("Invoice", invoice_id)
    return inv


def _load_services(db: Session, service_ids: Iterable[int]) -> Dict[int, Service]:
    ids = sorted({int(s) for s in service_ids})
    rows = db.query(Service).filter(Service.id.in_(ids)).all() if ids else []
    by_id = {int(s.id): s for s in rows}
    for sid in ids:
        svc = by_id.get(sid)
        if svc is None:
            raise NotFoundError("Service", sid)
        if not svc.is_active:
            raise ValidationError(f"Service {svc.name} is inactive",
                                  details={"service_id": sid})
    return by_id


def build_request_lines(db: Session, lines: Sequence) -> List[CoverageRequestLine]:
    """
    Turn caller lines (service_id + quantity) into priced lines. The unit
    price always comes from the service master.
    """
    if not lines:
        raise ValidationError("At least one service line is required")
    services = _load_services(db, [ln.service_id for ln in lines])
    out = []
    for ln in lines:
        svc = services[int(ln.service_id)]
        unit = money2(svc.unit_price)
        if unit < 0:
            raise ValidationError("Service price must be >= 0",
                                  details={"service_id": svc.id})
        out.append(
            CoverageRequestLine(
                service_id=int(svc.id),
                quantity=parse_quantity(ln.quantity),
                unit_price=unit,
                service_name=svc.name,
            ))
    return out


def _new_item(req: CoverageRequestLine,
              *,
              notes: Optional[str] = None,
              actor_id: Optional[int] = None) -> InvoiceItem:
    return InvoiceItem(
        service_id=req.service_id,
        description=req.service_name,
        quantity=req.quantity,
        unit_price=req.unit_price,
        total_price=line_total(req.quantity, req.unit_price),
        notes=notes,
        created_by=actor_id,
    )


def _reset_totals_from_items(inv: Invoice) -> None:
    # only reachable while PENDING, so nothing has been paid yet
    if D(inv.paid_amount) != 0:
        raise InvalidStateError(
            "Line items cannot change once money was received",
            details={"invoice_id": inv.id})
    inv.total_amount = check_money_range(inv.items_total(),
                                         field="total_amount")
    inv.paid_amount = ZERO
    inv.sync_pending()
    if inv.insurance_calculation is not None:
        inv.insurance_snapshot_stale = True


def _require_pending(inv: Invoice, action: str) -> None:
    if inv.status != InvoiceStatus.PENDING:
        raise InvalidStateError(
            f"Cannot {action}: only PENDING invoices can be edited "
            f"(status={_status_value(inv.status)})",
            details={
                "invoice_id": inv.id,
                "status": _status_value(inv.status)
            })


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def create_invoice(
    db: Session,
    *,
    patient_id: int,
    lines: Sequence,
    actor_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    due_date: Optional[date] = None,
    notes: Optional[str] = None,
    breakdown: Optional[CoverageBreakdown] = None,
) -> Invoice:
    """
    Create a PENDING invoice from service lines.

    Without a breakdown the invoice total is the sum of its lines. With one,
    the patient is billed breakdown.total_patient_pays and the breakdown is
    stored as the insurance snapshot.
    """
    if not db.get(Patient, int(patient_id)):
        raise NotFoundError("Patient", patient_id)

    req_lines = build_request_lines(db, lines)
    line_notes = [getattr(ln, "notes", None) for ln in lines]
    lines_sum = money2(sum((line_total(r.quantity, r.unit_price)
                            for r in req_lines), ZERO))
    check_money_range(lines_sum, field="total_amount")

    total = lines_sum
    snapshot = None
    policy_id = None
    if breakdown is not None:
        if money2(breakdown.total_base_amount) != lines_sum:
            raise ValidationError(
                "Coverage breakdown does not match the invoice lines",
                details={
                    "lines_total": str(lines_sum),
                    "breakdown_total": str(breakdown.total_base_amount),
                })
        total = money2(breakdown.total_patient_pays)
        snapshot = breakdown.to_snapshot()
        policy_id = breakdown.policy_id

    attempts = max(1, int(settings.INVOICE_NUMBER_ATTEMPTS))
    with write_tx(db, "create_invoice"):
        inv = None
        for attempt in range(1, attempts + 1):
            number = next_invoice_number(db)
            candidate = Invoice(
                invoice_number=number,
                patient_id=int(patient_id),
                created_by=actor_id,
                doctor_id=doctor_id,
                status=InvoiceStatus.PENDING,
                total_amount=total,
                paid_amount=ZERO,
                pending_amount=total,
                due_date=due_date,
                notes=notes,
                insurance_policy_id=policy_id,
                insurance_calculation=snapshot,
                insurance_snapshot_stale=False,
                items=[
                    _new_item(r, notes=n, actor_id=actor_id)
                    for r, n in zip(req_lines, line_notes)
                ],
            )
            try:
                with db.begin_nested():
                    db.add(candidate)
                    db.flush()
            except IntegrityError:
                logger.warning(
                    "Invoice number %s collided (attempt %d/%d)", number,
                    attempt, attempts)
                continue
            inv = candidate
            break

        if inv is None:
            raise ConcurrencyConflictError(
                "Could not allocate a unique invoice number; retry",
                details={"attempts": attempts})

    logger.info("Invoice %s created patient_id=%s total=%s insured=%s",
                inv.invoice_number, patient_id, total, snapshot is not None)
    return inv


def preview_breakdown(
    db: Session,
    *,
    patient_id: Optional[int],
    policy_id: Optional[int],
    lines: Sequence,
    coverage: Optional[Dict[int, Decimal]] = None,
) -> CoverageBreakdown:
    req_lines = build_request_lines(db, lines)
    chosen = pick_policy_id(db, patient_id=patient_id, policy_id=policy_id)
    return compute_breakdown(db, req_lines, policy_id=chosen, coverage=coverage)


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------
def add_line_item(
    db: Session,
    invoice_id: int,
    *,
    service_id: int,
    quantity: int = 1,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> Invoice:
    with write_tx(db, "add_line_item", invoice_id):
        inv = _lock_invoice(db, invoice_id)
        _require_pending(inv, "add a service")
        req = build_request_lines(
            db, [LineRequest(service_id=service_id, quantity=quantity)])[0]
        inv.items.append(_new_item(req, notes=notes, actor_id=actor_id))
        _reset_totals_from_items(inv)

    logger.info("Invoice %s: added service_id=%s qty=%s, total=%s",
                inv.invoice_number, service_id, quantity, inv.total_amount)
    return inv


def remove_line_item(
    db: Session,
    invoice_id: int,
    item_id: int,
    *,
    actor_id: Optional[int] = None,
) -> Invoice:
    with write_tx(db, "remove_line_item", invoice_id):
        inv = _lock_invoice(db, invoice_id)
        _require_pending(inv, "remove a service")

        item = next((it for it in inv.items if int(it.id) == int(item_id)),
                    None)
        if item is None:
            raise NotFoundError("Invoice item", item_id)
        if len(inv.items) <= 1:
            raise ValidationError(
                "Cannot remove the last service of an invoice",
                details={"invoice_id": inv.id})

        inv.items.remove(item)
        _reset_totals_from_items(inv)

    logger.info("Invoice %s: removed item_id=%s by=%s, total=%s",
                inv.invoice_number, item_id, actor_id, inv.total_amount)
    return inv


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------
def record_payment(
    db: Session,
    invoice_id: int,
    *,
    amount,
    method: Optional[str] = None,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> Tuple[Invoice, Payment]:
    """
    Apply one payment. The invoice row is locked for the whole check-and-
    write, and the version column rejects a writer that read stale state.
    """
    amt = parse_money(amount)
    if amt <= 0:
        raise ValidationError("Payment amount must be > 0",
                              details={"amount": str(amount)})

    with write_tx(db, "record_payment", invoice_id):
        inv = _lock_invoice(db, invoice_id)
        pending = money2(inv.pending_amount)

        if amt > pending:
            raise OverpaymentError(
                f"Payment {amt} exceeds pending amount {pending}",
                details={
                    "invoice_id": inv.id,
                    "amount": str(amt),
                    "pending_amount": str(pending),
                })
        if inv.status not in OPEN_STATUSES:
            raise InvalidStateError(
                f"Invoice {inv.invoice_number} does not accept payments "
                f"(status={_status_value(inv.status)})",
                details={
                    "invoice_id": inv.id,
                    "status": _status_value(inv.status)
                })

        pay = Payment(
            amount=amt,
            method=(method or None),
            notes=(notes or None),
            recorded_by=actor_id,
            paid_at=_now(),
        )
        inv.payments.append(pay)

        inv.paid_amount = money2(D(inv.paid_amount) + amt)
        inv.sync_pending()
        if money2(inv.pending_amount) == 0:
            inv.status = InvoiceStatus.PAID
            inv.paid_at = _now()
            inv.is_overdue = False
        else:
            inv.status = InvoiceStatus.PARTIAL

    logger.info("Invoice %s: payment %s recorded, paid=%s pending=%s status=%s",
                inv.invoice_number, amt, inv.paid_amount, inv.pending_amount,
                _status_value(inv.status))
    return inv, pay


def list_payments(db: Session, invoice_id: int) -> List[Payment]:
    get_invoice(db, invoice_id)
    return (db.query(Payment).filter(
        Payment.invoice_id == int(invoice_id)).order_by(
            Payment.paid_at.desc(), Payment.id.desc()).all())


# ---------------------------------------------------------------------------
# Administrative transitions
# ---------------------------------------------------------------------------
def cancel_invoice(
    db: Session,
    invoice_id: int,
    *,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> Invoice:
    with write_tx(db, "cancel_invoice", invoice_id):
        inv = _lock_invoice(db, invoice_id)
        if inv.status not in OPEN_STATUSES:
            raise InvalidStateError(
                f"Invoice {inv.invoice_number} cannot be cancelled "
                f"(status={_status_value(inv.status)})",
                details={
                    "invoice_id": inv.id,
                    "status": _status_value(inv.status)
                })
        inv.status = InvoiceStatus.CANCELLED
        inv.cancelled_at = _now()
        inv.cancelled_by = actor_id
        inv.cancel_reason = (reason or "").strip() or None

    logger.info("Invoice %s cancelled by=%s", inv.invoice_number, actor_id)
    return inv


def mark_overdue(
    db: Session,
    invoice_id: int,
    *,
    as_of: Optional[date] = None,
    force: bool = False,
) -> Invoice:
    """
    Flag an open invoice as overdue. Without `force` the due date must have
    passed. Status is not changed.
    """
    as_of = as_of or _now().date()
    with write_tx(db, "mark_overdue", invoice_id):
        inv = _lock_invoice(db, invoice_id)
        if inv.status not in OPEN_STATUSES:
            raise InvalidStateError(
                f"Invoice {inv.invoice_number} cannot be marked overdue "
                f"(status={_status_value(inv.status)})",
                details={
                    "invoice_id": inv.id,
                    "status": _status_value(inv.status)
                })
        if not force:
            if inv.due_date is None or as_of <= inv.due_date:
                raise ValidationError(
                    "Invoice is not past its due date",
                    details={
                        "invoice_id": inv.id,
                        "due_date": inv.due_date.isoformat() if inv.due_date else None,
                    })
        if not inv.is_overdue:
            inv.is_overdue = True
            inv.overdue_at = _now()

    return inv


def refresh_insurance_snapshot(
    db: Session,
    invoice_id: int,
    *,
    policy_id: Optional[int] = None,
) -> Invoice:
    """
    Explicitly recompute the stored coverage breakdown from the current
    lines. The money fields of the invoice are left alone.
    """
    with write_tx(db, "refresh_insurance_snapshot", invoice_id):
        inv = _lock_invoice(db, invoice_id)
        chosen = policy_id or inv.insurance_policy_id
        if chosen is None:
            chosen = pick_policy_id(db, patient_id=inv.patient_id, policy_id=None)

        req_lines = [
            CoverageRequestLine(
                service_id=int(it.service_id),
                quantity=int(it.quantity),
                unit_price=money2(it.unit_price),
                service_name=it.description,
            ) for it in inv.items
        ]
        breakdown = compute_breakdown(db, req_lines, policy_id=chosen)
        inv.insurance_policy_id = chosen
        inv.insurance_calculation = breakdown.to_snapshot()
        inv.insurance_snapshot_stale = False

    logger.info("Invoice %s: insurance snapshot refreshed policy_id=%s",
                inv.invoice_number, chosen)
    return inv


def delete_invoice(db: Session, invoice_id: int, *,
                   actor_id: Optional[int] = None) -> None:
    """
    Hard delete. Items, payments and the exoneration record go with the
    invoice. Role checks happen at the HTTP edge (ADMIN only).
    """
    with write_tx(db, "delete_invoice", invoice_id):
        inv = _lock_invoice(db, invoice_id)
        number = inv.invoice_number
        db.delete(inv)

    logger.info("Invoice %s deleted by=%s", number, actor_id)
