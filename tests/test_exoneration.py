from datetime import date, timedelta
from decimal import Decimal

import pytest

from clinic_billing.core.errors import (
    AlreadyExoneratedError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from clinic_billing.models import InvoiceStatus
from clinic_billing.services import invoice_ledger as ledger
from clinic_billing.services.exoneration import (
    exonerate_invoice,
    list_exonerations,
    mark_exoneration_printed,
)


def test_exonerate_partial_invoice_keeps_payment_history(db, make_invoice):
    inv = make_invoice(("xray", 1))
    inv, pay = ledger.record_payment(db, inv.id, amount="50", method="cash")
    assert inv.status == InvoiceStatus.PARTIAL

    ex = exonerate_invoice(db, inv.id, reason="Social case", authorized_by=1)
    assert ex.original_amount == Decimal("150.00")
    assert ex.exonerated_amount == Decimal("100.00")
    assert ex.is_printed is False

    db.expire_all()
    inv = ledger.get_invoice(db, inv.id)
    assert inv.status == InvoiceStatus.EXONERATED
    assert inv.paid_amount == Decimal("50.00")
    assert inv.pending_amount == inv.total_amount - inv.paid_amount
    assert [(p.id, p.amount, p.method) for p in inv.payments] == [
        (pay.id, Decimal("50.00"), "cash")
    ]


def test_second_exoneration_always_rejected(db, make_invoice):
    inv = make_invoice(("consult", 1))
    exonerate_invoice(db, inv.id, reason="first", authorized_by=1)

    with pytest.raises(AlreadyExoneratedError):
        exonerate_invoice(db, inv.id, reason="again", authorized_by=1)
    # duplicate wins over every other check, even a blank reason
    with pytest.raises(AlreadyExoneratedError):
        exonerate_invoice(db, inv.id, reason="", authorized_by=1)


@pytest.mark.parametrize("close", ["pay", "cancel"])
def test_closed_invoices_cannot_be_exonerated(db, make_invoice, close):
    inv = make_invoice(("consult", 1))
    if close == "pay":
        ledger.record_payment(db, inv.id, amount="50")
    else:
        ledger.cancel_invoice(db, inv.id)

    with pytest.raises(InvalidStateError):
        exonerate_invoice(db, inv.id, reason="late", authorized_by=1)


def test_reason_required(db, make_invoice):
    inv = make_invoice(("consult", 1))
    with pytest.raises(ValidationError):
        exonerate_invoice(db, inv.id, reason="   ", authorized_by=1)
    db.expire_all()
    assert ledger.get_invoice(db, inv.id).status == InvoiceStatus.PENDING


def test_exonerated_invoice_takes_no_payments(db, make_invoice):
    inv = make_invoice(("consult", 1))
    exonerate_invoice(db, inv.id, reason="waived", authorized_by=1)
    with pytest.raises(InvalidStateError):
        ledger.record_payment(db, inv.id, amount="10")


def test_missing_invoice(db):
    with pytest.raises(NotFoundError):
        exonerate_invoice(db, 404, reason="x", authorized_by=1)


def test_listing_and_print_tracking(db, make_invoice):
    a = make_invoice(("consult", 1))
    b = make_invoice(("lab", 1))
    ex_a = exonerate_invoice(db, a.id, reason="a", authorized_by=1)
    exonerate_invoice(db, b.id, reason="b", authorized_by=1)

    res = list_exonerations(db)
    assert res["summary"]["total_count"] == 2
    assert res["summary"]["total_exonerated"] == Decimal("250.00")

    printed = mark_exoneration_printed(db, ex_a.id)
    assert printed.is_printed is True
    assert printed.printed_at is not None

    # printed rows drop out unless asked for
    assert list_exonerations(db)["summary"]["total_count"] == 1
    res = list_exonerations(db, include_printed=True)
    assert res["summary"] == {
        "total_exonerated": Decimal("250.00"),
        "total_count": 2,
        "printed_count": 1,
        "pending_print_count": 1,
    }


def test_listing_filters(db, make_invoice, insured_patient):
    mine = make_invoice(("consult", 1))
    other = make_invoice(("consult", 1), patient_id=insured_patient.id)
    exonerate_invoice(db, mine.id, reason="a", authorized_by=1)
    exonerate_invoice(db, other.id, reason="b", authorized_by=1)

    res = list_exonerations(db, patient_id=insured_patient.id)
    assert [ex.invoice_id for ex in res["exonerations"]] == [other.id]

    later = date.today() + timedelta(days=2)
    assert list_exonerations(db, start_date=later)["exonerations"] == []
