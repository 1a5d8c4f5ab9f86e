from decimal import Decimal

import pytest

from clinic_billing.core.errors import PolicyNotFoundError, ValidationError
from clinic_billing.services.coverage import (
    CoverageRequestLine,
    calculate_coverage,
    compute_breakdown,
    pick_policy_id,
    resolve_coverage,
    resolve_coverage_or_none,
)


def _line(sid, qty, price):
    return CoverageRequestLine(service_id=sid,
                               quantity=qty,
                               unit_price=Decimal(price),
                               service_name=f"svc-{sid}")


def test_eighty_percent_line():
    res = calculate_coverage([_line(1, 2, "50")], {1: Decimal("80")})
    line = res.items[0]
    assert line.base_price == Decimal("100.00")
    assert line.insurance_covers == Decimal("80.00")
    assert line.patient_pays == Decimal("20.00")
    assert res.total_patient_pays == Decimal("20.00")


def test_full_and_zero_coverage_are_exact():
    res = calculate_coverage(
        [_line(1, 3, "33.33"), _line(2, 7, "0.07")],
        {1: Decimal("100"), 2: Decimal("0")},
    )
    full, none = res.items
    assert full.patient_pays == Decimal("0")
    assert full.insurance_covers == full.base_price
    assert none.patient_pays == none.base_price
    assert none.insurance_covers == Decimal("0")


def test_rounding_never_leaks_money():
    lines = [_line(i, q, p) for i, (q, p) in enumerate(
        [(1, "10.01"), (3, "0.33"), (7, "19.99"), (2, "0.05"), (1, "1.11")],
        start=1)]
    pct = {1: Decimal("33.33"), 2: Decimal("66.67"), 3: Decimal("12.5"),
           4: Decimal("50"), 5: Decimal("99.99")}
    res = calculate_coverage(lines, pct)

    for ln in res.items:
        assert ln.insurance_covers + ln.patient_pays == ln.base_price
    assert (res.total_insurance_covers + res.total_patient_pays ==
            res.total_base_amount)
    assert res.total_base_amount == sum(ln.base_price for ln in res.items)


def test_missing_rule_means_no_coverage():
    res = calculate_coverage([_line(9, 1, "40")], {})
    assert res.items[0].coverage_percent == Decimal("0")
    assert res.items[0].patient_pays == Decimal("40.00")


def test_calculator_rejects_bad_lines():
    with pytest.raises(ValidationError):
        calculate_coverage([_line(1, 0, "10")], {})
    with pytest.raises(ValidationError):
        calculate_coverage([_line(1, 1, "-1")], {})


def test_resolver_uses_active_rules_only(db, policy, services):
    ids = [s.id for s in services.values()]
    cov = resolve_coverage(db, policy.id, ids)
    assert cov[services["consult"].id] == Decimal("80.00")
    assert cov[services["lab"].id] == Decimal("100.00")
    # inactive rule
    assert cov[services["xray"].id] == Decimal("0")
    # no rule
    assert cov[services["retired"].id] == Decimal("0")


def test_resolver_without_policy(db, services):
    cov = resolve_coverage(db, None, [services["consult"].id])
    assert cov == {services["consult"].id: Decimal("0")}


def test_inactive_policy_covers_nothing(db, policy, services):
    policy.is_active = False
    db.commit()
    cov = resolve_coverage(db, policy.id, [services["consult"].id])
    assert cov[services["consult"].id] == Decimal("0")


def test_unknown_policy(db, services):
    with pytest.raises(PolicyNotFoundError):
        resolve_coverage(db, 999, [services["consult"].id])

    cov = resolve_coverage_or_none(db, 999, [services["consult"].id])
    assert cov == {services["consult"].id: Decimal("0")}


def test_pick_policy_prefers_explicit(db, insured_patient, patient, policy):
    assert pick_policy_id(db, patient_id=insured_patient.id,
                          policy_id=None) == policy.id
    assert pick_policy_id(db, patient_id=patient.id, policy_id=None) is None
    assert pick_policy_id(db, patient_id=patient.id, policy_id=42) == 42


def test_compute_breakdown_names_policy(db, policy, services):
    res = compute_breakdown(
        db, [_line(services["consult"].id, 2, "50")], policy_id=policy.id)
    assert res.policy_name == "Salud Plus"
    assert res.total_insurance_covers == Decimal("80.00")
    snap = res.to_snapshot()
    assert snap["total_patient_pays"] == "20.00"
    assert snap["items"][0]["coverage_percent"] == "80.00"
