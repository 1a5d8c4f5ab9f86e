# clinic_billing/services/coverage.py
"""
Insurance coverage: resolve per-service percentages for a policy, then
split each billable line between insurer and patient.

Money rule: each line's insurer share is rounded to 0.01 (half-up) and the
patient share is derived as base - insurer share, so every line reconciles
to its base price exactly. Totals are sums of the rounded line values.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from clinic_billing.core.errors import PolicyNotFoundError, ValidationError
from clinic_billing.models.insurance import CoverageRule, InsurancePolicy
from clinic_billing.models.patient import Patient
from clinic_billing.services.billing_math import (
    HUNDRED,
    ZERO,
    line_total,
    money2,
    parse_money,
    parse_percent,
    parse_quantity,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoverageRequestLine:
    service_id: int
    quantity: int
    unit_price: Decimal
    service_name: str = ""


@dataclass(frozen=True)
class CoverageLine:
    service_id: int
    service_name: str
    quantity: int
    unit_price: Decimal
    base_price: Decimal
    coverage_percent: Decimal
    insurance_covers: Decimal
    patient_pays: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": self.service_id,
            "service_name": self.service_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "base_price": str(self.base_price),
            "coverage_percent": str(self.coverage_percent),
            "insurance_covers": str(self.insurance_covers),
            "patient_pays": str(self.patient_pays),
        }


@dataclass(frozen=True)
class CoverageBreakdown:
    items: List[CoverageLine] = field(default_factory=list)
    total_base_amount: Decimal = ZERO
    total_insurance_covers: Decimal = ZERO
    total_patient_pays: Decimal = ZERO
    policy_id: Optional[int] = None
    policy_name: Optional[str] = None

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy stored on the invoice."""
        return {
            "policy_id": self.policy_id,
            "policy_name": self.policy_name,
            "items": [it.to_dict() for it in self.items],
            "total_base_amount": str(self.total_base_amount),
            "total_insurance_covers": str(self.total_insurance_covers),
            "total_patient_pays": str(self.total_patient_pays),
        }


# ----------------------------
# Resolver
# ----------------------------
def resolve_coverage(
    db: Session,
    policy_id: Optional[int],
    service_ids: Iterable[int],
) -> Dict[int, Decimal]:
    """
    Map each requested service id to its coverage percent under policy_id.

    No policy, no rule, an inactive rule or an inactive policy all mean 0%.
    Raises PolicyNotFoundError when policy_id is given but does not exist.
    """
    wanted = sorted({int(s) for s in service_ids})
    out: Dict[int, Decimal] = {sid: ZERO for sid in wanted}

    if policy_id is None:
        return out

    policy = db.get(InsurancePolicy, int(policy_id))
    if policy is None:
        raise PolicyNotFoundError(policy_id)

    if not wanted or not policy.is_active:
        return out

    rules = (db.query(CoverageRule).filter(
        CoverageRule.policy_id == policy.id,
        CoverageRule.service_id.in_(wanted),
        CoverageRule.is_active.is_(True),
    ).all())
    for r in rules:
        out[int(r.service_id)] = money2(r.coverage_percent)
    return out


def resolve_coverage_or_none(
    db: Session,
    policy_id: Optional[int],
    service_ids: Iterable[int],
) -> Dict[int, Decimal]:
    """
    Lenient variant: a missing policy is treated as "no coverage".
    Only for callers that have decided a dangling policy reference must not
    block billing.
    """
    service_ids = list(service_ids)
    try:
        return resolve_coverage(db, policy_id, service_ids)
    except PolicyNotFoundError:
        logger.warning(
            "Insurance policy %s not found; billing without coverage",
            policy_id)
        return resolve_coverage(db, None, service_ids)


# ----------------------------
# Calculator
# ----------------------------
def _split_line(base: Decimal, pct: Decimal) -> tuple[Decimal, Decimal]:
    if pct <= 0:
        return ZERO, base
    if pct >= HUNDRED:
        return base, ZERO
    covers = money2(base * pct / HUNDRED)
    return covers, base - covers


def calculate_coverage(
    lines: Iterable[CoverageRequestLine],
    coverage: Dict[int, Decimal],
    *,
    policy_id: Optional[int] = None,
    policy_name: Optional[str] = None,
) -> CoverageBreakdown:
    items: List[CoverageLine] = []
    total_base = ZERO
    total_covers = ZERO
    total_patient = ZERO

    for ln in lines:
        qty = parse_quantity(ln.quantity)
        unit = parse_money(ln.unit_price, field="unit_price")
        if unit < 0:
            raise ValidationError("unit_price must be >= 0",
                                  details={"service_id": ln.service_id})
        pct = parse_percent(coverage.get(int(ln.service_id), ZERO))

        base = line_total(qty, unit)
        covers, patient = _split_line(base, pct)

        items.append(
            CoverageLine(
                service_id=int(ln.service_id),
                service_name=ln.service_name or "",
                quantity=qty,
                unit_price=unit,
                base_price=base,
                coverage_percent=pct,
                insurance_covers=covers,
                patient_pays=patient,
            ))
        total_base += base
        total_covers += covers
        total_patient += patient

    return CoverageBreakdown(
        items=items,
        total_base_amount=total_base,
        total_insurance_covers=total_covers,
        total_patient_pays=total_patient,
        policy_id=policy_id,
        policy_name=policy_name,
    )


def pick_policy_id(
    db: Session,
    *,
    patient_id: Optional[int],
    policy_id: Optional[int],
) -> Optional[int]:
    """Explicit policy wins; otherwise the patient's linked policy, if any."""
    if policy_id is not None:
        return int(policy_id)
    if patient_id is None:
        return None
    patient = db.get(Patient, int(patient_id))
    if patient is None:
        return None
    return patient.insurance_policy_id


def compute_breakdown(
    db: Session,
    lines: List[CoverageRequestLine],
    *,
    policy_id: Optional[int],
    coverage: Optional[Dict[int, Decimal]] = None,
) -> CoverageBreakdown:
    """
    Resolver + calculator in one call. `coverage` lets read paths pass a
    map served from the coverage cache instead of hitting the rules table.
    """
    policy_name = None
    if policy_id is not None:
        policy = db.get(InsurancePolicy, int(policy_id))
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        policy_name = policy.name

    if coverage is None:
        coverage = resolve_coverage(db, policy_id,
                                    [ln.service_id for ln in lines])

    return calculate_coverage(lines,
                              coverage,
                              policy_id=policy_id,
                              policy_name=policy_name)
