# FILE: clinic_billing/api/routes_insurance.py
from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinic_billing.api.deps import CurrentUser, get_db, require_billing_user
from clinic_billing.api.response import ok
from clinic_billing.schemas.insurance import (
    CoverageCalcIn,
    CoverageCalcOut,
    CoverageRuleOut,
    CoverageRuleUpdate,
    CoverageRuleUpsert,
    PolicyCreate,
    PolicyOut,
    PolicyUpdate,
)
from clinic_billing.services import insurance_admin
from clinic_billing.services.coverage import compute_breakdown, pick_policy_id
from clinic_billing.services.coverage_cache import cached_coverage
from clinic_billing.services.invoice_ledger import build_request_lines

router = APIRouter()


# ---------------------------------------------------------------------------
# Coverage preview
# ---------------------------------------------------------------------------
@router.post("/calculate-coverage")
def calculate_coverage(
        payload: CoverageCalcIn,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    """Read-only preview; nothing is persisted."""
    policy_id = pick_policy_id(db,
                               patient_id=payload.patient_id,
                               policy_id=payload.policy_id)
    lines = build_request_lines(db, payload.services)
    coverage = cached_coverage(db, policy_id,
                               [ln.service_id for ln in lines])
    breakdown = compute_breakdown(db,
                                  lines,
                                  policy_id=policy_id,
                                  coverage=coverage)
    return ok(CoverageCalcOut(**asdict(breakdown)))


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------
@router.get("/policies")
def get_policies(
        active: Optional[bool] = Query(None),
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    rows = insurance_admin.list_policies(db, active=active)
    return ok([PolicyOut.model_validate(p) for p in rows])


@router.post("/policies")
def create_policy(
        payload: PolicyCreate,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    policy = insurance_admin.create_policy(db, payload)
    return ok(PolicyOut.model_validate(policy), status_code=201)


@router.get("/policies/{policy_id}")
def get_policy(
        policy_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    return ok(PolicyOut.model_validate(insurance_admin.get_policy(db, policy_id)))


@router.put("/policies/{policy_id}")
def update_policy(
        policy_id: int,
        payload: PolicyUpdate,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    policy = insurance_admin.update_policy(db, policy_id, payload)
    return ok(PolicyOut.model_validate(policy))


# ---------------------------------------------------------------------------
# Coverage rules
# ---------------------------------------------------------------------------
@router.get("/coverage")
def get_rules(
        policy_id: Optional[int] = Query(None),
        service_id: Optional[int] = Query(None),
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    rows = insurance_admin.list_rules(db,
                                      policy_id=policy_id,
                                      service_id=service_id)
    return ok([CoverageRuleOut.model_validate(r) for r in rows])


@router.post("/coverage")
def upsert_rule(
        payload: CoverageRuleUpsert,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    rule = insurance_admin.upsert_rule(db, payload)
    return ok(CoverageRuleOut.model_validate(rule))


@router.put("/coverage/{rule_id}")
def update_rule(
        rule_id: int,
        payload: CoverageRuleUpdate,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    rule = insurance_admin.update_rule(db, rule_id, payload)
    return ok(CoverageRuleOut.model_validate(rule))


@router.delete("/coverage/{rule_id}")
def delete_rule(
        rule_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    insurance_admin.delete_rule(db, rule_id)
    return ok({"id": rule_id, "deleted": True})
