# clinic_billing/services/insurance_admin.py
"""
Policy and coverage-rule maintenance. Every write here invalidates the
coverage read cache for the touched policy.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_billing.core.errors import (
    NotFoundError,
    PolicyNotFoundError,
    ValidationError,
)
from clinic_billing.models.insurance import CoverageRule, InsurancePolicy
from clinic_billing.models.service import Service
from clinic_billing.schemas.insurance import (
    CoverageRuleUpdate,
    CoverageRuleUpsert,
    PolicyCreate,
    PolicyUpdate,
)
from clinic_billing.services.billing_math import parse_percent
from clinic_billing.services.coverage_cache import CoverageCache, coverage_cache

logger = logging.getLogger(__name__)


# ----------------------------
# Policies
# ----------------------------
def get_policy(db: Session, policy_id: int) -> InsurancePolicy:
    policy = db.get(InsurancePolicy, int(policy_id))
    if not policy:
        raise PolicyNotFoundError(policy_id)
    return policy


def list_policies(db: Session,
                  *,
                  active: Optional[bool] = None) -> List[InsurancePolicy]:
    q = db.query(InsurancePolicy)
    if active is not None:
        q = q.filter(InsurancePolicy.is_active.is_(active))
    return q.order_by(InsurancePolicy.name.asc()).all()


def _commit_policy(db: Session, policy: InsurancePolicy) -> InsurancePolicy:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError("Policy name or code already in use",
                              details={"name": policy.name}) from e
    db.refresh(policy)
    return policy


def create_policy(db: Session, payload: PolicyCreate) -> InsurancePolicy:
    policy = InsurancePolicy(
        name=payload.name.strip(),
        code=(payload.code or None),
        is_active=payload.is_active,
    )
    db.add(policy)
    return _commit_policy(db, policy)


def update_policy(db: Session,
                  policy_id: int,
                  payload: PolicyUpdate,
                  cache: CoverageCache = coverage_cache) -> InsurancePolicy:
    policy = get_policy(db, policy_id)
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(policy, k, v)
    policy = _commit_policy(db, policy)
    cache.invalidate(policy.id)
    return policy


# ----------------------------
# Coverage rules
# ----------------------------
def get_rule(db: Session, rule_id: int) -> CoverageRule:
    rule = db.get(CoverageRule, int(rule_id))
    if not rule:
        raise NotFoundError("Coverage rule", rule_id)
    return rule


def list_rules(db: Session,
               *,
               policy_id: Optional[int] = None,
               service_id: Optional[int] = None) -> List[CoverageRule]:
    q = db.query(CoverageRule)
    if policy_id:
        q = q.filter(CoverageRule.policy_id == int(policy_id))
    if service_id:
        q = q.filter(CoverageRule.service_id == int(service_id))
    return q.order_by(CoverageRule.policy_id.asc(),
                      CoverageRule.service_id.asc()).all()


def upsert_rule(db: Session,
                payload: CoverageRuleUpsert,
                cache: CoverageCache = coverage_cache) -> CoverageRule:
    """
    One rule per (policy, service): an existing pair is updated in place.
    """
    policy = get_policy(db, payload.policy_id)
    if not db.get(Service, int(payload.service_id)):
        raise NotFoundError("Service", payload.service_id)
    pct = parse_percent(payload.coverage_percent)

    rule = (db.query(CoverageRule).filter(
        CoverageRule.policy_id == policy.id,
        CoverageRule.service_id == int(payload.service_id),
    ).with_for_update().first())

    if rule is None:
        rule = CoverageRule(
            policy_id=policy.id,
            service_id=int(payload.service_id),
            coverage_percent=pct,
            is_active=payload.is_active,
        )
        try:
            with db.begin_nested():
                db.add(rule)
                db.flush()
        except IntegrityError:
            # inserted concurrently: fall back to updating that row
            rule = (db.query(CoverageRule).filter(
                CoverageRule.policy_id == policy.id,
                CoverageRule.service_id == int(payload.service_id),
            ).one())
            rule.coverage_percent = pct
            rule.is_active = payload.is_active
    else:
        rule.coverage_percent = pct
        rule.is_active = payload.is_active

    db.commit()
    db.refresh(rule)
    cache.invalidate(policy.id)
    logger.info("Coverage rule policy=%s service=%s pct=%s active=%s",
                policy.id, rule.service_id, pct, rule.is_active)
    return rule


def update_rule(db: Session,
                rule_id: int,
                payload: CoverageRuleUpdate,
                cache: CoverageCache = coverage_cache) -> CoverageRule:
    rule = get_rule(db, rule_id)
    data = payload.model_dump(exclude_unset=True)
    if data.get("coverage_percent") is not None:
        rule.coverage_percent = parse_percent(data["coverage_percent"])
    if data.get("is_active") is not None:
        rule.is_active = bool(data["is_active"])
    db.commit()
    db.refresh(rule)
    cache.invalidate(rule.policy_id)
    return rule


def delete_rule(db: Session,
                rule_id: int,
                cache: CoverageCache = coverage_cache) -> None:
    rule = get_rule(db, rule_id)
    policy_id = rule.policy_id
    db.delete(rule)
    db.commit()
    cache.invalidate(policy_id)
