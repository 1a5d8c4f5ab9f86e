# clinic_billing/services/coverage_cache.py
"""
Read-through TTL cache for coverage lookups.

Only read endpoints (calculate-coverage previews) go through here. Ledger
writes call resolve_coverage() directly and never touch this cache.
"""
from __future__ import annotations

import logging
import threading
import time
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from clinic_billing.core.config import settings
from clinic_billing.core.errors import PolicyNotFoundError
from clinic_billing.models.insurance import CoverageRule, InsurancePolicy
from clinic_billing.services.billing_math import ZERO, money2

logger = logging.getLogger(__name__)

PolicyRules = Dict[int, Decimal]


class CoverageCache:

    def __init__(self,
                 ttl_seconds: float,
                 max_entries: int,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[int, Tuple[float, PolicyRules]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, policy_id: int) -> Optional[PolicyRules]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(policy_id)
            if entry is None:
                self.misses += 1
                return None
            stored_at, rules = entry
            if now - stored_at > self.ttl_seconds:
                del self._entries[policy_id]
                self.misses += 1
                return None
            self.hits += 1
            return rules

    def put(self, policy_id: int, rules: PolicyRules) -> None:
        now = self._clock()
        with self._lock:
            if len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[policy_id] = (now, dict(rules))

    def invalidate(self, policy_id: Optional[int] = None) -> None:
        with self._lock:
            if policy_id is None:
                self._entries.clear()
            else:
                self._entries.pop(int(policy_id), None)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
            }

    def _evict(self, now: float) -> None:
        # drop expired first; if still full drop the oldest entry
        expired = [
            k for k, (ts, _) in self._entries.items()
            if now - ts > self.ttl_seconds
        ]
        for k in expired:
            del self._entries[k]
        if len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]


def _load_policy_rules(db: Session, policy_id: int) -> PolicyRules:
    policy = db.get(InsurancePolicy, int(policy_id))
    if policy is None:
        raise PolicyNotFoundError(policy_id)
    if not policy.is_active:
        return {}
    rows = (db.query(CoverageRule.service_id,
                     CoverageRule.coverage_percent).filter(
                         CoverageRule.policy_id == policy.id,
                         CoverageRule.is_active.is_(True),
                     ).all())
    return {int(sid): money2(pct) for sid, pct in rows}


def cached_coverage(
    db: Session,
    policy_id: Optional[int],
    service_ids: Iterable[int],
    cache: Optional[CoverageCache] = None,
) -> Dict[int, Decimal]:
    """Same contract as coverage.resolve_coverage, served from the cache."""
    cache = cache or coverage_cache
    wanted = sorted({int(s) for s in service_ids})
    if policy_id is None:
        return {sid: ZERO for sid in wanted}

    rules = None
    if settings.COVERAGE_CACHE_ENABLED:
        rules = cache.get(int(policy_id))
    if rules is None:
        rules = _load_policy_rules(db, int(policy_id))
        if settings.COVERAGE_CACHE_ENABLED:
            cache.put(int(policy_id), rules)
            logger.debug("Coverage cache filled policy_id=%s rules=%d",
                         policy_id, len(rules))
    return {sid: rules.get(sid, ZERO) for sid in wanted}


coverage_cache = CoverageCache(
    ttl_seconds=settings.COVERAGE_CACHE_TTL_SECONDS,
    max_entries=settings.COVERAGE_CACHE_MAX_ENTRIES,
)
