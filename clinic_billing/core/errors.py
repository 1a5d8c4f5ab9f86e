# clinic_billing/core/errors.py
from __future__ import annotations

from typing import Any, Optional


class BillingError(Exception):
    """
    Base for every error raised by the billing core.

    code / http_status / retryable travel with the exception so the HTTP
    edge can render them without knowing each subclass.
    """
    code: str = "billing_error"
    http_status: int = 400
    retryable: bool = False

    def __init__(self, msg: str, *, details: Any = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.details = details

    def to_dict(self) -> dict:
        return {
            "msg": self.msg,
            "code": self.code,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(BillingError):
    """Malformed or out-of-range input. Caller must fix the input."""
    code = "validation_error"
    http_status = 422


class InvalidStateError(BillingError):
    """Operation not permitted for the invoice's current status."""
    code = "invalid_state"
    http_status = 409


class OverpaymentError(BillingError):
    """Payment exceeds the pending balance. Caller should re-query it."""
    code = "overpayment"
    http_status = 409


class AlreadyExoneratedError(BillingError):
    code = "already_exonerated"
    http_status = 409


class NotFoundError(BillingError):
    code = "not_found"
    http_status = 404

    def __init__(self,
                 entity: str,
                 entity_id: Any = None,
                 *,
                 msg: Optional[str] = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(msg or f"{entity} not found",
                         details={
                             "entity": entity,
                             "id": entity_id
                         })


class PolicyNotFoundError(NotFoundError):
    code = "policy_not_found"

    def __init__(self, policy_id: Any) -> None:
        super().__init__("Insurance policy", policy_id)


class ConcurrencyConflictError(BillingError):
    """A transactional write lost a race. Retry with fresh state."""
    code = "concurrency_conflict"
    http_status = 409
    retryable = True
