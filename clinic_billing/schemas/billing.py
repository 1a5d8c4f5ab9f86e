# FILE: clinic_billing/schemas/billing.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinic_billing.models.billing import InvoiceStatus
from clinic_billing.services.billing_math import MAX_QUANTITY


class InvoiceLineIn(BaseModel):
    service_id: int
    quantity: int = Field(1, ge=1, le=MAX_QUANTITY)
    notes: Optional[str] = Field(None, max_length=255)


class InvoiceCreate(BaseModel):
    patient_id: int
    doctor_id: Optional[int] = None
    items: List[InvoiceLineIn] = Field(..., min_length=1)
    due_date: Optional[date] = None
    notes: Optional[str] = None

    # compute and snapshot insurance coverage at creation
    apply_insurance: bool = False
    # explicit policy; default is the patient's linked policy
    insurance_policy_id: Optional[int] = None


class AddItemIn(InvoiceLineIn):
    pass


class PaymentIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    method: Optional[str] = Field(None, max_length=32)
    notes: Optional[str] = Field(None, max_length=255)

    @field_validator("amount")
    def positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Amount must be greater than 0.")
        return v


class ExonerateIn(BaseModel):
    reason: str = Field(..., min_length=1)

    @field_validator("reason")
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Reason is required.")
        return v.strip()


class CancelIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class MarkOverdueIn(BaseModel):
    as_of: Optional[date] = None
    force: bool = False


class SnapshotRefreshIn(BaseModel):
    insurance_policy_id: Optional[int] = None


class InvoiceFilter(BaseModel):
    """
    Structured invoice list filter. Everything is optional; unknown keys
    are rejected so nothing unvalidated reaches the query.
    """
    model_config = ConfigDict(extra="forbid")

    status: Optional[InvoiceStatus] = None
    patient_id: Optional[int] = Field(None, ge=1)
    doctor_id: Optional[int] = Field(None, ge=1)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    is_overdue: Optional[bool] = None
    search: Optional[str] = Field(None, max_length=100)
    page: int = Field(1, ge=1)
    per_page: int = Field(20, ge=1, le=100)

    @field_validator("search")
    def _strip_search(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def _date_range(self) -> "InvoiceFilter":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must be on or before date_to")
        return self


class InvoiceItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    service_id: int
    description: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    notes: Optional[str] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    amount: Decimal
    method: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: Optional[int] = None
    paid_at: Optional[datetime] = None


class ExonerationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    original_amount: Decimal
    exonerated_amount: Decimal
    reason: str
    authorized_by: Optional[int] = None
    is_printed: bool
    printed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    patient_id: int
    doctor_id: Optional[int] = None
    created_by: Optional[int] = None
    status: InvoiceStatus

    total_amount: Decimal
    paid_amount: Decimal
    pending_amount: Decimal

    due_date: Optional[date] = None
    notes: Optional[str] = None
    is_overdue: bool = False

    insurance_policy_id: Optional[int] = None
    insurance_calculation: Optional[Dict[str, Any]] = None
    insurance_snapshot_stale: bool = False

    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    items: List[InvoiceItemOut] = []
    payments: List[PaymentOut] = []
    exoneration: Optional[ExonerationOut] = None


class PaymentResultOut(BaseModel):
    invoice: InvoiceOut
    payment: PaymentOut


class ExonerationResultOut(BaseModel):
    invoice: InvoiceOut
    exoneration: ExonerationOut
