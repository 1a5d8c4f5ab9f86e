# FILE: clinic_billing/schemas/insurance.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinic_billing.schemas.billing import InvoiceLineIn

Percent = Decimal


class PolicyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=191)
    code: Optional[str] = Field(None, max_length=64)
    is_active: bool = True


class PolicyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=191)
    code: Optional[str] = Field(None, max_length=64)
    is_active: Optional[bool] = None


class PolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None


class CoverageRuleUpsert(BaseModel):
    policy_id: int
    service_id: int
    coverage_percent: Percent = Field(..., ge=0, le=100)
    is_active: bool = True


class CoverageRuleUpdate(BaseModel):
    coverage_percent: Optional[Percent] = Field(None, ge=0, le=100)
    is_active: Optional[bool] = None


class CoverageRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    policy_id: int
    service_id: int
    coverage_percent: Percent
    is_active: bool
    updated_at: Optional[datetime] = None


class CoverageCalcIn(BaseModel):
    patient_id: Optional[int] = None
    # explicit policy overrides the patient's linked one
    policy_id: Optional[int] = None
    services: List[InvoiceLineIn] = Field(..., min_length=1)


class CoverageLineOut(BaseModel):
    service_id: int
    service_name: str
    quantity: int
    unit_price: Decimal
    base_price: Decimal
    coverage_percent: Percent
    insurance_covers: Decimal
    patient_pays: Decimal


class CoverageCalcOut(BaseModel):
    policy_id: Optional[int] = None
    policy_name: Optional[str] = None
    items: List[CoverageLineOut]
    total_base_amount: Decimal
    total_insurance_covers: Decimal
    total_patient_pays: Decimal
