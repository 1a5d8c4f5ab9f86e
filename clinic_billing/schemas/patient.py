# FILE: clinic_billing/schemas/patient.py
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PatientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=191)
    patient_number: Optional[str] = Field(None, max_length=32)
    phone: Optional[str] = Field(None, max_length=20)
    insurance_policy_id: Optional[int] = None


class PatientInsuranceIn(BaseModel):
    # None unlinks the current policy
    insurance_policy_id: Optional[int] = None


class PatientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_number: Optional[str] = None
    name: str
    phone: Optional[str] = None
    insurance_policy_id: Optional[int] = None
