# FILE: clinic_billing/api/routes_patients.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinic_billing.api.deps import CurrentUser, get_db, require_billing_user
from clinic_billing.api.response import ok
from clinic_billing.schemas.patient import (
    PatientCreate,
    PatientInsuranceIn,
    PatientOut,
)
from clinic_billing.services import patients as patient_svc

router = APIRouter()


@router.post("")
def create_patient(
        payload: PatientCreate,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    patient = patient_svc.create_patient(db, payload)
    return ok(PatientOut.model_validate(patient), status_code=201)


@router.get("/{patient_id}")
def get_patient(
        patient_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    return ok(PatientOut.model_validate(patient_svc.get_patient(db, patient_id)))


@router.put("/{patient_id}/insurance")
def set_insurance(
        patient_id: int,
        payload: PatientInsuranceIn,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    patient = patient_svc.set_patient_policy(db, patient_id,
                                             payload.insurance_policy_id)
    return ok(PatientOut.model_validate(patient))
