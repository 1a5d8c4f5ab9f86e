# clinic_billing/services/patients.py
from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_billing.core.errors import NotFoundError, ValidationError
from clinic_billing.models.patient import Patient
from clinic_billing.schemas.patient import PatientCreate
from clinic_billing.services.insurance_admin import get_policy


def get_patient(db: Session, patient_id: int) -> Patient:
    patient = db.get(Patient, int(patient_id))
    if not patient:
        raise NotFoundError("Patient", patient_id)
    return patient


def create_patient(db: Session, payload: PatientCreate) -> Patient:
    if payload.insurance_policy_id is not None:
        get_policy(db, payload.insurance_policy_id)
    patient = Patient(
        name=payload.name.strip(),
        patient_number=(payload.patient_number or None),
        phone=(payload.phone or None),
        insurance_policy_id=payload.insurance_policy_id,
    )
    db.add(patient)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError("Patient number already in use",
                              details={"patient_number":
                                       payload.patient_number}) from e
    db.refresh(patient)
    return patient


def set_patient_policy(db: Session, patient_id: int,
                       policy_id: Optional[int]) -> Patient:
    """Link (or unlink with None) the patient's single insurance policy."""
    patient = get_patient(db, patient_id)
    if policy_id is not None:
        get_policy(db, policy_id)
    patient.insurance_policy_id = policy_id
    db.commit()
    db.refresh(patient)
    return patient
