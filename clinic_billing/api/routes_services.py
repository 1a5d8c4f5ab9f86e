# FILE: clinic_billing/api/routes_services.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinic_billing.api.deps import CurrentUser, get_db, require_billing_user
from clinic_billing.api.response import ok
from clinic_billing.schemas.service import ServiceCreate, ServiceOut, ServiceUpdate
from clinic_billing.services import service_catalog

router = APIRouter()


@router.get("")
def get_services(
        active: Optional[bool] = Query(None),
        search: Optional[str] = Query(None, max_length=100),
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    rows = service_catalog.list_services(db, active=active, search=search)
    return ok([ServiceOut.model_validate(s) for s in rows])


@router.post("")
def create_service(
        payload: ServiceCreate,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    svc = service_catalog.create_service(db, payload)
    return ok(ServiceOut.model_validate(svc), status_code=201)


@router.get("/{service_id}")
def get_service(
        service_id: int,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    return ok(ServiceOut.model_validate(service_catalog.get_service(db, service_id)))


@router.put("/{service_id}")
def update_service(
        service_id: int,
        payload: ServiceUpdate,
        db: Session = Depends(get_db),
        user: CurrentUser = Depends(require_billing_user),
):
    svc = service_catalog.update_service(db, service_id, payload)
    return ok(ServiceOut.model_validate(svc))
