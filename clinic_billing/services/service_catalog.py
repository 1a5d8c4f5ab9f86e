# clinic_billing/services/service_catalog.py
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_billing.core.errors import NotFoundError, ValidationError
from clinic_billing.models.service import Service
from clinic_billing.schemas.service import ServiceCreate, ServiceUpdate
from clinic_billing.services.billing_math import money2

logger = logging.getLogger(__name__)


def get_service(db: Session, service_id: int) -> Service:
    svc = db.get(Service, int(service_id))
    if not svc:
        raise NotFoundError("Service", service_id)
    return svc


def list_services(db: Session,
                  *,
                  active: Optional[bool] = None,
                  search: Optional[str] = None) -> List[Service]:
    q = db.query(Service)
    if active is not None:
        q = q.filter(Service.is_active.is_(active))
    if search and search.strip():
        q = q.filter(Service.name.ilike(f"%{search.strip()}%"))
    return q.order_by(Service.name.asc()).all()


def _commit(db: Session, svc: Service) -> Service:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError("Service code already in use",
                              details={"code": svc.code}) from e
    db.refresh(svc)
    return svc


def create_service(db: Session, payload: ServiceCreate) -> Service:
    svc = Service(
        name=payload.name.strip(),
        code=(payload.code or None),
        category=(payload.category or None),
        unit_price=money2(payload.unit_price),
        is_active=payload.is_active,
    )
    db.add(svc)
    svc = _commit(db, svc)
    logger.info("Service %s created price=%s", svc.id, svc.unit_price)
    return svc


def update_service(db: Session, service_id: int,
                   payload: ServiceUpdate) -> Service:
    # existing invoice lines keep their copied price
    svc = get_service(db, service_id)
    data = payload.model_dump(exclude_unset=True)
    if "unit_price" in data and data["unit_price"] is not None:
        data["unit_price"] = money2(data["unit_price"])
    for k, v in data.items():
        setattr(svc, k, v)
    return _commit(db, svc)
