# clinic_billing/models/service.py
from __future__ import annotations

from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime

from clinic_billing.db.base import Base


class Service(Base):
    """
    Billable service master (consultation, procedure, lab test ...).

    Invoice lines copy name + unit_price at creation, so editing a service
    never changes an issued invoice.
    """
    __tablename__ = "services"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=True, index=True)
    name = Column(String(191), nullable=False)
    category = Column(String(64), nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )
