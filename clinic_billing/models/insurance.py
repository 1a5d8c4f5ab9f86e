# clinic_billing/models/insurance.py
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from clinic_billing.db.base import Base


class InsurancePolicy(Base):
    """
    Insurance plan a patient can be linked to.
    Coverage per service lives in CoverageRule.
    """
    __tablename__ = "insurance_policies"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(191), unique=True, nullable=False)
    code = Column(String(64), unique=True, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    coverage_rules = relationship(
        "CoverageRule",
        back_populates="policy",
        cascade="all, delete-orphan",
    )
    patients = relationship("Patient", back_populates="insurance_policy")


class CoverageRule(Base):
    __tablename__ = "insurance_coverage_rules"
    __table_args__ = (
        # upsert key: one rule per (policy, service)
        UniqueConstraint("policy_id",
                         "service_id",
                         name="uq_coverage_policy_service"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
            "mysql_collate": "utf8mb4_unicode_ci",
        },
    )

    id = Column(Integer, primary_key=True, index=True)
    policy_id = Column(
        Integer,
        ForeignKey("insurance_policies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    service_id = Column(
        Integer,
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # 0..100
    coverage_percent = Column(Numeric(5, 2), nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    policy = relationship("InsurancePolicy", back_populates="coverage_rules")
    service = relationship("Service")
