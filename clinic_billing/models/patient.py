# clinic_billing/models/patient.py
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from clinic_billing.db.base import Base


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)
    patient_number = Column(String(32), unique=True, index=True, nullable=True)
    name = Column(String(191), nullable=False)
    phone = Column(String(20), nullable=True)

    # at most one policy per patient
    insurance_policy_id = Column(Integer,
                                 ForeignKey("insurance_policies.id"),
                                 nullable=True,
                                 index=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    insurance_policy = relationship("InsurancePolicy",
                                    back_populates="patients")
