# FILE: clinic_billing/models/billing.py
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    ForeignKey,
    Text,
    JSON,
)
from sqlalchemy.orm import relationship

from clinic_billing.db.base import Base


class InvoiceStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    EXONERATED = "EXONERATED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({
    InvoiceStatus.PAID,
    InvoiceStatus.EXONERATED,
    InvoiceStatus.CANCELLED,
})

# statuses that still accept money
OPEN_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.PARTIAL})


class InvoiceNumberSeries(Base):
    """
    One row per invoice prefix. Locked FOR UPDATE while handing out
    the next number.
    """
    __tablename__ = "invoice_number_series"

    id = Column(Integer, primary_key=True)
    prefix = Column(String(16), unique=True, nullable=False)
    padding = Column(Integer, nullable=False, default=8)
    next_number = Column(Integer, nullable=False, default=1)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )


class Invoice(Base):
    """
    Aggregate root of the billing ledger.

    total_amount / paid_amount / pending_amount / status are authoritative.
    insurance_calculation is a denormalized snapshot of the coverage
    breakdown taken at creation (or on explicit refresh) and is never
    read back to derive the money fields.

    version is the optimistic-lock counter: a concurrent writer that
    loaded an older version fails its UPDATE with StaleDataError.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_patient_status", "patient_id", "status"),
        Index("ix_invoices_created_at", "created_at"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
            "mysql_collate": "utf8mb4_unicode_ci",
        },
    )

    id = Column(Integer, primary_key=True, index=True)

    # INV-00000001 ...
    invoice_number = Column(String(32), unique=True, index=True, nullable=False)

    patient_id = Column(
        Integer,
        ForeignKey("patients.id"),
        nullable=False,
        index=True,
    )
    created_by = Column(Integer, nullable=True)
    # treating doctor, for filtering only
    doctor_id = Column(Integer, nullable=True, index=True)

    status = Column(
        SAEnum(InvoiceStatus,
               name="invoice_status",
               native_enum=False,
               length=16),
        nullable=False,
        default=InvoiceStatus.PENDING,
    )

    # Money
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    # always total_amount - paid_amount
    pending_amount = Column(Numeric(12, 2), nullable=False, default=0)

    due_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    # Insurance snapshot
    insurance_policy_id = Column(Integer,
                                 ForeignKey("insurance_policies.id"),
                                 nullable=True)
    insurance_calculation = Column(JSON, nullable=True)
    insurance_snapshot_stale = Column(Boolean, default=False, nullable=False)

    # Overdue is a flag, not a status
    is_overdue = Column(Boolean, default=False, nullable=False)
    overdue_at = Column(DateTime, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    __mapper_args__ = {"version_id_col": version}

    patient = relationship("Patient")
    insurance_policy = relationship("InsurancePolicy")

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.id",
    )
    payments = relationship(
        "Payment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="Payment.id",
    )
    exoneration = relationship(
        "Exoneration",
        back_populates="invoice",
        cascade="all, delete-orphan",
        uselist=False,
    )

    # ---------- Billing math helpers ----------
    @staticmethod
    def _d(v) -> Decimal:
        if v is None:
            return Decimal("0")
        return Decimal(str(v))

    @staticmethod
    def _q2(v: Decimal) -> Decimal:
        return v.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def items_total(self) -> Decimal:
        total = Decimal("0")
        for it in (self.items or []):
            total += self._d(it.total_price)
        return self._q2(total)

    def payments_total(self) -> Decimal:
        total = Decimal("0")
        for p in (self.payments or []):
            total += self._d(p.amount)
        return self._q2(total)

    def sync_pending(self) -> None:
        """pending = total - paid, never below zero."""
        due = self._d(self.total_amount) - self._d(self.paid_amount)
        if due < 0:
            due = Decimal("0")
        self.pending_amount = self._q2(due)


class InvoiceItem(Base):
    __tablename__ = "invoice_items"
    __table_args__ = (Index("ix_invoice_items_invoice", "invoice_id"), )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)

    # copied from the service at creation
    description = Column(String(300), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)

    # quantity * unit_price
    total_price = Column(Numeric(12, 2), nullable=False, default=0)

    notes = Column(String(255), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="items")
    service = relationship("Service")


class Payment(Base):
    """
    Money received against one invoice. Rows are never edited or deleted;
    their sum equals invoice.paid_amount.
    """

    __tablename__ = "invoice_payments"
    __table_args__ = (Index("ix_invoice_payments_invoice", "invoice_id"), )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String(32), nullable=True)  # cash | card | transfer ...
    notes = Column(String(255), nullable=True)
    recorded_by = Column(Integer, nullable=True)
    paid_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="payments")


class Exoneration(Base):
    """
    One-time write-off of an invoice's outstanding balance.
    exonerated_amount is the pending balance at the moment of exoneration.
    """

    __tablename__ = "invoice_exonerations"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    original_amount = Column(Numeric(12, 2), nullable=False)
    exonerated_amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=False)
    authorized_by = Column(Integer, nullable=True)

    is_printed = Column(Boolean, default=False, nullable=False)
    printed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="exoneration")
