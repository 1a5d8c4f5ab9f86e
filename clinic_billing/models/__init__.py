# clinic_billing/models/__init__.py
from .service import Service
from .patient import Patient
from .insurance import InsurancePolicy, CoverageRule
from .billing import (
    Invoice,
    InvoiceItem,
    InvoiceNumberSeries,
    InvoiceStatus,
    Payment,
    Exoneration,
)

__all__ = [
    "Service",
    "Patient",
    "InsurancePolicy",
    "CoverageRule",
    "Invoice",
    "InvoiceItem",
    "InvoiceNumberSeries",
    "InvoiceStatus",
    "Payment",
    "Exoneration",
]
