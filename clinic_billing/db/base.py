# clinic_billing/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All billing tables (services, policies, invoices, ...) inherit from this."""
    pass
