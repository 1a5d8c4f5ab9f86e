# clinic_billing/db/init_db.py
from __future__ import annotations

import argparse
import logging

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from clinic_billing.core.config import settings
from clinic_billing.db.base import Base
from clinic_billing.db.session import engine as default_engine, SessionLocal
from clinic_billing.models import InvoiceNumberSeries
# Import all models so metadata is complete
import clinic_billing.models  # noqa: F401

logger = logging.getLogger(__name__)


def create_tables(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
    names = sorted(inspect(engine).get_table_names())
    logger.info("Tables ready: %s", names)


def seed_number_series(db: Session) -> None:
    """
    Ensure the invoice series row exists; safe to run multiple times.
    """
    prefix = settings.INVOICE_NUMBER_PREFIX
    row = (db.query(InvoiceNumberSeries).filter(
        InvoiceNumberSeries.prefix == prefix).first())
    if row:
        return
    db.add(
        InvoiceNumberSeries(
            prefix=prefix,
            padding=settings.INVOICE_NUMBER_PADDING,
            next_number=1,
        ))
    db.commit()
    logger.info("Seeded invoice number series prefix=%s", prefix)


def init_db(engine: Engine = default_engine) -> None:
    create_tables(engine)
    db = SessionLocal(bind=engine)
    try:
        seed_number_series(db)
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create billing tables")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.LOG_LEVEL)
    init_db()


if __name__ == "__main__":
    main()
