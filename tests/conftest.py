import os

# must be set before clinic_billing.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from clinic_billing.api.deps import CurrentUser, current_user, get_db
from clinic_billing.db.base import Base
from clinic_billing.db.init_db import seed_number_series
from clinic_billing.db.session import make_engine
from clinic_billing.main import app
from clinic_billing.models import (
    CoverageRule,
    InsurancePolicy,
    Patient,
    Service,
)
from clinic_billing.services.coverage_cache import coverage_cache
from clinic_billing.services.invoice_ledger import LineRequest, create_invoice

BILLING_USER = CurrentUser(id=7, role="BILLING")


@pytest.fixture()
def engine(tmp_path):
    # file-backed so two sessions see each other's commits
    eng = make_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    factory = sessionmaker(bind=engine,
                           autocommit=False,
                           autoflush=False,
                           future=True)
    s = factory()
    seed_number_series(s)
    s.close()
    return factory


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def _clear_coverage_cache():
    coverage_cache.invalidate()
    yield
    coverage_cache.invalidate()


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------
@pytest.fixture()
def services(db):
    rows = {
        "consult": Service(code="CONS", name="Consultation",
                           unit_price=Decimal("50.00")),
        "lab": Service(code="LAB", name="Lab panel",
                       unit_price=Decimal("200.00")),
        "xray": Service(code="XRAY", name="X-Ray",
                        unit_price=Decimal("150.00")),
        "retired": Service(code="OLD", name="Retired service",
                           unit_price=Decimal("10.00"), is_active=False),
    }
    db.add_all(rows.values())
    db.commit()
    return rows


@pytest.fixture()
def policy(db, services):
    p = InsurancePolicy(name="Salud Plus", code="SP")
    db.add(p)
    db.flush()
    db.add_all([
        CoverageRule(policy_id=p.id,
                     service_id=services["consult"].id,
                     coverage_percent=Decimal("80")),
        CoverageRule(policy_id=p.id,
                     service_id=services["lab"].id,
                     coverage_percent=Decimal("100")),
        CoverageRule(policy_id=p.id,
                     service_id=services["xray"].id,
                     coverage_percent=Decimal("33.33"),
                     is_active=False),
    ])
    db.commit()
    return p


@pytest.fixture()
def patient(db):
    p = Patient(patient_number="P-0001", name="Ana Torres")
    db.add(p)
    db.commit()
    return p


@pytest.fixture()
def insured_patient(db, policy):
    p = Patient(patient_number="P-0002",
                name="Luis Vega",
                insurance_policy_id=policy.id)
    db.add(p)
    db.commit()
    return p


@pytest.fixture()
def make_invoice(db, patient, services):
    """Invoice factory: make_invoice(("consult", 2), ("lab", 1))."""

    def _make(*lines, patient_id=None, **kwargs):
        reqs = [
            LineRequest(service_id=services[key].id, quantity=qty)
            for key, qty in lines
        ]
        return create_invoice(db,
                              patient_id=patient_id or patient.id,
                              lines=reqs,
                              actor_id=BILLING_USER.id,
                              **kwargs)

    return _make


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------
@pytest.fixture()
def client(session_factory):

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[current_user] = lambda: BILLING_USER
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
