from decimal import Decimal

import pytest
from jose import jwt

from clinic_billing.api.deps import CurrentUser, current_user
from clinic_billing.core.config import settings
from clinic_billing.main import app

API = settings.API_V1_STR


def _create_invoice(client, patient_id, items, **extra):
    body = {"patient_id": patient_id, "items": items, **extra}
    return client.post(f"{API}/billing/invoices", json=body)


def _error(resp):
    body = resp.json()
    assert body["ok"] is False
    return body["error"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "up"


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------
def test_invoice_lifecycle(client, patient, services):
    resp = _create_invoice(client, patient.id, [
        {"service_id": services["consult"].id, "quantity": 2},
        {"service_id": services["lab"].id},
    ])
    assert resp.status_code == 201
    inv = resp.json()["data"]
    assert inv["status"] == "PENDING"
    assert inv["invoice_number"] == "INV-00000001"
    assert Decimal(inv["total_amount"]) == Decimal("300")
    assert inv["created_by"] == 7

    pay_url = f"{API}/billing/invoices/{inv['id']}/payments"
    resp = client.post(pay_url, json={"amount": "100", "method": "cash"})
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["invoice"]["status"] == "PARTIAL"
    assert Decimal(data["invoice"]["pending_amount"]) == Decimal("200")
    assert data["payment"]["recorded_by"] == 7

    resp = client.post(pay_url, json={"amount": "200.01"})
    assert resp.status_code == 409
    err = _error(resp)
    assert err["code"] == "overpayment"
    assert err["retryable"] is False

    resp = client.post(pay_url, json={"amount": "200"})
    assert resp.json()["data"]["invoice"]["status"] == "PAID"

    resp = client.get(pay_url)
    assert len(resp.json()["data"]) == 2

    resp = client.post(f"{API}/billing/invoices/{inv['id']}/cancel", json={})
    assert resp.status_code == 409
    assert _error(resp)["code"] == "invalid_state"


def test_create_invoice_with_insurance(client, insured_patient, services):
    resp = _create_invoice(client,
                           insured_patient.id,
                           [{"service_id": services["consult"].id,
                             "quantity": 2}],
                           apply_insurance=True)
    assert resp.status_code == 201
    inv = resp.json()["data"]
    assert Decimal(inv["total_amount"]) == Decimal("20")
    snap = inv["insurance_calculation"]
    assert snap["policy_name"] == "Salud Plus"
    assert snap["total_insurance_covers"] == "80.00"


def test_create_invoice_validation(client, patient, services):
    resp = _create_invoice(client, patient.id, [])
    assert resp.status_code == 422
    assert _error(resp)["code"] == "validation_error"

    resp = _create_invoice(client, 999,
                           [{"service_id": services["consult"].id}])
    assert resp.status_code == 404
    assert _error(resp)["details"] == {"entity": "Patient", "id": 999}


def test_unknown_invoice(client):
    resp = client.get(f"{API}/billing/invoices/404")
    assert resp.status_code == 404
    assert _error(resp)["code"] == "not_found"


def test_items_endpoints(client, patient, services):
    inv = _create_invoice(client, patient.id,
                          [{"service_id": services["consult"].id}]).json()["data"]
    base = f"{API}/billing/invoices/{inv['id']}/items"

    only_item = inv["items"][0]["id"]
    resp = client.delete(f"{base}/{only_item}")
    assert resp.status_code == 422

    resp = client.post(base, json={"service_id": services["xray"].id})
    assert resp.status_code == 200
    assert Decimal(resp.json()["data"]["total_amount"]) == Decimal("200")

    resp = client.delete(f"{base}/{only_item}")
    data = resp.json()["data"]
    assert [it["description"] for it in data["items"]] == ["X-Ray"]
    assert Decimal(data["pending_amount"]) == Decimal("150")


def test_exonerate_once(client, patient, services):
    inv = _create_invoice(client, patient.id,
                          [{"service_id": services["xray"].id}]).json()["data"]
    url = f"{API}/billing/invoices/{inv['id']}/exonerate"

    resp = client.post(url, json={"reason": "Charity"})
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["invoice"]["status"] == "EXONERATED"
    assert Decimal(data["exoneration"]["exonerated_amount"]) == Decimal("150")

    resp = client.post(url, json={"reason": "Again"})
    assert resp.status_code == 409
    assert _error(resp)["code"] == "already_exonerated"

    resp = client.get(f"{API}/billing/exonerations")
    listing = resp.json()["data"]
    assert listing["summary"]["total_count"] == 1
    ex_id = listing["exonerations"][0]["id"]

    resp = client.post(f"{API}/billing/exonerations/{ex_id}/mark-printed")
    assert resp.json()["data"]["is_printed"] is True
    resp = client.get(f"{API}/billing/exonerations")
    assert resp.json()["data"]["summary"]["total_count"] == 0


@pytest.mark.parametrize("amount", ["1e30", "10000000000", "10.005"])
def test_payment_amount_bounds(client, patient, services, amount):
    inv = _create_invoice(client, patient.id,
                          [{"service_id": services["consult"].id}]).json()["data"]
    resp = client.post(f"{API}/billing/invoices/{inv['id']}/payments",
                       json={"amount": amount})
    assert resp.status_code == 422
    assert _error(resp)["code"] == "validation_error"


def test_line_quantity_upper_bound(client, patient, services):
    resp = _create_invoice(client, patient.id, [
        {"service_id": services["consult"].id, "quantity": 10**30},
    ])
    assert resp.status_code == 422
    assert _error(resp)["code"] == "validation_error"


def test_delete_invoice_is_admin_only(client, patient, services):
    inv = _create_invoice(client, patient.id,
                          [{"service_id": services["consult"].id}]).json()["data"]
    url = f"{API}/billing/invoices/{inv['id']}"

    resp = client.delete(url)
    assert resp.status_code == 403

    app.dependency_overrides[current_user] = lambda: CurrentUser(id=1,
                                                                 role="ADMIN")
    resp = client.delete(url)
    assert resp.status_code == 200
    assert resp.json()["data"] == {"id": inv["id"], "deleted": True}

    resp = client.delete(url)
    assert resp.status_code == 404
    assert _error(resp)["code"] == "not_found"
    assert client.get(url).status_code == 404


def test_invoice_listing_filters(client, patient, insured_patient, services):
    for pid in (patient.id, patient.id, insured_patient.id):
        _create_invoice(client, pid, [{"service_id": services["consult"].id}])

    resp = client.get(f"{API}/billing/invoices",
                      params={"patient_id": patient.id, "per_page": 1})
    body = resp.json()
    assert resp.status_code == 200
    assert len(body["data"]) == 1
    assert body["meta"] == {"page": 1, "per_page": 1, "total": 2, "pages": 2}

    resp = client.get(f"{API}/billing/invoices", params={"search": "Vega"})
    assert [i["patient_id"] for i in resp.json()["data"]] == [insured_patient.id]

    # wildcards are matched literally
    for term in ("%", "_", "INV_"):
        resp = client.get(f"{API}/billing/invoices", params={"search": term})
        assert resp.json()["meta"]["total"] == 0

    resp = client.get(f"{API}/billing/invoices",
                      params={"status": "PENDING", "is_overdue": "false"})
    assert resp.json()["meta"]["total"] == 3


@pytest.mark.parametrize("params", [
    {"date_from": "2026-02-01", "date_to": "2026-01-01"},
    {"per_page": 500},
    {"status": "OVERDUE"},
])
def test_invoice_listing_rejects_bad_filters(client, params):
    resp = client.get(f"{API}/billing/invoices", params=params)
    assert resp.status_code == 422
    assert _error(resp)["code"] == "validation_error"


def test_mark_overdue_and_snapshot_endpoints(client, insured_patient, services):
    inv = _create_invoice(client,
                          insured_patient.id,
                          [{"service_id": services["consult"].id}],
                          due_date="2026-01-01").json()["data"]
    base = f"{API}/billing/invoices/{inv['id']}"

    resp = client.post(f"{base}/mark-overdue", json={"as_of": "2026-01-02"})
    assert resp.json()["data"]["is_overdue"] is True
    assert resp.json()["data"]["status"] == "PENDING"

    resp = client.post(f"{base}/insurance-snapshot", json={})
    data = resp.json()["data"]
    assert data["insurance_snapshot_stale"] is False
    assert data["insurance_calculation"]["total_patient_pays"] == "10.00"


# ---------------------------------------------------------------------------
# Insurance
# ---------------------------------------------------------------------------
def test_calculate_coverage(client, insured_patient, services):
    resp = client.post(f"{API}/insurance/calculate-coverage", json={
        "patient_id": insured_patient.id,
        "services": [{"service_id": services["consult"].id, "quantity": 2}],
    })
    assert resp.status_code == 200
    data = resp.json()["data"]
    line = data["items"][0]
    assert Decimal(line["base_price"]) == Decimal("100")
    assert Decimal(line["insurance_covers"]) == Decimal("80")
    assert Decimal(line["patient_pays"]) == Decimal("20")
    assert data["policy_name"] == "Salud Plus"


def test_calculate_coverage_unknown_policy(client, services):
    resp = client.post(f"{API}/insurance/calculate-coverage", json={
        "policy_id": 999,
        "services": [{"service_id": services["consult"].id}],
    })
    assert resp.status_code == 404
    assert _error(resp)["code"] == "policy_not_found"


def test_coverage_rule_upsert_never_duplicates(client, policy, services):
    body = {
        "policy_id": policy.id,
        "service_id": services["xray"].id,
        "coverage_percent": "50",
    }
    first = client.post(f"{API}/insurance/coverage", json=body).json()["data"]
    body["coverage_percent"] = "60"
    second = client.post(f"{API}/insurance/coverage", json=body).json()["data"]
    assert first["id"] == second["id"]
    assert second["is_active"] is True
    assert Decimal(second["coverage_percent"]) == Decimal("60")

    resp = client.get(f"{API}/insurance/coverage",
                      params={"policy_id": policy.id,
                              "service_id": services["xray"].id})
    assert len(resp.json()["data"]) == 1

    resp = client.delete(f"{API}/insurance/coverage/{first['id']}")
    assert resp.json()["data"]["deleted"] is True
    resp = client.put(f"{API}/insurance/coverage/{first['id']}",
                      json={"is_active": False})
    assert resp.status_code == 404


def test_coverage_percent_out_of_range(client, policy, services):
    resp = client.post(f"{API}/insurance/coverage", json={
        "policy_id": policy.id,
        "service_id": services["xray"].id,
        "coverage_percent": "120",
    })
    assert resp.status_code == 422


def test_policies(client):
    resp = client.post(f"{API}/insurance/policies", json={"name": "Vida"})
    assert resp.status_code == 201
    pid = resp.json()["data"]["id"]

    resp = client.put(f"{API}/insurance/policies/{pid}",
                      json={"is_active": False})
    assert resp.json()["data"]["is_active"] is False

    resp = client.get(f"{API}/insurance/policies", params={"active": "false"})
    assert [p["name"] for p in resp.json()["data"]] == ["Vida"]

    resp = client.post(f"{API}/insurance/policies", json={"name": "Vida"})
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Services / patients
# ---------------------------------------------------------------------------
def test_services_crud(client):
    resp = client.post(f"{API}/services",
                       json={"name": "Ultrasound", "unit_price": "80.50"})
    assert resp.status_code == 201
    sid = resp.json()["data"]["id"]

    resp = client.put(f"{API}/services/{sid}", json={"unit_price": "90"})
    assert Decimal(resp.json()["data"]["unit_price"]) == Decimal("90")

    resp = client.get(f"{API}/services", params={"search": "ultra"})
    assert [s["id"] for s in resp.json()["data"]] == [sid]

    resp = client.post(f"{API}/services",
                       json={"name": "Bad", "unit_price": "-1"})
    assert resp.status_code == 422


def test_patient_insurance_link(client, policy):
    resp = client.post(f"{API}/patients", json={"name": "Marta Ruiz"})
    assert resp.status_code == 201
    pid = resp.json()["data"]["id"]

    resp = client.put(f"{API}/patients/{pid}/insurance",
                      json={"insurance_policy_id": policy.id})
    assert resp.json()["data"]["insurance_policy_id"] == policy.id

    resp = client.put(f"{API}/patients/{pid}/insurance",
                      json={"insurance_policy_id": 999})
    assert resp.status_code == 404

    resp = client.put(f"{API}/patients/{pid}/insurance",
                      json={"insurance_policy_id": None})
    assert resp.json()["data"]["insurance_policy_id"] is None


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def _token(**claims):
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def test_auth_gate(client):
    app.dependency_overrides.pop(current_user, None)
    url = f"{API}/services"

    resp = client.get(url)
    assert resp.status_code == 401
    assert _error(resp)["msg"] == "Missing token"

    resp = client.get(url, headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401

    doctor = _token(sub="3", role="DOCTOR")
    resp = client.get(url, headers={"Authorization": f"Bearer {doctor}"})
    assert resp.status_code == 403

    billing = _token(sub="4", role="billing")
    resp = client.get(url, headers={"Authorization": f"Bearer {billing}"})
    assert resp.status_code == 200
