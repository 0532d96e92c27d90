from decimal import Decimal

from fastapi.testclient import TestClient

from app.core.errors import GatewayError
from app.main import app
from app.services import invoice_ledger as ledger


def _invoice_body(price="1000.00"):
    return {
        "patient_id": "P-100",
        "visit_id": "V-1",
        "items": [{
            "item_type": "consultation",
            "description": "Specialist consultation",
            "quantity": 1,
            "unit_price": price,
        }],
    }


def test_missing_token_is_401(client):
    r = client.get("/api/billing/invoices")
    assert r.status_code == 401
    assert r.json()["success"] is False


def test_missing_permission_is_403(client, bearer):
    headers = bearer(["billing.view"])
    r = client.post("/api/billing/invoices",
                    json=_invoice_body(),
                    headers=headers)
    assert r.status_code == 403
    assert r.json()["error"]["msg"] == "Forbidden: missing billing.create"


def test_create_fetch_and_pay_invoice(client, auth_headers):
    r = client.post("/api/billing/invoices",
                    json=_invoice_body(),
                    headers=auth_headers)
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    inv = body["data"]
    assert Decimal(inv["total_amount"]) == Decimal("1160.00")
    assert inv["status"] == "pending"
    assert len(inv["items"]) == 1

    r = client.post("/api/billing/payments",
                    json={
                        "invoice_id": inv["id"],
                        "amount": "160.00",
                        "method": "cash"
                    },
                    headers=auth_headers)
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["payment"]["received_by"] == "cashier-1"
    assert Decimal(data["invoice"]["balance_amount"]) == Decimal("1000.00")
    assert data["invoice"]["status"] == "partially_paid"

    r = client.get(f"/api/billing/invoices/by-number/{inv['invoice_number']}",
                   headers=auth_headers)
    assert r.status_code == 200
    assert len(r.json()["data"]["payments"]) == 1

    r = client.get(f"/api/billing/invoices/{inv['id']}/payments",
                   headers=auth_headers)
    assert len(r.json()["data"]) == 1

    r = client.get("/api/billing/invoices?patient_id=P-100",
                   headers=auth_headers)
    assert r.json()["meta"]["total"] == 1

    r = client.get("/api/billing/summary", headers=auth_headers)
    assert r.status_code == 200
    assert Decimal(r.json()["data"]["total_collected"]) == Decimal("160.00")


def test_validation_error_envelope(client, auth_headers):
    r = client.post("/api/billing/invoices",
                    json={
                        "patient_id": "P-1",
                        "items": []
                    },
                    headers=auth_headers)
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["code"] == "validation_error"
    assert err["details"]


def test_business_errors_map_to_status_codes(client, auth_headers):
    r = client.get("/api/billing/invoices/999", headers=auth_headers)
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"

    inv = client.post("/api/billing/invoices",
                      json=_invoice_body("100.00"),
                      headers=auth_headers).json()["data"]
    client.post("/api/billing/payments",
                json={
                    "invoice_id": inv["id"],
                    "amount": "116.00"
                },
                headers=auth_headers)
    r = client.post(f"/api/billing/invoices/{inv['id']}/cancel",
                    json={"reason": "wrong patient"},
                    headers=auth_headers)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "conflict"


def test_payment_amount_floor(client, auth_headers):
    r = client.post("/api/billing/payments",
                    json={
                        "invoice_id": 1,
                        "amount": "0.00"
                    },
                    headers=auth_headers)
    assert r.status_code == 400


def test_stk_push_endpoint(client, auth_headers, fake_mpesa):
    inv = client.post("/api/billing/invoices",
                      json=_invoice_body("500.00"),
                      headers=auth_headers).json()["data"]
    r = client.post("/api/mpesa/stk-push",
                    json={
                        "phone_number": "0712345678",
                        "amount": "580",
                        "invoice_number": inv["invoice_number"],
                    },
                    headers=auth_headers)
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["status"] == "pending"
    assert data["account_reference"] == inv["invoice_number"]
    fake_mpesa.stk_push.assert_called_once()


def test_stk_push_gateway_timeout_is_502(client, auth_headers, fake_mpesa):
    fake_mpesa.stk_push.side_effect = GatewayError("M-Pesa request timed out",
                                                   retryable=True)
    r = client.post("/api/mpesa/stk-push",
                    json={
                        "phone_number": "0712345678",
                        "amount": "100",
                        "account_reference": "WALKIN",
                    },
                    headers=auth_headers)
    assert r.status_code == 502
    assert r.json()["error"]["code"] == "gateway_error"


def test_stk_push_rejects_bad_phone(client, auth_headers, fake_mpesa):
    r = client.post("/api/mpesa/stk-push",
                    json={
                        "phone_number": "12345",
                        "amount": "100",
                        "account_reference": "X"
                    },
                    headers=auth_headers)
    assert r.status_code == 400
    fake_mpesa.stk_push.assert_not_called()


def test_manual_allocation_endpoint(client, auth_headers):
    inv = client.post("/api/billing/invoices",
                      json=_invoice_body("100.00"),
                      headers=auth_headers).json()["data"]
    client.post("/api/mpesa/deposit-confirmation",
                json={
                    "TransID": "UNMATCHED1",
                    "TransAmount": "50.00",
                    "BillRefNumber": "bed 4",
                    "MSISDN": "254712345678",
                })

    r = client.get("/api/mpesa/transactions/unallocated",
                   headers=auth_headers)
    rows = r.json()["data"]
    assert [t["transaction_id"] for t in rows] == ["UNMATCHED1"]

    r = client.post(f"/api/mpesa/transactions/{rows[0]['id']}/allocate",
                    json={"invoice_id": inv["id"]},
                    headers=auth_headers)
    assert r.status_code == 200
    assert Decimal(r.json()["data"]["amount"]) == Decimal("50.00")

    r = client.get("/api/mpesa/statistics", headers=auth_headers)
    assert r.json()["data"]["allocated_count"] == 1


def test_register_urls_requires_admin(client, bearer, fake_mpesa):
    headers = bearer(["mpesa.read"])
    r = client.post("/api/mpesa/register-urls", headers=headers)
    assert r.status_code == 403

    fake_mpesa.register_c2b_urls.return_value = {
        "ResponseDescription": "success"
    }
    admin = bearer(is_admin=True)
    r = client.post("/api/mpesa/register-urls", headers=admin)
    assert r.status_code == 200
    fake_mpesa.register_c2b_urls.assert_called_once()


def test_unexpected_error_is_internal_error_envelope(auth_headers,
                                                     monkeypatch):

    def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ledger, "financial_summary", broken)
    with TestClient(app, raise_server_exceptions=False) as c:
        r = c.get("/api/billing/summary", headers=auth_headers)
    assert r.status_code == 500
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "internal_error"
    assert body["error"]["msg"] == "Internal server error"
