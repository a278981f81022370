"""HTTP surface tests through FastAPI's TestClient."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from conftest import build_container, day, seed_records, webhook_payload
from storage.record_store import Collection

LINK_BODY = {
    "gateway": "mock",
    "amount": 100,
    "currency": "USD",
    "description": "Invoice INV-001",
    "invoiceId": "inv-1",
    "clientEmail": "billing@acme.com",
    "clientName": "Acme Corp",
}


async def _seed(store):
    await seed_records(store)
    await store.create(
        Collection.INVOICES,
        {
            "id": "inv-od",
            "invoice_number": "INV-042",
            "client_id": "client-1",
            "total_amount": 200.0,
            "status": "overdue",
            "due_date": day(-10),
        },
    )


@pytest.fixture
def api(store, clock, gateway):
    asyncio.run(_seed(store))
    container = build_container(store, clock, gateway)
    with TestClient(create_app(container)) as client:
        yield client


def _post_webhook(api, payload, signature="valid"):
    headers = {"x-mock-signature": signature} if signature else {}
    return api.post("/payments/webhooks/mock", content=payload, headers=headers)


# ===================================================================
# Health
# ===================================================================

class TestHealth:

    def test_health(self, api):
        response = api.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["gateways"] == ["mock"]
        assert "X-Request-ID" in response.headers

    def test_gateways(self, api):
        assert api.get("/payments/gateways").json() == {"gateways": ["mock"]}


# ===================================================================
# Payment links
# ===================================================================

class TestPaymentLinks:

    def test_create_link(self, api, gateway):
        response = api.post("/payments/links", json=LINK_BODY)

        assert response.status_code == 201
        body = response.json()
        assert body["id"] == "mock_link_1"
        assert body["url"] == "https://pay.example.com/mock_link_1"
        assert body["invoice_id"] == "inv-1"
        assert body["status"] == "active"
        assert gateway.created[0].client_email == "billing@acme.com"

    def test_validation_error(self, api):
        body = {k: v for k, v in LINK_BODY.items() if k != "amount"}
        response = api.post("/payments/links", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_fraud_declined(self, api, gateway):
        response = api.post("/payments/links", json={**LINK_BODY, "amount": 250000})
        assert response.status_code == 400
        assert response.json()["error"] == "fraud_declined"
        assert gateway.created == []

    def test_unknown_gateway(self, api):
        response = api.post("/payments/links", json={**LINK_BODY, "gateway": "square"})
        assert response.status_code == 400
        assert response.json()["error"] == "gateway_not_found"

    def test_status(self, api):
        response = api.get("/payments/status/mock/mock_link_1")
        assert response.status_code == 200
        assert response.json()["status"] == "completed"


# ===================================================================
# Webhooks
# ===================================================================

class TestWebhooks:

    def test_completed_payment_settles_invoice(self, api, store):
        api.post("/payments/links", json=LINK_BODY)

        response = _post_webhook(api, webhook_payload("payment_completed", "mock_link_1", 100.0))

        assert response.status_code == 200
        assert response.json() == {"received": True, "handled": True, "eventType": "payment_completed"}
        invoice = asyncio.run(store.read(Collection.INVOICES, "inv-1"))
        assert invoice["status"] == "paid"

    def test_bad_signature_rejected(self, api):
        response = _post_webhook(api, webhook_payload("payment_completed", "mock_link_1", 100.0), "forged")
        assert response.status_code == 401
        assert response.json()["error"] == "signature_invalid"

    def test_unhandled_event_acknowledged(self, api):
        response = _post_webhook(api, webhook_payload("unknown", "mock_link_1"))
        assert response.status_code == 200
        assert response.json() == {"received": True, "handled": False}

    def test_malformed_payload_acknowledged(self, api):
        response = _post_webhook(api, b"not json")
        assert response.status_code == 200
        assert response.json()["handled"] is False


# ===================================================================
# Manual payments and refunds
# ===================================================================

class TestManualPaymentsAndRefunds:

    def test_manual_payment(self, api):
        response = api.post(
            "/payments/manual", json={"invoiceId": "inv-1", "amount": 100, "method": "bank_transfer"}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "paid"
        assert body["paid_amount"] == 100.0

    def test_manual_payment_unknown_invoice(self, api):
        response = api.post("/payments/manual", json={"invoiceId": "nope", "amount": 10})
        assert response.status_code == 404

    def test_refund(self, api, gateway):
        response = api.post("/payments/refund", json={"gateway": "mock", "paymentId": "mock_link_1", "amount": 40})
        assert response.status_code == 200
        assert response.json()["amount"] == 40.0
        assert gateway.refunds == [("mock_link_1", 40.0)]

    def test_refund_amount_must_be_positive(self, api):
        response = api.post("/payments/refund", json={"gateway": "mock", "paymentId": "mock_link_1", "amount": 0})
        assert response.status_code == 400

    def test_analytics(self, api):
        api.post("/payments/links", json=LINK_BODY)
        [entry] = api.get("/payments/analytics").json()["analytics"]
        assert entry["gateway"] == "mock"
        assert entry["total_transactions"] == 1


# ===================================================================
# Reminders and late fees
# ===================================================================

class TestRemindersAndLateFees:

    def test_create_payment_reminder(self, api):
        response = api.post(
            "/payments/reminders",
            json={"invoiceId": "inv-1", "type": "before_due", "daysOffset": 3, "template": "invoice_payment_reminder"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["id"]
        assert body["scheduledAt"].startswith(day(7))

    def test_invalid_reminder_type(self, api):
        response = api.post(
            "/payments/reminders",
            json={"invoiceId": "inv-1", "type": "someday", "daysOffset": 3, "template": "invoice_payment_reminder"},
        )
        assert response.status_code == 400

    def test_process_reminders(self, api):
        response = api.post("/payments/reminders/process")
        assert response.status_code == 200
        assert response.json()["processed"] == 0

    def test_late_fee_rule_and_processing(self, api, store):
        response = api.post(
            "/payments/late-fee-rules",
            json={"name": "Standard", "type": "percentage", "amount": 5, "gracePeriodDays": 3},
        )
        assert response.status_code == 201
        assert response.json()["id"]

        processed = api.post("/payments/late-fees/process")
        assert processed.json() == {"message": "Late fees processed successfully", "applied": 1}
        invoice = asyncio.run(store.read(Collection.INVOICES, "inv-od"))
        assert invoice["total_amount"] == 210.0


# ===================================================================
# Automation rules
# ===================================================================

RULE_BODY = {
    "name": "Thank big payers",
    "trigger": {"type": "payment_received"},
    "conditions": [{"field": "amount", "operator": "gt", "value": 1000}],
    "actions": [{"type": "send_email", "config": {"template": "payment_thank_you", "recipient": "{{client_email}}"}}],
}


class TestAutomationRules:

    def test_create_list_and_update(self, api):
        created = api.post("/automation/rules", json=RULE_BODY)
        assert created.status_code == 201
        rule_id = created.json()["id"]

        names = [r["name"] for r in api.get("/automation/rules").json()]
        assert "Thank big payers" in names

        patched = api.patch(f"/automation/rules/{rule_id}", json={"is_active": False})
        assert patched.status_code == 200
        assert patched.json()["is_active"] is False
        assert patched.json()["name"] == "Thank big payers"

    def test_unknown_action_rejected(self, api):
        body = {**RULE_BODY, "actions": [{"type": "launch_rocket", "config": {}}]}
        assert api.post("/automation/rules", json=body).status_code == 400

    def test_update_unknown_rule(self, api):
        response = api.patch("/automation/rules/missing", json={"is_active": False})
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_automation_analytics(self, api):
        body = api.get("/automation/analytics").json()
        assert body["total_executions"] == 0
        assert "performance_metrics" in body
