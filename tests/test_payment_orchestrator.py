"""Tests for the payment orchestrator: links, webhooks, settlement and refunds."""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import pytest

from conftest import build_container, day, seed_records, webhook_payload
from gateways.razorpay_gateway import RazorpayGateway
from schemas.billing_models import (
    CreatePaymentLinkParams,
    InvoiceStatus,
    PaymentLink,
    PaymentLinkStatus,
    ReminderConfig,
    ScheduleStatus,
    WebhookEventType,
)
from schemas.errors import (
    FraudDeclined,
    GatewayNotFound,
    InvalidTransition,
    NotFound,
    SignatureInvalid,
    ValidationError,
)
from storage.record_store import Collection

RAZORPAY_SECRET = "rzp_webhook_secret"


async def _invoice(store, invoice_id="inv-1"):
    return await store.read(Collection.INVOICES, invoice_id)


async def _link(store, link_id="mock_link_1"):
    return await store.read(Collection.PAYMENT_LINKS, link_id)


def _razorpay_capture(payment_id: str, amount_paise: int) -> bytes:
    payment = {
        "id": payment_id,
        "amount": amount_paise,
        "currency": "INR",
        "method": "upi",
        "notes": {"invoice_id": "inv-1"},
    }
    return json.dumps({"event": "payment.captured", "payload": {"payment": {"entity": payment}}}).encode()


def _razorpay_signature(payload: bytes) -> str:
    return hmac.new(RAZORPAY_SECRET.encode(), payload, hashlib.sha256).hexdigest()


# ===================================================================
# Link creation
# ===================================================================

class TestCreateLink:

    @pytest.mark.asyncio
    async def test_persists_active_link(self, container, store, link_params, clock):
        link = await container.orchestrator.create_link("mock", link_params)

        assert link.status == PaymentLinkStatus.ACTIVE
        record = await _link(store, link.id)
        assert record["status"] == "active"
        assert record["amount"] == 100.0
        assert record["created_at"] == "2024-06-01T12:00:00Z"
        assert "is_terminal" not in record

    @pytest.mark.asyncio
    async def test_sets_payment_link_on_invoice(self, container, store, link_params):
        link = await container.orchestrator.create_link("mock", link_params)
        assert (await _invoice(store))["payment_link"] == link.url

    @pytest.mark.asyncio
    async def test_audits_creation(self, container, link_params, audit_actions):
        await container.orchestrator.create_link("mock", link_params)
        assert "payment_link_created" in await audit_actions()

    @pytest.mark.asyncio
    async def test_unknown_gateway(self, container, link_params):
        with pytest.raises(GatewayNotFound):
            await container.orchestrator.create_link("bitcoin", link_params)

    @pytest.mark.asyncio
    async def test_high_value_declined_without_side_effects(self, container, store, gateway, audit_actions):
        params = CreatePaymentLinkParams(
            amount=100000,
            currency="USD",
            description="Huge",
            invoice_id="inv-1",
            client_email="billing@acme.com",
            client_name="Acme Corp",
        )
        with pytest.raises(FraudDeclined) as exc_info:
            await container.orchestrator.create_link("mock", params)

        assert exc_info.value.flag == "high_amount"
        assert gateway.created == []
        assert await store.read_all(Collection.PAYMENT_LINKS) == []
        assert "payment_link_created" not in await audit_actions()

    @pytest.mark.asyncio
    async def test_disposable_email_declined(self, container, link_params):
        params = link_params.model_copy(update={"client_email": "someone@mailinator.com"})
        with pytest.raises(FraudDeclined) as exc_info:
            await container.orchestrator.create_link("mock", params)
        assert exc_info.value.flag == "suspicious_email"

    @pytest.mark.asyncio
    async def test_rapid_attempts_declined(self, container, link_params):
        for _ in range(5):
            await container.orchestrator.create_link("mock", link_params)
        with pytest.raises(FraudDeclined) as exc_info:
            await container.orchestrator.create_link("mock", link_params)
        assert exc_info.value.flag == "rapid_payments"


# ===================================================================
# Webhooks
# ===================================================================

class TestWebhooks:

    @pytest.mark.asyncio
    async def test_completed_payment_settles_invoice(self, container, store, link_params):
        link = await container.orchestrator.create_link("mock", link_params)
        result = await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0, transaction_id="txn_1"), "valid"
        )

        assert result.event_type == WebhookEventType.PAYMENT_COMPLETED
        record = await _link(store, link.id)
        assert record["status"] == "completed"
        assert record["paid_amount"] == 100.0
        assert record["transaction_id"] == "txn_1"

        invoice = await _invoice(store)
        assert invoice["status"] == "paid"
        assert invoice["payment_status"] == "paid"
        assert invoice["paid_amount"] == 100.0
        assert invoice["paid_date"] == "2024-06-01T12:00:00Z"

    @pytest.mark.asyncio
    async def test_duplicate_webhook_is_idempotent(self, container, store, link_params, audit_actions):
        container.notifier.send_email = AsyncMock(return_value=True)
        link = await container.orchestrator.create_link("mock", link_params)
        payload = webhook_payload("payment_completed", link.id, 100.0, transaction_id="txn_1")

        await container.orchestrator.ingest_webhook("mock", payload, "valid")
        first = await _invoice(store)
        await container.orchestrator.ingest_webhook("mock", payload, "valid")

        assert await _invoice(store) == first
        actions = await audit_actions()
        assert actions.count("payment_completed") == 1
        assert actions.count("invoice_payment_applied") == 1
        assert container.notifier.send_email.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, container, store, link_params):
        link = await container.orchestrator.create_link("mock", link_params)
        with pytest.raises(SignatureInvalid):
            await container.orchestrator.ingest_webhook(
                "mock", webhook_payload("payment_completed", link.id, 100.0), "forged"
            )
        assert (await _link(store, link.id))["status"] == "active"

    @pytest.mark.asyncio
    async def test_unhandled_event_returns_none(self, container, audit_actions):
        result = await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("unknown", "whatever"), "valid"
        )
        assert result is None
        assert "webhook_unhandled" in await audit_actions()

    @pytest.mark.asyncio
    async def test_unmatched_webhook_audited(self, container, audit_actions):
        result = await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", "nobody", 10.0), "valid"
        )
        assert result is not None
        assert "webhook_unmatched" in await audit_actions(status="error")

    @pytest.mark.asyncio
    async def test_correlates_by_invoice_metadata(self, container, store, link_params):
        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock",
            webhook_payload("payment_completed", "pi_unknown", 100.0, metadata={"invoice_id": "inv-1"}),
            "valid",
        )
        assert (await _link(store, link.id))["status"] == "completed"
        assert (await _invoice(store))["status"] == "paid"

    @pytest.mark.asyncio
    async def test_correlates_by_transaction_id(self, container, store, link_params):
        link = await container.orchestrator.create_link("mock", link_params)
        await store.update(Collection.PAYMENT_LINKS, link.id, {"transaction_id": "pi_123"})
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_failed", "pi_123", status="failed"), "valid"
        )
        assert (await _link(store, link.id))["status"] == "failed"

    @pytest.mark.asyncio
    async def test_expired_cancels_link(self, container, store, link_params, audit_actions):
        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_expired", link.id, status="cancelled"), "valid"
        )
        assert (await _link(store, link.id))["status"] == "cancelled"
        assert "payment_expired" in await audit_actions()

    @pytest.mark.asyncio
    async def test_dispute_is_audited_only(self, container, store, link_params, audit_actions):
        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0), "valid"
        )
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_disputed", link.id, 100.0, status="failed"), "valid"
        )
        assert (await _link(store, link.id))["status"] == "completed"
        assert "payment_disputed" in await audit_actions()

    @pytest.mark.asyncio
    async def test_paid_invoice_never_regresses(self, container, store, link_params):
        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0), "valid"
        )
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_failed", link.id, status="failed"), "valid"
        )
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_expired", link.id, status="cancelled"), "valid"
        )

        assert (await _link(store, link.id))["status"] == "completed"
        assert (await _invoice(store))["status"] == "paid"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "closing_event, closing_status",
        [("payment_failed", "failed"), ("payment_expired", "cancelled")],
    )
    async def test_late_completion_settles_closed_link(
        self, container, store, link_params, audit_actions, closing_event, closing_status
    ):
        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload(closing_event, link.id, status=closing_status), "valid"
        )
        assert (await _link(store, link.id))["status"] == closing_status

        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0, transaction_id="txn_late"), "valid"
        )

        record = await _link(store, link.id)
        assert record["status"] == "completed"
        assert record["paid_amount"] == 100.0
        assert record["transaction_ids"] == ["txn_late"]
        invoice = await _invoice(store)
        assert invoice["status"] == "paid"
        assert invoice["paid_amount"] == 100.0
        assert "payment_completed" in await audit_actions()

    @pytest.mark.asyncio
    async def test_refunded_link_ignores_completion(self, container, store, link_params):
        link = await container.orchestrator.create_link("mock", link_params)
        await store.update(Collection.PAYMENT_LINKS, link.id, {"status": "refunded"})

        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0, transaction_id="txn_2"), "valid"
        )

        assert (await _link(store, link.id))["status"] == "refunded"
        assert (await _invoice(store))["status"] == "sent"

    @pytest.mark.asyncio
    async def test_razorpay_captures_accumulate(self, container, store, audit_actions):
        container.registry.register(
            RazorpayGateway("rzp_key", "rzp_secret", webhook_secret=RAZORPAY_SECRET, client=AsyncMock())
        )
        await store.create(
            Collection.PAYMENT_LINKS,
            PaymentLink(
                id="plink_x",
                gateway="razorpay",
                amount=100.0,
                currency="INR",
                invoice_id="inv-1",
                client_email="billing@acme.com",
                allow_partial_payments=True,
            ).model_dump(mode="json", exclude={"is_terminal"}),
        )

        first = _razorpay_capture("pay_1", 4000)
        second = _razorpay_capture("pay_2", 3000)
        await container.orchestrator.ingest_webhook("razorpay", first, _razorpay_signature(first))
        await container.orchestrator.ingest_webhook("razorpay", second, _razorpay_signature(second))
        await container.orchestrator.ingest_webhook("razorpay", second, _razorpay_signature(second))

        record = await _link(store, "plink_x")
        assert record["paid_amount"] == 70.0
        assert record["transaction_ids"] == ["pay_1", "pay_2"]
        invoice = await _invoice(store)
        assert invoice["paid_amount"] == 70.0
        assert invoice["payment_status"] == "partial"
        assert "webhook_unmatched" not in await audit_actions()

        paid = json.dumps(
            {
                "event": "payment_link.paid",
                "payload": {
                    "payment_link": {
                        "entity": {"id": "plink_x", "amount": 10000, "amount_paid": 7000, "currency": "INR"}
                    },
                    "payment": {"entity": {"id": "pay_2", "method": "upi"}},
                },
            }
        ).encode()
        await container.orchestrator.ingest_webhook("razorpay", paid, _razorpay_signature(paid))
        assert (await _invoice(store))["paid_amount"] == 70.0


# ===================================================================
# Invoice settlement
# ===================================================================

class TestSettlement:

    @pytest.mark.asyncio
    async def test_partial_then_full_payment(self, container, store, link_params):
        params = link_params.model_copy(update={"allow_partial_payments": True})
        link = await container.orchestrator.create_link("mock", params)

        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 40.0), "valid"
        )
        invoice = await _invoice(store)
        assert invoice["status"] == "sent"
        assert invoice["payment_status"] == "partial"
        assert invoice["paid_amount"] == 40.0

        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0), "valid"
        )
        invoice = await _invoice(store)
        assert invoice["status"] == "paid"
        assert invoice["paid_amount"] == 100.0

    @pytest.mark.asyncio
    async def test_overpayment_capped_by_default(self, container, store, link_params, audit_actions):
        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 150.0), "valid"
        )
        assert (await _invoice(store))["paid_amount"] == 100.0
        assert "overpayment_recorded" in await audit_actions()

    @pytest.mark.asyncio
    async def test_overpayment_tolerated_when_allowed(self, store, clock, gateway, link_params):
        await seed_records(store)
        built = build_container(store, clock, gateway, allow_overpayment=True)
        try:
            link = await built.orchestrator.create_link("mock", link_params)
            await built.orchestrator.ingest_webhook(
                "mock", webhook_payload("payment_completed", link.id, 150.0), "valid"
            )
            invoice = await _invoice(store)
            assert invoice["paid_amount"] == 150.0
            assert invoice["status"] == "paid"
        finally:
            await built.shutdown()

    @pytest.mark.asyncio
    async def test_payment_on_cancelled_invoice_keeps_status(self, container, store, link_params, audit_actions):
        link = await container.orchestrator.create_link("mock", link_params)
        await store.update(Collection.INVOICES, "inv-1", {"status": "cancelled"})
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0), "valid"
        )
        invoice = await _invoice(store)
        assert invoice["status"] == "cancelled"
        assert invoice["paid_amount"] == 100.0
        assert "payment_on_cancelled_invoice" in await audit_actions(status="error")


# ===================================================================
# Manual payments
# ===================================================================

class TestManualPayments:

    @pytest.mark.asyncio
    async def test_full_manual_payment(self, container, store, audit_actions):
        invoice = await container.orchestrator.record_manual_payment("inv-1", 100.0, "bank_transfer", "REF-9")
        assert invoice.status == InvoiceStatus.PAID
        assert (await _invoice(store))["status"] == "paid"
        actions = await audit_actions()
        assert "manual_payment_recorded" in actions
        assert "payment_received_trigger" in actions

    @pytest.mark.asyncio
    async def test_rejects_non_positive_amount(self, container):
        with pytest.raises(ValidationError):
            await container.orchestrator.record_manual_payment("inv-1", 0)

    @pytest.mark.asyncio
    async def test_missing_invoice(self, container):
        with pytest.raises(NotFound):
            await container.orchestrator.record_manual_payment("inv-404", 10.0)

    @pytest.mark.asyncio
    async def test_cancelled_invoice(self, container, store):
        await store.update(Collection.INVOICES, "inv-1", {"status": "cancelled"})
        with pytest.raises(InvalidTransition):
            await container.orchestrator.record_manual_payment("inv-1", 10.0)


# ===================================================================
# Refunds
# ===================================================================

class TestRefunds:

    async def _paid_link(self, container, link_params):
        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0), "valid"
        )
        return link

    @pytest.mark.asyncio
    async def test_partial_then_full_refund(self, container, store, gateway, link_params):
        link = await self._paid_link(container, link_params)

        await container.orchestrator.refund("mock", link.id, 40.0)
        record = await _link(store, link.id)
        assert record["status"] == "partially_refunded"
        assert record["refunded_amount"] == 40.0

        await container.orchestrator.refund("mock", link.id, 60.0)
        record = await _link(store, link.id)
        assert record["status"] == "refunded"
        assert record["refunded_amount"] == 100.0
        assert gateway.refunds == [(link.id, 40.0), (link.id, 60.0)]

    @pytest.mark.asyncio
    async def test_full_refund_leaves_invoice_paid(self, container, store, link_params):
        link = await self._paid_link(container, link_params)
        await container.orchestrator.refund("mock", link.id)
        assert (await _link(store, link.id))["status"] == "refunded"
        assert (await _invoice(store))["status"] == "paid"

    @pytest.mark.asyncio
    async def test_failed_refund_does_not_touch_link(self, container, store, gateway, link_params):
        link = await self._paid_link(container, link_params)
        gateway.refund_status = "failed"
        await container.orchestrator.refund("mock", link.id, 10.0)
        assert (await _link(store, link.id))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_rejects_non_positive_amount(self, container):
        with pytest.raises(ValidationError):
            await container.orchestrator.refund("mock", "mock_link_1", 0)


# ===================================================================
# Analytics
# ===================================================================

class TestAnalytics:

    @pytest.mark.asyncio
    async def test_success_rate_per_gateway(self, container, clock, link_params):
        paid = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.create_link("mock", link_params)
        clock.advance(days=2)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", paid.id, 100.0), "valid"
        )

        report = await container.orchestrator.analytics()
        assert len(report) == 1
        entry = report[0]
        assert entry.gateway == "mock"
        assert entry.total_transactions == 2
        assert entry.successful_transactions == 1
        assert entry.success_rate == 50.0
        assert entry.total_amount == 200.0
        assert entry.average_payment_time == 2

    @pytest.mark.asyncio
    async def test_refunded_payments_still_count_as_successful(self, container, link_params):
        full = await container.orchestrator.create_link("mock", link_params)
        partial = await container.orchestrator.create_link("mock", link_params)
        for link in (full, partial):
            await container.orchestrator.ingest_webhook(
                "mock", webhook_payload("payment_completed", link.id, 100.0), "valid"
            )
        await container.orchestrator.refund("mock", full.id)
        await container.orchestrator.refund("mock", partial.id, 40.0)

        [entry] = await container.orchestrator.analytics()
        assert entry.total_transactions == 2
        assert entry.successful_transactions == 2
        assert entry.success_rate == 100.0

    @pytest.mark.asyncio
    async def test_empty_window(self, container):
        assert await container.orchestrator.analytics(gateway="stripe") == []


# ===================================================================
# End to end
# ===================================================================

class TestPaymentLifecycle:

    @pytest.mark.asyncio
    async def test_link_to_paid_invoice(self, container, store, link_params, audit_actions):
        container.notifier.send_email = AsyncMock(return_value=True)
        schedules = await container.scheduler.schedule_invoice_payment_reminder(
            "inv-1", ReminderConfig(days_before=3, template="invoice_payment_reminder")
        )
        assert len(schedules) == 1
        assert container.scheduler.armed == [schedules[0].id]

        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0, transaction_id="txn_1"), "valid"
        )

        invoice = await _invoice(store)
        assert invoice["status"] == "paid"
        assert invoice["payment_status"] == "paid"

        container.notifier.send_email.assert_awaited_once()
        recipient, subject, body = container.notifier.send_email.await_args.args
        assert recipient == "billing@acme.com"
        assert subject == "Payment received for invoice INV-001"
        assert "100.0" in body

        schedule = await store.read(Collection.REMINDER_SCHEDULES, schedules[0].id)
        assert schedule["status"] == ScheduleStatus.CANCELLED.value
        assert container.scheduler.armed == []
        assert "payment_received_trigger" in await audit_actions()

    @pytest.mark.asyncio
    async def test_second_invoice_untouched(self, container, store, link_params):
        await store.create(
            Collection.INVOICES,
            {"id": "inv-2", "client_id": "client-1", "total_amount": 50.0, "status": "sent", "due_date": day(5)},
        )
        link = await container.orchestrator.create_link("mock", link_params)
        await container.orchestrator.ingest_webhook(
            "mock", webhook_payload("payment_completed", link.id, 100.0), "valid"
        )
        assert (await _invoice(store, "inv-2"))["status"] == "sent"
