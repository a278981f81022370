"""
Shared fixtures for the billing engine test suite.

Everything runs against the in-memory record store, a scripted mock
gateway and a notifier with no transports configured, so no test talks
to a real provider.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import List, Mapping, Optional

import httpx
import pytest

from gateways.base import PaymentGatewayAdapter
from gateways.registry import GatewayRegistry
from schemas.billing_models import (
    CreatePaymentLinkParams,
    PaymentLink,
    PaymentStatus,
    ProviderPaymentState,
    RefundResult,
    WebhookResult,
)
from schemas.errors import SignatureInvalid, UnhandledEventType
from services.container import BillingContainer
from services.notifications import NotificationDispatcher, NotificationSettings
from storage.record_store import Collection, InMemoryRecordStore
from tasks.overdue_sweeper import SweeperConfig

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def day(offset: int) -> str:
    """ISO date relative to TODAY."""
    return (TODAY + timedelta(days=offset)).isoformat()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class ManualClock:
    """Frozen clock. sleep() blocks until wake() is called."""

    def __init__(self, now: datetime = NOW):
        self.current = now
        self.sleeps: List[float] = []
        self._wake = asyncio.Event()

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)

    def wake(self) -> None:
        self._wake.set()

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await self._wake.wait()


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class MockGateway(PaymentGatewayAdapter):
    """
    Scripted provider. Webhook payloads are WebhookResult JSON signed with
    the literal signature "valid"; event_type "unknown" is unhandled.
    """

    name = "mock"
    signature_header = "x-mock-signature"

    def __init__(self):
        super().__init__()
        self.created: List[CreatePaymentLinkParams] = []
        self.refunds: List[tuple] = []
        self.refund_status = "completed"

    async def create_payment_link(self, params: CreatePaymentLinkParams) -> PaymentLink:
        self.created.append(params)
        link_id = f"mock_link_{len(self.created)}"
        return PaymentLink(
            id=link_id,
            gateway=self.name,
            url=f"https://pay.example.com/{link_id}",
            amount=params.amount,
            currency=params.currency.upper(),
            description=params.description,
            invoice_id=params.invoice_id,
            client_email=params.client_email,
            client_name=params.client_name,
            allow_partial_payments=params.allow_partial_payments,
            metadata=params.metadata,
        )

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookResult:
        if signature != "valid":
            raise SignatureInvalid("Invalid webhook signature")
        event = json.loads(payload)
        if event.get("event_type") == "unknown":
            raise UnhandledEventType(self.name, "unknown")
        return WebhookResult.model_validate(event)

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        return PaymentStatus(id=payment_id, status=ProviderPaymentState.COMPLETED, amount=100.0, currency="usd")

    async def refund_payment(self, payment_id: str, amount: Optional[float] = None) -> RefundResult:
        self.refunds.append((payment_id, amount))
        return RefundResult(id=f"re_{len(self.refunds)}", status=self.refund_status, amount=amount or 100.0)


def webhook_payload(event_type: str, payment_id: str, paid_amount: Optional[float] = None, **extra) -> bytes:
    body = {
        "event_type": event_type,
        "payment_id": payment_id,
        "status": extra.pop("status", "completed"),
        "amount": paid_amount,
        "paid_amount": paid_amount,
        **extra,
    }
    return json.dumps(body).encode()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

async def seed_records(store: InMemoryRecordStore) -> None:
    await store.create(
        Collection.CLIENTS,
        {"id": "client-1", "name": "Acme Corp", "email": "billing@acme.com", "phone": "+15550100"},
    )
    await store.create(
        Collection.PROJECTS,
        {"id": "proj-1", "name": "Website Redesign", "client_id": "client-1", "status": "active", "end_date": day(30)},
    )
    await store.create(
        Collection.INVOICES,
        {
            "id": "inv-1",
            "invoice_number": "INV-001",
            "client_id": "client-1",
            "project_id": "proj-1",
            "currency": "USD",
            "total_amount": 100.0,
            "status": "sent",
            "payment_status": "pending",
            "paid_amount": 0.0,
            "due_date": day(10),
        },
    )


class QuietSweeperConfig(SweeperConfig):
    ENABLED = False


def build_container(store, clock, gateway, **kwargs) -> BillingContainer:
    registry = GatewayRegistry()
    registry.register(gateway)
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    notifier = NotificationDispatcher(store, NotificationSettings(), http_client=http, clock=clock)
    return BillingContainer(
        store,
        registry,
        notifier=notifier,
        clock=clock,
        sweeper_config=QuietSweeperConfig(),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
async def container(store, clock, gateway):
    """Fully wired container with seeded records, default rules and templates."""
    await seed_records(store)
    built = build_container(store, clock, gateway)
    await built.engine.seed_defaults()
    yield built
    await built.shutdown()


@pytest.fixture
def audit_actions(store):
    """Async helper returning audit actions, optionally filtered by status."""

    async def collect(status: Optional[str] = None) -> List[str]:
        entries = await store.read_all(Collection.AUTOMATION_LOGS)
        return [e["action"] for e in entries if status is None or e["status"] == status]

    return collect


@pytest.fixture
def link_params():
    return CreatePaymentLinkParams(
        amount=100.0,
        currency="USD",
        description="Invoice INV-001",
        invoice_id="inv-1",
        client_email="billing@acme.com",
        client_name="Acme Corp",
    )
