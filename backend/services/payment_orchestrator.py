"""
Payment Orchestrator
====================
Owns the payment-link / invoice state machine.

Flow:
    create_link      -> fraud screen -> gateway adapter -> Payment_Links (active)
    ingest_webhook   -> adapter.process_webhook -> correlate link
                     -> idempotent link update -> invoice settlement
                     -> payment_received automation
    refund           -> adapter.refund_payment -> link refunded / partially_refunded

Idempotency comes from reading the persisted link first: a completion that
does not raise the paid amount, or repeats a recorded transaction, is never
applied again. A late completion still settles a failed or cancelled link;
refunded links never take new payments.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog

from gateways.registry import GatewayRegistry
from schemas.billing_models import (
    CreatePaymentLinkParams,
    Invoice,
    InvoicePaymentStatus,
    InvoiceStatus,
    PaymentAnalytics,
    PaymentLink,
    PaymentLinkStatus,
    PaymentStatus,
    RefundResult,
    WebhookEventType,
    WebhookResult,
)
from schemas.errors import InvalidTransition, NotFound, UnhandledEventType, ValidationError
from services.automation_events import AutomationEvents
from services.automation_log import AutomationLogger
from services.clock import SystemClock, ensure_utc, iso
from services.fraud_screen import FraudScreen
from storage.record_store import Collection, RecordStore

logger = structlog.get_logger().bind(component="payment_orchestrator")

REFUNDABLE_LINK_STATUSES = {PaymentLinkStatus.COMPLETED, PaymentLinkStatus.PARTIALLY_REFUNDED}
PAYABLE_LINK_STATUSES = [
    PaymentLinkStatus.ACTIVE,
    PaymentLinkStatus.COMPLETED,
    PaymentLinkStatus.FAILED,
    PaymentLinkStatus.CANCELLED,
]


def _dump(link: PaymentLink) -> Dict[str, Any]:
    return link.model_dump(mode="json", exclude={"is_terminal"})


class PaymentOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        registry: GatewayRegistry,
        fraud: FraudScreen,
        events: AutomationEvents,
        audit: AutomationLogger,
        clock=None,
        allow_overpayment: bool = False,
    ):
        self._store = store
        self._registry = registry
        self._fraud = fraud
        self._events = events
        self._audit = audit
        self._clock = clock or SystemClock()
        self.allow_overpayment = allow_overpayment

    # -------------------------------------------------------------------------
    # links
    # -------------------------------------------------------------------------

    async def create_link(self, gateway: str, params: CreatePaymentLinkParams) -> PaymentLink:
        adapter = self._registry.get(gateway)
        await self._fraud.ensure_allowed(params.amount, params.client_email)

        link = await adapter.create_payment_link(params)
        now = self._clock.now()
        link = link.model_copy(
            update={"status": PaymentLinkStatus.ACTIVE, "created_at": now, "updated_at": now}
        )
        await self._store.create(Collection.PAYMENT_LINKS, _dump(link))

        if link.url and await self._store.read(Collection.INVOICES, params.invoice_id):
            await self._store.update(Collection.INVOICES, params.invoice_id, {"payment_link": link.url})

        logger.info(
            "payment_link_created",
            gateway=gateway,
            link_id=link.id,
            invoice_id=link.invoice_id,
            amount=link.amount,
        )
        await self._audit.record(
            "payment_link_created",
            link.invoice_id,
            details={"gateway": gateway, "link_id": link.id, "amount": link.amount, "currency": link.currency},
        )
        return link

    async def get_status(self, gateway: str, payment_id: str) -> PaymentStatus:
        return await self._registry.get(gateway).get_payment_status(payment_id)

    async def _find_link(self, payment_id: Optional[str]) -> Optional[PaymentLink]:
        if not payment_id:
            return None
        record = await self._store.read(Collection.PAYMENT_LINKS, payment_id)
        if record is None:
            found = await self._store.query(Collection.PAYMENT_LINKS, {"transaction_id": payment_id})
            record = found[0] if found else None
        return PaymentLink.model_validate(record) if record else None

    async def _correlate(self, gateway: str, result: WebhookResult) -> Optional[PaymentLink]:
        link = await self._find_link(result.payment_id) or await self._find_link(result.transaction_id)
        if link is not None:
            return link

        invoice_id = result.metadata.get("invoice_id")
        if not invoice_id:
            return None
        candidates = await self._store.query(
            Collection.PAYMENT_LINKS,
            {"invoice_id": invoice_id, "gateway": gateway, "status": PAYABLE_LINK_STATUSES},
        )
        if not candidates:
            return None
        latest = max(candidates, key=lambda r: r.get("created_at") or "")
        return PaymentLink.model_validate(latest)

    # -------------------------------------------------------------------------
    # webhooks
    # -------------------------------------------------------------------------

    async def ingest_webhook(
        self,
        gateway: str,
        payload: bytes,
        signature: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookResult]:
        """Apply one provider callback. Returns None for events that are not modeled."""
        adapter = self._registry.get(gateway)
        try:
            result = await adapter.process_webhook(payload, signature, headers)
        except UnhandledEventType as e:
            logger.info("webhook_event_unhandled", gateway=gateway, event_type=e.event_type)
            await self._audit.record(
                "webhook_unhandled", "", details={"gateway": gateway, "event_type": e.event_type}
            )
            return None

        log = logger.bind(gateway=gateway, event_type=result.event_type.value, payment_id=result.payment_id)
        link = await self._correlate(gateway, result)
        if link is None:
            log.warning("webhook_link_not_found")
            await self._audit.record(
                "webhook_unmatched",
                result.payment_id,
                status="error",
                details={"gateway": gateway, "event_type": result.event_type.value},
            )
            return result

        if result.event_type == WebhookEventType.PAYMENT_COMPLETED:
            await self._complete(gateway, link, result)
        elif result.event_type == WebhookEventType.PAYMENT_FAILED:
            await self._close(link, PaymentLinkStatus.FAILED, "payment_failed", result)
        elif result.event_type == WebhookEventType.PAYMENT_EXPIRED:
            await self._close(link, PaymentLinkStatus.CANCELLED, "payment_expired", result)
        elif result.event_type == WebhookEventType.PAYMENT_DISPUTED:
            log.warning("payment_disputed", link_id=link.id)
            await self._audit.record(
                "payment_disputed",
                link.invoice_id,
                details={"gateway": gateway, "link_id": link.id, "transaction_id": result.transaction_id},
            )
        return result

    async def _complete(self, gateway: str, link: PaymentLink, result: WebhookResult) -> None:
        log = logger.bind(gateway=gateway, link_id=link.id, invoice_id=link.invoice_id)
        if link.status not in PAYABLE_LINK_STATUSES:
            log.info("webhook_ignored_refunded_link", status=link.status.value)
            return
        if result.transaction_id and result.transaction_id in link.transaction_ids:
            log.info("webhook_duplicate_ignored", transaction_id=result.transaction_id)
            return

        if result.incremental:
            captured = result.amount if result.amount is not None else result.paid_amount
            paid = round(link.paid_amount + (captured or 0), 2)
        else:
            paid = result.paid_amount if result.paid_amount is not None else result.amount
            if paid is None:
                paid = link.amount
        if paid <= link.paid_amount:
            log.info("webhook_duplicate_ignored", paid_amount=paid)
            return

        delta = round(paid - link.paid_amount, 2)
        transaction_ids = list(link.transaction_ids)
        if result.transaction_id:
            transaction_ids.append(result.transaction_id)
        now = self._clock.now()
        await self._store.update(
            Collection.PAYMENT_LINKS,
            link.id,
            {
                "status": PaymentLinkStatus.COMPLETED.value,
                "paid_amount": paid,
                "transaction_id": result.transaction_id or link.transaction_id,
                "transaction_ids": transaction_ids,
                "paid_at": iso(now),
                "updated_at": iso(now),
            },
        )
        await self._audit.record(
            "payment_completed",
            link.invoice_id,
            details={"gateway": gateway, "link_id": link.id, "paid_amount": paid},
        )

        await self._settle_invoice(link.invoice_id, delta, source=gateway)
        await self._events.on_payment_received(
            link.invoice_id,
            delta,
            {
                "gateway": gateway,
                "payment_id": link.id,
                "transaction_id": result.transaction_id,
                "payment_method": result.payment_method,
                "client_email": link.client_email,
                "client_name": link.client_name,
            },
        )

    async def _close(
        self, link: PaymentLink, status: PaymentLinkStatus, action: str, result: WebhookResult
    ) -> None:
        if link.status != PaymentLinkStatus.ACTIVE:
            logger.info("webhook_ignored_terminal_link", link_id=link.id, status=link.status.value)
            return
        await self._store.update(
            Collection.PAYMENT_LINKS,
            link.id,
            {"status": status.value, "updated_at": iso(self._clock.now())},
        )
        await self._audit.record(
            action,
            link.invoice_id,
            details={"link_id": link.id, "provider_event_type": result.provider_event_type},
        )

    # -------------------------------------------------------------------------
    # invoice settlement
    # -------------------------------------------------------------------------

    async def _settle_invoice(self, invoice_id: str, amount: float, source: str, strict: bool = False) -> Optional[Invoice]:
        """Add a payment to an invoice and move it to paid once fully covered."""
        record = await self._store.read(Collection.INVOICES, invoice_id)
        if record is None:
            if strict:
                raise NotFound(f"Invoice {invoice_id} not found")
            logger.warning("invoice_not_found_for_payment", invoice_id=invoice_id, source=source)
            await self._audit.record(
                "invoice_payment_applied", invoice_id, status="error", details={"error": "invoice not found"}
            )
            return None

        invoice = Invoice.model_validate(record)
        if invoice.status == InvoiceStatus.CANCELLED:
            if strict:
                raise InvalidTransition(f"Invoice {invoice_id} is cancelled")
            await self._store.update(
                Collection.INVOICES,
                invoice_id,
                {"paid_amount": round(invoice.paid_amount + amount, 2), "updated_at": iso(self._clock.now())},
            )
            await self._audit.record(
                "payment_on_cancelled_invoice", invoice_id, status="error", details={"amount": amount, "source": source}
            )
            return invoice

        paid_amount = round(invoice.paid_amount + amount, 2)
        excess = round(paid_amount - invoice.total_amount, 2) if invoice.total_amount > 0 else 0
        if excess > 0:
            await self._audit.record(
                "overpayment_recorded",
                invoice_id,
                details={"excess": excess, "tolerated": self.allow_overpayment, "source": source},
            )
            if not self.allow_overpayment:
                paid_amount = invoice.total_amount

        settled = invoice.model_copy(update={"paid_amount": paid_amount})
        if settled.is_fully_paid:
            settled = settled.transition_to(InvoiceStatus.PAID)
            settled = settled.model_copy(update={"payment_status": InvoicePaymentStatus.PAID})
        elif paid_amount > 0:
            settled = settled.model_copy(update={"payment_status": InvoicePaymentStatus.PARTIAL})

        now = iso(self._clock.now())
        changes = {
            "paid_amount": settled.paid_amount,
            "payment_status": settled.payment_status.value,
            "status": settled.status.value,
            "updated_at": now,
        }
        if settled.status == InvoiceStatus.PAID and invoice.status != InvoiceStatus.PAID:
            changes["paid_date"] = now
        await self._store.update(Collection.INVOICES, invoice_id, changes)
        await self._audit.record(
            "invoice_payment_applied",
            invoice_id,
            details={
                "amount": amount,
                "paid_amount": settled.paid_amount,
                "status": settled.status.value,
                "source": source,
            },
        )
        return settled

    async def record_manual_payment(
        self, invoice_id: str, amount: float, method: str = "manual", reference: Optional[str] = None
    ) -> Invoice:
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")

        invoice = await self._settle_invoice(invoice_id, amount, source=method, strict=True)
        await self._audit.record(
            "manual_payment_recorded",
            invoice_id,
            details={"amount": amount, "method": method, "reference": reference},
        )
        await self._events.on_payment_received(
            invoice_id, amount, {"payment_method": method, "reference": reference, "gateway": "manual"}
        )
        return invoice

    # -------------------------------------------------------------------------
    # refunds
    # -------------------------------------------------------------------------

    async def refund(self, gateway: str, payment_id: str, amount: Optional[float] = None) -> RefundResult:
        if amount is not None and amount <= 0:
            raise ValidationError("Refund amount must be positive")

        adapter = self._registry.get(gateway)
        result = await adapter.refund_payment(payment_id, amount)

        link = await self._find_link(payment_id)
        if link is None:
            logger.warning("refund_link_not_found", gateway=gateway, payment_id=payment_id)
        elif result.status != "failed" and link.status in REFUNDABLE_LINK_STATUSES:
            refunded = round(link.refunded_amount + result.amount, 2)
            full = amount is None or refunded >= link.paid_amount
            status = PaymentLinkStatus.REFUNDED if full else PaymentLinkStatus.PARTIALLY_REFUNDED
            await self._store.update(
                Collection.PAYMENT_LINKS,
                link.id,
                {"status": status.value, "refunded_amount": refunded, "updated_at": iso(self._clock.now())},
            )
            await self._audit.record(
                "payment_refunded",
                link.invoice_id,
                details={"gateway": gateway, "link_id": link.id, "amount": result.amount, "status": status.value},
            )
        return result

    # -------------------------------------------------------------------------
    # analytics
    # -------------------------------------------------------------------------

    async def analytics(
        self,
        gateway: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[PaymentAnalytics]:
        filters: Dict[str, Any] = {}
        if gateway:
            filters["gateway"] = gateway
        window = {}
        if start:
            window[">="] = iso(start)
        if end:
            window["<="] = iso(end)
        if window:
            filters["created_at"] = window

        links = [PaymentLink.model_validate(r) for r in await self._store.query(Collection.PAYMENT_LINKS, filters)]
        if not links:
            return []

        period_start = start or min(ensure_utc(l.created_at) for l in links)
        period_end = end or max(ensure_utc(l.created_at) for l in links)

        grouped: Dict[str, List[PaymentLink]] = defaultdict(list)
        for link in links:
            grouped[link.gateway].append(link)

        report = []
        for name, group in sorted(grouped.items()):
            total = len(group)
            # a later refund does not undo a successful payment
            successful = [l for l in group if l.paid_at is not None]
            failed = [l for l in group if l.status == PaymentLinkStatus.FAILED]
            amount = sum(l.amount for l in group)
            durations = [
                (ensure_utc(l.paid_at) - ensure_utc(l.created_at)).total_seconds() / 86400
                for l in successful
            ]
            report.append(
                PaymentAnalytics(
                    gateway=name,
                    total_transactions=total,
                    successful_transactions=len(successful),
                    failed_transactions=len(failed),
                    success_rate=round(len(successful) / total * 100, 2),
                    total_amount=round(amount, 2),
                    average_payment_time=round(sum(durations) / len(durations)) if durations else 0,
                    average_transaction_amount=round(amount / total, 2),
                    period_start=period_start,
                    period_end=period_end,
                )
            )
        return report
