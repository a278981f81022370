"""
Late Fees
=========
Percentage or fixed late fees applied to overdue invoices once a rule's
grace period has passed. Each (invoice, rule) pair is charged at most once;
the Late_Fees collection is the dedup record.
"""

from typing import List, Optional

import structlog

from schemas.billing_models import Invoice, InvoiceStatus, LateFee, LateFeeRule, ReminderMethod
from services.automation_log import AutomationLogger
from services.clock import SystemClock, iso
from services.notifications import NotificationDispatcher
from storage.record_store import Collection, RecordStore

logger = structlog.get_logger().bind(component="late_fees")

LATE_FEE_TEMPLATE = "late_fee_applied"


class LateFeeService:
    def __init__(
        self,
        store: RecordStore,
        notifier: NotificationDispatcher,
        audit: AutomationLogger,
        clock=None,
    ):
        self._store = store
        self._notifier = notifier
        self._audit = audit
        self._clock = clock or SystemClock()

    async def create_late_fee_rule(self, rule: LateFeeRule) -> LateFeeRule:
        rule = rule.model_copy(update={"created_at": self._clock.now()})
        await self._store.create(Collection.LATE_FEE_RULES, rule.model_dump(mode="json"))
        await self._audit.record(
            "late_fee_rule_created",
            rule.id,
            details={"name": rule.name, "type": rule.type, "amount": rule.amount},
        )
        return rule

    async def process_late_fees(self) -> List[LateFee]:
        rules = [
            LateFeeRule.model_validate(r)
            for r in await self._store.query(Collection.LATE_FEE_RULES, {"is_active": True})
        ]
        invoices = await self._store.query(Collection.INVOICES, {"status": InvoiceStatus.OVERDUE.value})

        applied = []
        for record in invoices:
            for rule in rules:
                try:
                    fee = await self.apply_if_eligible(record["id"], rule)
                except Exception as e:
                    logger.error("late_fee_failed", invoice_id=record["id"], rule_id=rule.id, error=str(e))
                    await self._audit.error("late_fee_applied", record["id"], e, rule_id=rule.id)
                    continue
                if fee is not None:
                    applied.append(fee)

        logger.info("late_fees_processed", invoices=len(invoices), rules=len(rules), applied=len(applied))
        return applied

    async def apply_if_eligible(self, invoice_id: str, rule: LateFeeRule) -> Optional[LateFee]:
        # re-read so fees applied earlier in the same pass count toward the total
        record = await self._store.read(Collection.INVOICES, invoice_id)
        if record is None:
            return None
        invoice = Invoice.model_validate(record)
        if invoice.status != InvoiceStatus.OVERDUE:
            return None

        days_past_due = invoice.days_overdue(self._clock.now().date())
        if days_past_due <= rule.grace_period_days:
            return None

        existing = await self._store.query(
            Collection.LATE_FEES, {"invoice_id": invoice.id, "rule_id": rule.id}
        )
        if existing:
            return None

        amount = rule.fee_for(invoice.total_amount)
        fee = LateFee(
            invoice_id=invoice.id,
            rule_id=rule.id,
            amount=amount,
            days_past_due=days_past_due,
            applied_at=self._clock.now(),
        )
        await self._store.create(Collection.LATE_FEES, fee.model_dump(mode="json"))

        new_total = round(invoice.total_amount + amount, 2)
        await self._store.update(
            Collection.INVOICES,
            invoice.id,
            {"total_amount": new_total, "late_fee_applied": True, "updated_at": iso(self._clock.now())},
        )
        await self._notify(invoice, amount, new_total)
        await self._audit.record(
            "late_fee_applied",
            invoice.id,
            details={"rule_id": rule.id, "amount": amount, "days_past_due": days_past_due, "new_total": new_total},
        )
        return fee

    async def _notify(self, invoice: Invoice, amount: float, new_total: float) -> None:
        client = await self._store.read(Collection.CLIENTS, invoice.client_id) if invoice.client_id else None
        if not client or not client.get("email"):
            logger.info("late_fee_notification_skipped", invoice_id=invoice.id)
            return
        try:
            await self._notifier.deliver(
                ReminderMethod.EMAIL,
                LATE_FEE_TEMPLATE,
                {
                    "client_name": client.get("name"),
                    "invoice_number": invoice.invoice_number,
                    "late_fee": f"{amount:.2f}",
                    "new_total": f"{new_total:.2f}",
                },
                email=client["email"],
            )
        except Exception as e:
            logger.warning("late_fee_notification_failed", invoice_id=invoice.id, error=str(e))
            await self._audit.error("late_fee_notification", invoice.id, e)
