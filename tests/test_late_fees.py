"""Tests for late fee rules and their application to overdue invoices."""

from unittest.mock import AsyncMock

import pytest

from conftest import day
from schemas.billing_models import LateFeeRule
from schemas.errors import NotificationError
from storage.record_store import Collection


@pytest.fixture
async def overdue_invoice(store):
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


def _rule(**overrides) -> LateFeeRule:
    fields = {"name": "Standard", "type": "percentage", "amount": 5, "grace_period_days": 3}
    fields.update(overrides)
    return LateFeeRule(**fields)


# ===================================================================
# Fee calculation
# ===================================================================

class TestFeeFor:

    def test_percentage(self):
        assert _rule(amount=5).fee_for(200) == 10.0

    def test_fixed(self):
        assert _rule(type="fixed", amount=25).fee_for(200) == 25.0

    def test_capped_by_max_amount(self):
        assert _rule(amount=50, max_amount=30).fee_for(200) == 30.0

    def test_rounds_to_cents(self):
        assert _rule(amount=3.333).fee_for(100) == 3.33

    def test_camel_case_input(self):
        rule = LateFeeRule.model_validate(
            {"name": "Api", "type": "fixed", "amount": 10, "gracePeriodDays": 5, "maxAmount": 8}
        )
        assert rule.grace_period_days == 5
        assert rule.fee_for(100) == 8.0


# ===================================================================
# Processing
# ===================================================================

class TestProcessLateFees:

    @pytest.mark.asyncio
    async def test_applies_fee_after_grace(self, container, store, overdue_invoice, audit_actions):
        container.notifier.send_email = AsyncMock(return_value=True)
        rule = await container.late_fees.create_late_fee_rule(_rule())

        [fee] = await container.late_fees.process_late_fees()

        assert fee.invoice_id == "inv-od"
        assert fee.rule_id == rule.id
        assert fee.amount == 10.0
        assert fee.days_past_due == 10

        invoice = await store.read(Collection.INVOICES, "inv-od")
        assert invoice["total_amount"] == 210.0
        assert invoice["late_fee_applied"] is True

        recipient, subject, body = container.notifier.send_email.await_args.args
        assert recipient == "billing@acme.com"
        assert subject == "Late fee applied to invoice INV-042"
        assert "10.00" in body
        assert "210.00" in body

        actions = await audit_actions()
        assert "late_fee_rule_created" in actions
        assert "late_fee_applied" in actions

    @pytest.mark.asyncio
    async def test_each_rule_charged_once(self, container, store, overdue_invoice):
        await container.late_fees.create_late_fee_rule(_rule())

        await container.late_fees.process_late_fees()
        assert await container.late_fees.process_late_fees() == []

        assert len(await store.read_all(Collection.LATE_FEES)) == 1
        assert (await store.read(Collection.INVOICES, "inv-od"))["total_amount"] == 210.0

    @pytest.mark.asyncio
    async def test_fees_from_multiple_rules_accumulate(self, container, store, overdue_invoice):
        await container.late_fees.create_late_fee_rule(_rule())
        await container.late_fees.create_late_fee_rule(_rule(name="Admin fee", type="fixed", amount=15))

        applied = await container.late_fees.process_late_fees()

        assert sorted(f.amount for f in applied) == [10.0, 15.0]
        assert (await store.read(Collection.INVOICES, "inv-od"))["total_amount"] == 225.0

    @pytest.mark.asyncio
    async def test_within_grace_period(self, container, store, overdue_invoice):
        await container.late_fees.create_late_fee_rule(_rule(grace_period_days=10))
        assert await container.late_fees.process_late_fees() == []
        assert (await store.read(Collection.INVOICES, "inv-od"))["total_amount"] == 200.0

    @pytest.mark.asyncio
    async def test_inactive_rule_ignored(self, container, overdue_invoice):
        await container.late_fees.create_late_fee_rule(_rule(is_active=False))
        assert await container.late_fees.process_late_fees() == []

    @pytest.mark.asyncio
    async def test_only_overdue_invoices(self, container, store):
        await store.create(
            Collection.INVOICES,
            {"id": "inv-sent", "client_id": "client-1", "total_amount": 100, "status": "sent", "due_date": day(-10)},
        )
        await container.late_fees.create_late_fee_rule(_rule())
        assert await container.late_fees.process_late_fees() == []

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_block_fee(self, container, store, overdue_invoice, audit_actions):
        container.notifier.send_email = AsyncMock(side_effect=NotificationError("smtp down"))
        await container.late_fees.create_late_fee_rule(_rule())

        [fee] = await container.late_fees.process_late_fees()

        assert fee.amount == 10.0
        assert (await store.read(Collection.INVOICES, "inv-od"))["late_fee_applied"] is True
        assert "late_fee_notification" in await audit_actions(status="error")
