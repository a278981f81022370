# services/automation_events.py
# ============================================================================
# BILLING ENGINE — DOMAIN EVENT HOOKS
# ============================================================================
# Entry points the orchestrator and sweeper call when something happened to
# an invoice, task or project. Each hook builds the trigger data, runs the
# workflow engine and writes its audit entry. Hooks never raise.
# ============================================================================

from typing import Any, Dict, Optional

import structlog

from schemas.automation_rules import TriggerType
from schemas.billing_models import Invoice, ProjectStatus, ReminderType, TaskStatus
from services.automation_log import AutomationLogger
from services.clock import SystemClock, iso
from services.workflow_engine import WorkflowEngine
from storage.record_store import Collection, RecordStore
from tasks.reminder_scheduler import ReminderScheduler

logger = structlog.get_logger().bind(component="automation_events")


class AutomationEvents:
    def __init__(
        self,
        store: RecordStore,
        engine: WorkflowEngine,
        scheduler: ReminderScheduler,
        audit: AutomationLogger,
        clock=None,
    ):
        self._store = store
        self._engine = engine
        self._scheduler = scheduler
        self._audit = audit
        self._clock = clock or SystemClock()

    async def _client_fields(self, client_id: Optional[str]) -> Dict[str, Any]:
        client = await self._store.read(Collection.CLIENTS, client_id) if client_id else None
        if not client:
            return {}
        fields = {"client_name": client.get("name"), "client_email": client.get("email")}
        return {k: v for k, v in fields.items() if v}

    async def on_payment_received(
        self, invoice_id: str, payment_amount: float, payment_data: Optional[Dict[str, Any]] = None
    ) -> None:
        payment_data = payment_data or {}
        try:
            invoice = await self._store.read(Collection.INVOICES, invoice_id) or {}
            data = {
                "invoice_id": invoice_id,
                "invoice_number": invoice.get("invoice_number"),
                "project_id": invoice.get("project_id"),
                "total_amount": invoice.get("total_amount"),
                "payment_amount": payment_amount,
                "client_email": payment_data.get("client_email"),
                "client_name": payment_data.get("client_name"),
                **await self._client_fields(invoice.get("client_id")),
                "payment_data": payment_data,
                "timestamp": iso(self._clock.now()),
            }
            await self._engine.trigger(TriggerType.PAYMENT_RECEIVED.value, invoice_id, data)
            cancelled = await self._scheduler.cancel(ReminderType.INVOICE_PAYMENT, invoice_id)
            await self._audit.record(
                "payment_received_trigger",
                invoice_id,
                details={"payment_amount": payment_amount, "reminders_cancelled": cancelled},
            )
        except Exception as e:
            logger.error("payment_received_hook_failed", invoice_id=invoice_id, error=str(e))
            await self._audit.error("payment_received_trigger", invoice_id, e)

    async def on_invoice_overdue(self, invoice_id: str) -> None:
        try:
            record = await self._store.read(Collection.INVOICES, invoice_id)
            if record is None:
                return
            invoice = Invoice.model_validate(record)
            days_overdue = invoice.days_overdue(self._clock.now().date())
            data = {
                "invoice_id": invoice_id,
                "invoice_number": invoice.invoice_number,
                "client_id": invoice.client_id,
                "amount": invoice.total_amount,
                "days_overdue": days_overdue,
                **await self._client_fields(invoice.client_id),
                "timestamp": iso(self._clock.now()),
            }
            await self._engine.trigger(TriggerType.INVOICE_OVERDUE.value, invoice_id, data)
            await self._audit.record(
                "invoice_overdue_trigger", invoice_id, details={"days_overdue": days_overdue}
            )
        except Exception as e:
            logger.error("invoice_overdue_hook_failed", invoice_id=invoice_id, error=str(e))
            await self._audit.error("invoice_overdue_trigger", invoice_id, e)

    async def on_task_completed(self, task_id: str) -> None:
        try:
            task = await self._store.read(Collection.TASKS, task_id)
            if task is None:
                return
            project_id = task.get("project_id")
            await self._engine.trigger(
                TriggerType.TASK_COMPLETED.value,
                task_id,
                {
                    "task_id": task_id,
                    "project_id": project_id,
                    "task_title": task.get("title"),
                    "completion_date": iso(self._clock.now()),
                },
            )
            if project_id:
                await self._check_project_completion(project_id)
            await self._audit.record("task_completed_trigger", task_id, details={"project_id": project_id})
        except Exception as e:
            logger.error("task_completed_hook_failed", task_id=task_id, error=str(e))
            await self._audit.error("task_completed_trigger", task_id, e)

    async def on_project_milestone(
        self, project_id: str, milestone_type: str, milestone_data: Optional[Dict[str, Any]] = None
    ) -> None:
        milestone_data = milestone_data or {}
        try:
            await self._engine.trigger(
                TriggerType.PROJECT_MILESTONE.value,
                project_id,
                {
                    "project_id": project_id,
                    "milestone_type": milestone_type,
                    "milestone_data": milestone_data,
                    "timestamp": iso(self._clock.now()),
                },
            )
            await self._audit.record(
                "project_milestone_trigger",
                project_id,
                details={"milestone_type": milestone_type, "milestone_data": milestone_data},
            )
        except Exception as e:
            logger.error("project_milestone_hook_failed", project_id=project_id, error=str(e))
            await self._audit.error("project_milestone_trigger", project_id, e)

    async def _check_project_completion(self, project_id: str) -> None:
        tasks = await self._store.query(Collection.TASKS, {"project_id": project_id})
        if not tasks or any(t.get("status") != TaskStatus.COMPLETED.value for t in tasks):
            return
        await self._store.update(
            Collection.PROJECTS,
            project_id,
            {"status": ProjectStatus.COMPLETED.value, "progress_percentage": 100},
        )
        await self.on_project_milestone(
            project_id,
            "project_completed",
            {"total_tasks": len(tasks), "completion_date": iso(self._clock.now())},
        )
