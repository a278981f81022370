"""
Overdue Sweeper - Time-Based Reconciliation
===========================================
Background loops that reconcile state which changes only because time
passed.

Sweeps:
- hourly:       sent invoices past their due date -> overdue
                (+ invoice_overdue automation, once per transition)
- every 6h:     projects, tasks and invoices due within 3 days get a
                reminder unless one is already pending
- daily:        late fees, then prune executions and audit logs > 30 days

Each tick is isolated: one failing invoice or sweep never stops the loop.
"""

import asyncio
import os
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from schemas.billing_models import (
    Invoice,
    InvoiceStatus,
    Project,
    ProjectStatus,
    ReminderConfig,
    ReminderMethod,
    ReminderType,
    ScheduleStatus,
    Task,
    TaskPriority,
    TaskStatus,
)
from services.automation_events import AutomationEvents
from services.automation_log import AutomationLogger
from services.clock import SystemClock, iso
from services.workflow_engine import WorkflowEngine
from storage.record_store import Collection, RecordStore
from tasks.late_fees import LateFeeService
from tasks.reminder_scheduler import ReminderScheduler

logger = structlog.get_logger().bind(component="overdue_sweeper")


# =============================================================================
# CONFIGURATION
# =============================================================================

class SweeperConfig:
    """Sweeper configuration"""

    # Overdue invoice check (seconds)
    OVERDUE_INTERVAL = int(os.getenv("SWEEPER_OVERDUE_INTERVAL", "3600"))

    # Approaching deadline check (seconds)
    APPROACHING_INTERVAL = int(os.getenv("SWEEPER_APPROACHING_INTERVAL", "21600"))

    # Late fees + cleanup (seconds)
    DAILY_INTERVAL = int(os.getenv("SWEEPER_DAILY_INTERVAL", "86400"))

    # How far ahead a deadline counts as approaching (days)
    LOOKAHEAD_DAYS = int(os.getenv("SWEEPER_LOOKAHEAD_DAYS", "3"))

    # Retention for executions and audit logs (days)
    RETENTION_DAYS = int(os.getenv("SWEEPER_RETENTION_DAYS", "30"))

    ENABLED = os.getenv("SWEEPER_ENABLED", "true").lower() == "true"


# =============================================================================
# SWEEPER
# =============================================================================

class OverdueSweeper:
    def __init__(
        self,
        store: RecordStore,
        scheduler: ReminderScheduler,
        events: AutomationEvents,
        engine: WorkflowEngine,
        late_fees: LateFeeService,
        audit: AutomationLogger,
        clock=None,
        config: Optional[SweeperConfig] = None,
    ):
        self._store = store
        self._scheduler = scheduler
        self._events = events
        self._engine = engine
        self._late_fees = late_fees
        self._audit = audit
        self._clock = clock or SystemClock()
        self.config = config or SweeperConfig()
        self._loops: List[asyncio.Task] = []

    # -------------------------------------------------------------------------
    # sweeps
    # -------------------------------------------------------------------------

    async def sweep_overdue(self) -> int:
        """Move sent invoices past due to overdue. Returns the number moved."""
        today = self._clock.now().date()
        sent = await self._store.query(Collection.INVOICES, {"status": InvoiceStatus.SENT.value})

        moved = 0
        for record in sent:
            try:
                invoice = Invoice.model_validate(record)
                if today <= invoice.due_date:
                    continue
                overdue = invoice.transition_to(InvoiceStatus.OVERDUE)
                await self._store.update(
                    Collection.INVOICES,
                    invoice.id,
                    {"status": overdue.status.value, "updated_at": iso(self._clock.now())},
                )
                moved += 1
                await self._events.on_invoice_overdue(invoice.id)
            except Exception as e:
                logger.error("overdue_transition_failed", invoice_id=record.get("id"), error=str(e))
                await self._audit.error("invoice_overdue_transition", record.get("id", ""), e)

        if moved:
            logger.info("invoices_marked_overdue", count=moved)
        return moved

    async def _has_pending(self, reminder_type: ReminderType, entity_id: str) -> bool:
        existing = await self._store.query(
            Collection.REMINDER_SCHEDULES,
            {"type": reminder_type.value, "entity_id": entity_id, "status": ScheduleStatus.PENDING.value},
        )
        return bool(existing)

    async def sweep_approaching(self) -> int:
        """Schedule a reminder for every near deadline that has none pending."""
        horizon = self._clock.now().date() + timedelta(days=self.config.LOOKAHEAD_DAYS)
        scheduled = 0

        projects = await self._store.query(Collection.PROJECTS, {"status": ProjectStatus.ACTIVE.value})
        for record in projects:
            project = Project.model_validate(record)
            if project.end_date is None or project.end_date > horizon:
                continue
            if await self._has_pending(ReminderType.PROJECT_DEADLINE, project.id):
                continue
            scheduled += await self._schedule(
                self._scheduler.schedule_project_deadline_reminder,
                project.id,
                ReminderConfig(
                    days_before=1,
                    template="project_deadline_approaching",
                    method=ReminderMethod.EMAIL,
                    priority=TaskPriority.HIGH,
                ),
            )

        tasks = await self._store.query(
            Collection.TASKS, {"status": [TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value]}
        )
        for record in tasks:
            task = Task.model_validate(record)
            if task.due_date is None or task.due_date > horizon:
                continue
            if await self._has_pending(ReminderType.TASK_DUE, task.id):
                continue
            scheduled += await self._schedule(
                self._scheduler.schedule_task_due_reminder,
                task.id,
                ReminderConfig(
                    days_before=1,
                    template="task_due_approaching",
                    method=ReminderMethod.EMAIL,
                    priority=TaskPriority.HIGH if task.priority == TaskPriority.HIGH else TaskPriority.MEDIUM,
                ),
            )

        invoices = await self._store.query(Collection.INVOICES, {"status": InvoiceStatus.SENT.value})
        for record in invoices:
            invoice = Invoice.model_validate(record)
            if invoice.due_date > horizon:
                continue
            if await self._has_pending(ReminderType.INVOICE_PAYMENT, invoice.id):
                continue
            scheduled += await self._schedule(
                self._scheduler.schedule_invoice_payment_reminder,
                invoice.id,
                ReminderConfig(
                    days_before=1,
                    template="invoice_payment_reminder",
                    method=ReminderMethod.EMAIL,
                ),
            )

        if scheduled:
            logger.info("approaching_reminders_scheduled", count=scheduled)
        return scheduled

    async def _schedule(self, schedule_fn: Callable, entity_id: str, config: ReminderConfig) -> int:
        try:
            return len(await schedule_fn(entity_id, config))
        except Exception as e:
            logger.error("approaching_reminder_failed", entity_id=entity_id, error=str(e))
            await self._audit.error("approaching_reminder_scheduled", entity_id, e)
            return 0

    async def cleanup(self) -> Dict[str, int]:
        executions = await self._engine.prune_executions(self.config.RETENTION_DAYS)
        logs = await self._audit.prune(self.config.RETENTION_DAYS)
        logger.info("automation_history_pruned", executions=executions, logs=logs)
        return {"executions": executions, "logs": logs}

    async def daily(self) -> None:
        await self._late_fees.process_late_fees()
        await self.cleanup()

    # -------------------------------------------------------------------------
    # background loops
    # -------------------------------------------------------------------------

    async def _loop(self, name: str, interval: int, tick: Callable[[], Awaitable]) -> None:
        logger.info("sweep_loop_started", sweep=name, interval=interval)
        while True:
            try:
                await tick()
            except Exception as e:
                logger.error("sweep_tick_failed", sweep=name, error=str(e))
            await self._clock.sleep(interval)

    def start(self) -> None:
        if not self.config.ENABLED:
            logger.info("sweeper_disabled")
            return
        if self._loops:
            return
        self._loops = [
            asyncio.create_task(self._loop("overdue", self.config.OVERDUE_INTERVAL, self.sweep_overdue)),
            asyncio.create_task(
                self._loop("approaching", self.config.APPROACHING_INTERVAL, self.sweep_approaching)
            ),
            asyncio.create_task(self._loop("daily", self.config.DAILY_INTERVAL, self.daily)),
        ]

    async def stop(self) -> None:
        loops, self._loops = self._loops, []
        for loop in loops:
            loop.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
