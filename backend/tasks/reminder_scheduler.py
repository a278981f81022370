"""
Reminder Scheduler
==================
Computes reminder fire times from a target date, persists one
ReminderSchedule per fire time and arms an in-process timer for each.

Features:
- Fire times from days_before / days_after / escalation offsets,
  future-only
- Task reminders tightened for HIGH priority, loosened for LOW
- Timers are asyncio tasks keyed by schedule id, cancellable until they
  start executing
- Pending future schedules are re-armed from the store on startup;
  schedules whose time elapsed while the process was down are not fired
- A failed reminder is marked "failed" and never retried automatically
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from schemas.billing_models import (
    Client,
    Invoice,
    Project,
    ReminderConfig,
    ReminderMethod,
    ReminderSchedule,
    ReminderType,
    ScheduleStatus,
    Task,
    TaskPriority,
    start_of_day,
)
from schemas.errors import NotFound, ValidationError
from services.automation_log import AutomationLogger
from services.clock import SystemClock, ensure_utc, iso
from services.notifications import NotificationDispatcher
from storage.record_store import Collection, RecordStore

logger = structlog.get_logger().bind(component="reminder_scheduler")

PAYMENT_REMINDER_KINDS = ("before_due", "on_due", "after_due")


# =============================================================================
# FIRE TIME CALCULATION
# =============================================================================

def compute_fire_times(
    target: Union[date, datetime], config: ReminderConfig, now: datetime
) -> List[datetime]:
    """Candidate fire times relative to the target, keeping only those after now."""
    if not isinstance(target, datetime):
        target = start_of_day(target)
    target = ensure_utc(target)

    candidates = []
    if config.days_before:
        candidates.append(target - timedelta(days=config.days_before))
    if config.days_after:
        candidates.append(target + timedelta(days=config.days_after))
    for rule in config.escalation_rules:
        candidates.append(target + timedelta(days=rule.days_offset))

    return [t for t in candidates if t > now]


def adjust_for_priority(config: ReminderConfig, priority: TaskPriority) -> ReminderConfig:
    """HIGH priority reminds one day closer (floor 1), LOW one day earlier."""
    days_before = config.days_before
    if days_before:
        if priority == TaskPriority.HIGH:
            days_before = max(1, days_before - 1)
        elif priority == TaskPriority.LOW:
            days_before = days_before + 1
    return config.model_copy(update={"days_before": days_before, "priority": priority})


def payment_reminder_time(due_date: date, kind: str, days_offset: int) -> datetime:
    due = start_of_day(due_date)
    if kind == "before_due":
        return due - timedelta(days=days_offset)
    if kind == "after_due":
        return due + timedelta(days=days_offset)
    return due


# =============================================================================
# SCHEDULER
# =============================================================================

class ReminderScheduler:
    """Owns the live timer map; the store stays the source of truth."""

    def __init__(
        self,
        store: RecordStore,
        notifier: NotificationDispatcher,
        audit: AutomationLogger,
        clock=None,
        admin_email: Optional[str] = None,
    ):
        self._store = store
        self._notifier = notifier
        self._audit = audit
        self._clock = clock or SystemClock()
        self._admin_email = admin_email or notifier.settings.admin_email
        self._timers: Dict[str, asyncio.Task] = {}
        self._handlers: Dict[ReminderType, Callable] = {
            ReminderType.PROJECT_DEADLINE: self._remind_project_deadline,
            ReminderType.INVOICE_PAYMENT: self._remind_invoice_payment,
            ReminderType.TASK_DUE: self._remind_task_due,
            ReminderType.CLIENT_FOLLOWUP: self._remind_client_followup,
        }

    @property
    def armed(self) -> List[str]:
        return list(self._timers)

    # -------------------------------------------------------------------------
    # scheduling
    # -------------------------------------------------------------------------

    async def schedule(
        self,
        reminder_type: ReminderType,
        entity_id: str,
        target: Union[date, datetime],
        config: ReminderConfig,
    ) -> List[ReminderSchedule]:
        now = self._clock.now()
        fire_times = compute_fire_times(target, config, now)

        schedules = []
        for fire_at in fire_times:
            schedule = ReminderSchedule(
                type=reminder_type,
                entity_id=entity_id,
                scheduled_at=fire_at,
                reminder_config=config,
                created_at=now,
            )
            await self._store.create(Collection.REMINDER_SCHEDULES, schedule.model_dump(mode="json"))
            self._arm(schedule)
            schedules.append(schedule)

        if not schedules:
            logger.debug("no_reminders_due", type=reminder_type.value, entity_id=entity_id)
            return schedules
        await self._audit.record(
            f"{reminder_type.value}_reminder_scheduled",
            entity_id,
            details={"reminder_dates": [iso(t) for t in fire_times]},
        )
        return schedules

    async def schedule_project_deadline_reminder(
        self, project_id: str, config: ReminderConfig
    ) -> List[ReminderSchedule]:
        project = Project.model_validate(await self._require(Collection.PROJECTS, project_id))
        if project.end_date is None:
            raise ValidationError(f"Project {project_id} has no end date")
        return await self.schedule(ReminderType.PROJECT_DEADLINE, project_id, project.end_date, config)

    async def schedule_invoice_payment_reminder(
        self, invoice_id: str, config: ReminderConfig
    ) -> List[ReminderSchedule]:
        invoice = Invoice.model_validate(await self._require(Collection.INVOICES, invoice_id))
        return await self.schedule(ReminderType.INVOICE_PAYMENT, invoice_id, invoice.due_date, config)

    async def schedule_task_due_reminder(
        self, task_id: str, config: ReminderConfig
    ) -> List[ReminderSchedule]:
        task = Task.model_validate(await self._require(Collection.TASKS, task_id))
        if task.due_date is None:
            raise ValidationError(f"Task {task_id} has no due date")
        adjusted = adjust_for_priority(config, task.priority)
        return await self.schedule(ReminderType.TASK_DUE, task_id, task.due_date, adjusted)

    async def schedule_client_followup(
        self, client_id: str, project_id: str, milestone_type: str, config: ReminderConfig
    ) -> ReminderSchedule:
        """Milestone follow-ups are sent right away and stored as a fired schedule."""
        now = self._clock.now()
        schedule = ReminderSchedule(
            type=ReminderType.CLIENT_FOLLOWUP,
            entity_id=f"{client_id}:{project_id}:{milestone_type}",
            scheduled_at=now,
            reminder_config=config,
            created_at=now,
        )
        await self._store.create(Collection.REMINDER_SCHEDULES, schedule.model_dump(mode="json"))
        status = await self.fire(schedule.id)
        await self._audit.record(
            "client_followup_scheduled",
            client_id,
            details={"project_id": project_id, "milestone_type": milestone_type},
        )
        return schedule.model_copy(update={"status": status or schedule.status, "attempts": 1})

    async def create_payment_reminder(
        self,
        invoice_id: str,
        kind: str,
        days_offset: int,
        template: str,
        method: ReminderMethod = ReminderMethod.EMAIL,
    ) -> ReminderSchedule:
        if kind not in PAYMENT_REMINDER_KINDS:
            raise ValidationError(f"Invalid reminder type: {kind}")
        if days_offset < 0:
            raise ValidationError("days_offset must be >= 0")

        invoice = Invoice.model_validate(await self._require(Collection.INVOICES, invoice_id))
        config = ReminderConfig(
            template=template,
            method=method,
            days_before=days_offset if kind == "before_due" else None,
            days_after=days_offset if kind == "after_due" else None,
        )
        schedule = ReminderSchedule(
            type=ReminderType.INVOICE_PAYMENT,
            entity_id=invoice_id,
            scheduled_at=payment_reminder_time(invoice.due_date, kind, days_offset),
            reminder_config=config,
            created_at=self._clock.now(),
        )
        await self._store.create(Collection.REMINDER_SCHEDULES, schedule.model_dump(mode="json"))
        self._arm(schedule)
        await self._audit.record(
            "payment_reminder_created",
            invoice_id,
            details={"kind": kind, "days_offset": days_offset, "scheduled_at": iso(schedule.scheduled_at)},
        )
        return schedule

    # -------------------------------------------------------------------------
    # timers
    # -------------------------------------------------------------------------

    def _arm(self, schedule: ReminderSchedule) -> bool:
        delay = (ensure_utc(schedule.scheduled_at) - self._clock.now()).total_seconds()
        if delay <= 0:
            return False
        self._disarm(schedule.id)
        self._timers[schedule.id] = asyncio.create_task(
            self._run_timer(schedule.id, delay), name=f"reminder:{schedule.id}"
        )
        return True

    def _disarm(self, schedule_id: str) -> None:
        timer = self._timers.pop(schedule_id, None)
        if timer is not None and not timer.done():
            timer.cancel()

    async def _run_timer(self, schedule_id: str, delay: float) -> None:
        await self._clock.sleep(delay)
        # past this point the timer is executing and can no longer be cancelled
        self._timers.pop(schedule_id, None)
        try:
            await self.fire(schedule_id)
        except Exception as e:
            logger.error("reminder_timer_failed", schedule_id=schedule_id, error=str(e))

    async def rehydrate(self) -> int:
        """Re-arm pending schedules whose fire time is still ahead."""
        pending = await self._store.query(
            Collection.REMINDER_SCHEDULES, {"status": ScheduleStatus.PENDING.value}
        )
        armed = 0
        for record in pending:
            if self._arm(ReminderSchedule.model_validate(record)):
                armed += 1
        logger.info("reminders_rehydrated", pending=len(pending), armed=armed)
        return armed

    async def cancel(self, reminder_type: ReminderType, entity_id: str) -> int:
        pending = await self._store.query(
            Collection.REMINDER_SCHEDULES,
            {"type": reminder_type.value, "entity_id": entity_id, "status": ScheduleStatus.PENDING.value},
        )
        for record in pending:
            await self._store.update(
                Collection.REMINDER_SCHEDULES, record["id"], {"status": ScheduleStatus.CANCELLED.value}
            )
            self._disarm(record["id"])
        if pending:
            logger.info("reminders_cancelled", type=reminder_type.value, entity_id=entity_id, count=len(pending))
        return len(pending)

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    # -------------------------------------------------------------------------
    # firing
    # -------------------------------------------------------------------------

    async def fire(self, schedule_id: str) -> Optional[ScheduleStatus]:
        record = await self._store.read(Collection.REMINDER_SCHEDULES, schedule_id)
        if record is None or record.get("status") != ScheduleStatus.PENDING.value:
            logger.info("reminder_skipped", schedule_id=schedule_id, status=(record or {}).get("status"))
            return None

        schedule = ReminderSchedule.model_validate(record)
        try:
            await self._handlers[schedule.type](schedule)
            status = ScheduleStatus.SENT
        except Exception as e:
            status = ScheduleStatus.FAILED
            logger.warning("reminder_failed", schedule_id=schedule_id, type=schedule.type.value, error=str(e))
            await self._audit.error(
                f"{schedule.type.value}_reminder_sent", schedule.entity_id, e, schedule_id=schedule_id
            )

        await self._store.update(
            Collection.REMINDER_SCHEDULES,
            schedule_id,
            {
                "status": status.value,
                "attempts": schedule.attempts + 1,
                "last_attempt_at": iso(self._clock.now()),
            },
        )
        return status

    async def process_due_reminders(self) -> int:
        """Fire every pending schedule whose time has come."""
        now = self._clock.now()
        pending = await self._store.query(
            Collection.REMINDER_SCHEDULES, {"status": ScheduleStatus.PENDING.value}
        )
        schedules = [ReminderSchedule.model_validate(r) for r in pending]
        due = [s for s in schedules if ensure_utc(s.scheduled_at) <= now]

        processed = 0
        for schedule in sorted(due, key=lambda s: s.scheduled_at):
            self._disarm(schedule.id)
            try:
                if await self.fire(schedule.id) is not None:
                    processed += 1
            except Exception as e:
                logger.error("reminder_processing_failed", schedule_id=schedule.id, error=str(e))
        logger.info("due_reminders_processed", count=processed)
        return processed

    # -------------------------------------------------------------------------
    # reminder actions
    # -------------------------------------------------------------------------

    async def _require(self, collection: Collection, record_id: Optional[str]) -> Dict[str, Any]:
        record = await self._store.read(collection, record_id) if record_id else None
        if record is None:
            raise NotFound(f"{collection.value} record {record_id} not found")
        return record

    async def _client(self, client_id: Optional[str]) -> Client:
        return Client.model_validate(await self._require(Collection.CLIENTS, client_id))

    def _today(self) -> date:
        return self._clock.now().date()

    async def _remind_project_deadline(self, schedule: ReminderSchedule) -> None:
        project = Project.model_validate(await self._require(Collection.PROJECTS, schedule.entity_id))
        client = await self._client(project.client_id)
        config = schedule.reminder_config
        days_remaining = (project.end_date - self._today()).days if project.end_date else None

        await self._notifier.deliver(
            config.method,
            config.template,
            {
                "project_name": project.name,
                "client_name": client.name,
                "deadline": project.end_date.isoformat() if project.end_date else None,
                "days_remaining": days_remaining,
            },
            email=client.email,
            phone=client.phone,
        )
        await self._audit.record(
            "project_deadline_reminder_sent",
            project.id,
            details={"client_email": client.email, "days_remaining": days_remaining},
        )

    async def _remind_invoice_payment(self, schedule: ReminderSchedule) -> None:
        invoice = Invoice.model_validate(await self._require(Collection.INVOICES, schedule.entity_id))
        client = await self._client(invoice.client_id)
        config = schedule.reminder_config

        await self._notifier.deliver(
            config.method,
            config.template,
            {
                "invoice_number": invoice.invoice_number,
                "client_name": client.name,
                "amount": invoice.total_amount,
                "due_date": invoice.due_date.isoformat(),
                "days_overdue": invoice.days_overdue(self._today()),
            },
            email=client.email,
            phone=client.phone,
        )
        await self._audit.record(
            "invoice_payment_reminder_sent",
            invoice.id,
            details={"client_email": client.email, "amount": invoice.total_amount},
        )

    async def _remind_task_due(self, schedule: ReminderSchedule) -> None:
        task = Task.model_validate(await self._require(Collection.TASKS, schedule.entity_id))
        project_record = await self._store.read(Collection.PROJECTS, task.project_id) if task.project_id else None
        project = Project.model_validate(project_record) if project_record else None
        client_record = (
            await self._store.read(Collection.CLIENTS, project.client_id)
            if project and project.client_id
            else None
        )
        config = schedule.reminder_config

        await self._notifier.deliver(
            config.method,
            config.template,
            {
                "task_title": task.title,
                "project_name": project.name if project else "",
                "client_name": (client_record or {}).get("name", ""),
                "due_date": task.due_date.isoformat() if task.due_date else None,
                "priority": task.priority.value,
                "days_remaining": (task.due_date - self._today()).days if task.due_date else None,
            },
            email=self._admin_email,
        )
        await self._audit.record(
            "task_due_reminder_sent",
            task.id,
            details={"task_title": task.title, "priority": task.priority.value},
        )

    async def _remind_client_followup(self, schedule: ReminderSchedule) -> None:
        client_id, project_id, milestone_type = schedule.entity_id.split(":", 2)
        client = await self._client(client_id)
        project = Project.model_validate(await self._require(Collection.PROJECTS, project_id))
        config = schedule.reminder_config

        await self._notifier.deliver(
            config.method,
            config.template,
            {
                "client_name": client.name,
                "project_name": project.name,
                "milestone_type": milestone_type,
                "project_status": project.status.value,
                "completion_percentage": project.progress_percentage or 0,
            },
            email=client.email,
            phone=client.phone,
        )
        await self._audit.record(
            "client_followup_sent",
            client_id,
            details={"project_id": project_id, "milestone_type": milestone_type},
        )
