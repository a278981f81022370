"""
Workflow Rule Engine
====================
Evaluates persisted trigger -> condition -> action rules against domain
events.

Per matching rule and trigger occurrence:
- one WorkflowExecution is opened in "running" state
- conditions are evaluated in order and short-circuit on the first miss
  (an empty condition list always passes)
- actions run in order; a failing action is logged and audited but never
  stops the remaining actions or fails the execution
- the execution is closed as "completed" with the action types that ran
"""

import operator
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pydantic
import structlog

from schemas.automation_rules import (
    Action,
    ApplyLateFeeAction,
    AutomationRule,
    AutomationRuleUpdate,
    Condition,
    CreateTaskAction,
    GenerateInvoiceAction,
    Operator,
    SendEmailAction,
    SendNotificationAction,
    SendSmsAction,
    Trigger,
    TriggerType,
    UpdateStatusAction,
    WebhookAction,
)
from schemas.billing_models import (
    Invoice,
    InvoiceStatus,
    NotificationChannel,
    NotificationTemplate,
    WorkflowExecution,
)
from schemas.errors import NotFound
from services.automation_log import AutomationLogger
from services.clock import SystemClock, ensure_utc, iso
from services.notifications import NotificationDispatcher, render
from storage.record_store import Collection, RecordStore

logger = structlog.get_logger().bind(component="workflow_engine")


# =============================================================================
# CONDITIONS
# =============================================================================

def _contains(actual: Any, expected: Any) -> bool:
    return str(expected) in str(actual)


def _member(actual: Any, expected: Any) -> bool:
    return isinstance(expected, (list, tuple, set)) and actual in expected


OPERATORS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: operator.eq,
    Operator.NE: operator.ne,
    Operator.GT: operator.gt,
    Operator.LT: operator.lt,
    Operator.GTE: operator.ge,
    Operator.LTE: operator.le,
    Operator.CONTAINS: _contains,
    Operator.IN: _member,
}


def condition_holds(condition: Condition, data: Dict[str, Any]) -> bool:
    actual = data.get(condition.field)
    try:
        return bool(OPERATORS[condition.operator](actual, condition.value))
    except TypeError:
        # ordering comparisons against a missing or incompatible value
        return False


def evaluate_conditions(conditions: List[Condition], data: Dict[str, Any]) -> bool:
    return all(condition_holds(c, data) for c in conditions)


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_TEMPLATES = [
    NotificationTemplate(
        key="project_deadline_approaching",
        name="Project Deadline Approaching",
        subject="Project Deadline Reminder: {{project_name}}",
        body=(
            "Dear {{client_name}},\n\nThis is a reminder that your project \"{{project_name}}\" "
            "has a deadline approaching on {{deadline}}. You have {{days_remaining}} days remaining."
            "\n\nBest regards,\nYour Project Team"
        ),
        variables=["project_name", "client_name", "deadline", "days_remaining"],
    ),
    NotificationTemplate(
        key="invoice_payment_reminder",
        name="Invoice Payment Reminder",
        subject="Payment Reminder: Invoice {{invoice_number}}",
        body=(
            "Dear {{client_name}},\n\nThis is a reminder that invoice {{invoice_number}} for "
            "{{amount}} is due on {{due_date}}.\n\nThank you,\nAccounts Team"
        ),
        variables=["client_name", "invoice_number", "amount", "due_date"],
    ),
    NotificationTemplate(
        key="task_due_approaching",
        name="Task Due Reminder",
        subject="Task Due Reminder: {{task_title}}",
        body=(
            "Task \"{{task_title}}\" in project \"{{project_name}}\" is due on {{due_date}}."
            "\n\nPriority: {{priority}}\nDays remaining: {{days_remaining}}"
        ),
        variables=["task_title", "project_name", "due_date", "priority", "days_remaining"],
    ),
    NotificationTemplate(
        key="payment_thank_you",
        name="Payment Thank You",
        subject="Payment received for invoice {{invoice_number}}",
        body="Thank you! We received your payment of {{payment_amount}} for invoice {{invoice_number}}.",
        variables=["payment_amount", "invoice_number"],
    ),
    NotificationTemplate(
        key="invoice_overdue_notice",
        name="Invoice Overdue Notice",
        subject="Invoice {{invoice_number}} is overdue",
        body="Invoice {{invoice_number}} for {{amount}} is {{days_overdue}} days overdue.",
        variables=["invoice_number", "amount", "days_overdue"],
    ),
    NotificationTemplate(
        key="late_fee_applied",
        name="Late Fee Applied",
        subject="Late fee applied to invoice {{invoice_number}}",
        body=(
            "A late fee of {{late_fee}} has been applied to invoice {{invoice_number}}. "
            "The new total is {{new_total}}."
        ),
        variables=["invoice_number", "late_fee", "new_total"],
    ),
]

DEFAULT_RULES = [
    AutomationRule(
        name="Send thank you email on payment",
        description="Send thank you email when payment is received",
        trigger=Trigger(type=TriggerType.PAYMENT_RECEIVED),
        actions=[
            SendEmailAction(config={"template": "payment_thank_you", "recipient": "{{client_email}}"}),
        ],
    ),
]


# =============================================================================
# ACTION ROUTER
# =============================================================================

ActionHandler = Callable[[Action, str, Dict[str, Any]], Awaitable[None]]


class ActionRouter:
    """Maps an action's type tag to the coroutine that performs it."""

    def __init__(self):
        self._handlers: Dict[str, ActionHandler] = {}
        self._logger = structlog.get_logger().bind(component="action_router")

    def register(self, action_type: str):
        """Decorator to register handler for action type"""
        def decorator(handler: ActionHandler):
            self._handlers[action_type] = handler
            self._logger.debug("handler_registered", action_type=action_type)
            return handler
        return decorator

    async def route(self, action: Action, entity_id: str, data: Dict[str, Any]) -> None:
        handler = self._handlers.get(action.type)
        if handler is None:
            raise TypeError(f"Unsupported action: {action.type}")
        await handler(action, entity_id, data)

    @property
    def supported_actions(self) -> List[str]:
        return list(self._handlers.keys())


# =============================================================================
# ENGINE
# =============================================================================

class WorkflowEngine:
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
        self.router = ActionRouter()
        self._register_handlers()

    # -------------------------------------------------------------------------
    # rules
    # -------------------------------------------------------------------------

    async def load_rules(self, active_only: bool = True) -> List[AutomationRule]:
        """Validate persisted rules; malformed ones are logged and skipped."""
        records = await self._store.read_all(Collection.AUTOMATION_RULES)
        rules = []
        for record in records:
            try:
                rule = AutomationRule.model_validate(record)
            except pydantic.ValidationError as e:
                logger.warning("malformed_rule_skipped", rule_id=record.get("id"), errors=e.error_count())
                continue
            if rule.is_active or not active_only:
                rules.append(rule)
        return rules

    async def list_rules(self) -> List[AutomationRule]:
        return await self.load_rules(active_only=False)

    async def create_rule(self, rule: AutomationRule) -> AutomationRule:
        now = self._clock.now()
        rule = rule.model_copy(update={"created_at": now, "updated_at": now})
        await self._store.create(Collection.AUTOMATION_RULES, rule.model_dump(mode="json"))
        await self._audit.record("automation_rule_created", rule.id, details={"name": rule.name})
        return rule

    async def update_rule(self, rule_id: str, changes: AutomationRuleUpdate) -> AutomationRule:
        record = await self._store.read(Collection.AUTOMATION_RULES, rule_id)
        if record is None:
            raise NotFound(f"Automation rule {rule_id} not found")
        patch = changes.model_dump(mode="json", exclude_unset=True)
        rule = AutomationRule.model_validate({**record, **patch, "updated_at": iso(self._clock.now())})
        await self._store.update(Collection.AUTOMATION_RULES, rule_id, rule.model_dump(mode="json"))
        await self._audit.record("automation_rule_updated", rule_id, details={"fields": sorted(patch)})
        return rule

    async def seed_defaults(self) -> None:
        if not await self._store.read_all(Collection.NOTIFICATION_TEMPLATES):
            await self._store.batch_create(
                Collection.NOTIFICATION_TEMPLATES,
                [t.model_dump(mode="json") for t in DEFAULT_TEMPLATES],
            )
            logger.info("default_templates_seeded", count=len(DEFAULT_TEMPLATES))
        if not await self._store.read_all(Collection.AUTOMATION_RULES):
            for rule in DEFAULT_RULES:
                await self.create_rule(rule.model_copy(deep=True))
            logger.info("default_rules_seeded", count=len(DEFAULT_RULES))

    # -------------------------------------------------------------------------
    # execution
    # -------------------------------------------------------------------------

    async def trigger(
        self, trigger_type: str, entity_id: str, trigger_data: Dict[str, Any]
    ) -> List[WorkflowExecution]:
        try:
            rules = [r for r in await self.load_rules() if r.matches_trigger(trigger_type)]
        except Exception as e:
            logger.error("workflow_trigger_failed", trigger_type=trigger_type, error=str(e))
            await self._audit.error("workflow_trigger_failed", entity_id, e, trigger_type=trigger_type)
            return []

        executions = []
        for rule in rules:
            try:
                executions.append(await self.run_rule(rule, entity_id, trigger_data))
            except Exception as e:
                logger.error("workflow_rule_failed", rule_id=rule.id, error=str(e))
                await self._audit.error("workflow_rule_failed", entity_id, e, rule_id=rule.id)
        return executions

    async def run_rule(
        self, rule: AutomationRule, entity_id: str, trigger_data: Dict[str, Any]
    ) -> WorkflowExecution:
        execution = WorkflowExecution(
            rule_id=rule.id,
            trigger_type=rule.trigger.type.value,
            entity_id=entity_id,
            trigger_data=trigger_data,
            started_at=self._clock.now(),
        )
        await self._store.create(Collection.WORKFLOW_EXECUTIONS, execution.model_dump(mode="json"))
        log = logger.bind(rule_id=rule.id, execution_id=execution.id, entity_id=entity_id)

        if not evaluate_conditions(rule.conditions, trigger_data):
            log.info("workflow_conditions_not_met")
            return await self._finish(execution, [], "Conditions not met")

        executed: List[str] = []
        for action in rule.actions:
            try:
                await self.router.route(action, entity_id, trigger_data)
                executed.append(action.type)
            except Exception as e:
                log.warning("workflow_action_failed", action=action.type, error=str(e))
                await self._audit.error(
                    "workflow_action_failed", entity_id, e, rule_id=rule.id, action_type=action.type
                )

        log.info("workflow_executed", actions=executed)
        return await self._finish(execution, executed, None)

    async def _finish(
        self, execution: WorkflowExecution, executed: List[str], error: Optional[str]
    ) -> WorkflowExecution:
        done = execution.model_copy(
            update={
                "status": "completed",
                "completed_at": self._clock.now(),
                "actions_executed": executed,
                "error_message": error,
            }
        )
        await self._store.update(
            Collection.WORKFLOW_EXECUTIONS,
            execution.id,
            done.model_dump(mode="json", include={"status", "completed_at", "actions_executed", "error_message"}),
        )
        return done

    # -------------------------------------------------------------------------
    # action handlers (registered with the router)
    # -------------------------------------------------------------------------

    def _register_handlers(self):
        """Register one handler per action variant"""

        @self.router.register("send_email")
        async def handle_send_email(action: SendEmailAction, entity_id: str, data: Dict[str, Any]):
            recipient = render(action.config.recipient, data)
            await self._notifier.send(NotificationChannel.EMAIL, recipient, action.config.template, data)

        @self.router.register("send_sms")
        async def handle_send_sms(action: SendSmsAction, entity_id: str, data: Dict[str, Any]):
            recipient = render(action.config.recipient, data)
            await self._notifier.send(NotificationChannel.SMS, recipient, action.config.template, data)

        @self.router.register("send_notification")
        async def handle_send_notification(action: SendNotificationAction, entity_id: str, data: Dict[str, Any]):
            recipient = render(action.config.recipient, data)
            await self._notifier.send(NotificationChannel.IN_APP, recipient, action.config.template, data)

        @self.router.register("create_task")
        async def handle_create_task(action: CreateTaskAction, entity_id: str, data: Dict[str, Any]):
            task = {
                "status": "todo",
                **action.config.task_data,
                "project_id": data.get("project_id") or entity_id,
                "created_at": iso(self._clock.now()),
            }
            await self._store.create(Collection.TASKS, task)

        @self.router.register("update_status")
        async def handle_update_status(action: UpdateStatusAction, entity_id: str, data: Dict[str, Any]):
            return await self._on_update_status(action, entity_id)

        @self.router.register("webhook")
        async def handle_webhook(action: WebhookAction, entity_id: str, data: Dict[str, Any]):
            await self._notifier.send_webhook(action.config.url, data)

        @self.router.register("generate_invoice")
        async def handle_generate_invoice(action: GenerateInvoiceAction, entity_id: str, data: Dict[str, Any]):
            logger.debug("generate_invoice_noop", entity_id=entity_id)

        @self.router.register("apply_late_fee")
        async def handle_apply_late_fee(action: ApplyLateFeeAction, entity_id: str, data: Dict[str, Any]):
            logger.debug("apply_late_fee_noop", entity_id=entity_id)

    async def _on_update_status(self, action: UpdateStatusAction, entity_id: str) -> None:
        """Invoices move through their state machine; other entities are patched directly."""
        if action.config.entity_type == Collection.INVOICES.value:
            record = await self._store.read(Collection.INVOICES, entity_id)
            if record is None:
                raise NotFound(f"Invoice {entity_id} not found")
            invoice = Invoice.model_validate(record)
            moved = invoice.transition_to(InvoiceStatus(action.config.new_status))
            await self._store.update(
                Collection.INVOICES,
                entity_id,
                {"status": moved.status.value, "updated_at": iso(self._clock.now())},
            )
            return
        await self._store.update(action.config.entity_type, entity_id, {"status": action.config.new_status})

    # -------------------------------------------------------------------------
    # housekeeping and analytics
    # -------------------------------------------------------------------------

    async def prune_executions(self, older_than_days: int = 30) -> int:
        cutoff = iso(self._clock.now() - timedelta(days=older_than_days))
        old = await self._store.query(
            Collection.WORKFLOW_EXECUTIONS,
            {"status": "completed", "completed_at": {"<": cutoff}},
        )
        for execution in old:
            await self._store.delete(Collection.WORKFLOW_EXECUTIONS, execution["id"])
        return len(old)

    async def get_automation_analytics(self, start: datetime, end: datetime) -> Dict[str, Any]:
        window = {">=": iso(start), "<=": iso(end)}
        executions = await self._store.query(Collection.WORKFLOW_EXECUTIONS, {"started_at": window})
        logs = await self._store.query(Collection.AUTOMATION_LOGS, {"timestamp": window})

        total = len(executions)
        completed = [e for e in executions if e.get("status") == "completed"]
        successful = [e for e in completed if not e.get("error_message")]
        failed = total - len(completed)

        names = {r.id: r.name for r in await self.list_rules()}
        counts = Counter(e["rule_id"] for e in executions)
        most_triggered = [
            {"rule_id": rule_id, "rule_name": names.get(rule_id, "Unknown Rule"), "count": count}
            for rule_id, count in counts.most_common(10)
        ]

        durations = []
        for e in completed:
            if e.get("completed_at"):
                started = ensure_utc(datetime.fromisoformat(e["started_at"].replace("Z", "+00:00")))
                finished = ensure_utc(datetime.fromisoformat(e["completed_at"].replace("Z", "+00:00")))
                durations.append((finished - started).total_seconds() * 1000)

        def counted(*needles: str) -> int:
            return sum(
                1 for entry in logs
                if entry.get("status") == "success" and any(n in entry.get("action", "") for n in needles)
            )

        return {
            "total_executions": total,
            "successful_executions": len(successful),
            "failed_executions": failed,
            "execution_rate": round(len(successful) / total * 100, 2) if total else 0.0,
            "most_triggered_rules": most_triggered,
            "performance_metrics": {
                "avg_execution_time": round(sum(durations) / len(durations)) if durations else 0,
                "total_notifications_sent": counted("notification", "email", "sms"),
                "total_reminders_sent": counted("reminder"),
            },
        }
