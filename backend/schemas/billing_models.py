# schemas/billing_models.py
# ============================================================================
# BILLING ENGINE — DOMAIN MODELS
# ============================================================================
# Pydantic models for every record the billing core reads or writes.
# Records are stored as plain JSON dicts (model_dump(mode="json")) and
# re-validated on the way back in.
# ============================================================================

import uuid
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

from schemas.errors import InvalidTransition


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_date(value: Any) -> Any:
    """Accept 'YYYY-MM-DD', full ISO datetimes, or datetime objects."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[0]
    return value


def start_of_day(value: date) -> datetime:
    """Midnight UTC of a calendar date."""
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class PaymentLinkStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


TERMINAL_LINK_STATUSES = {
    PaymentLinkStatus.COMPLETED,
    PaymentLinkStatus.CANCELLED,
    PaymentLinkStatus.FAILED,
    PaymentLinkStatus.REFUNDED,
    PaymentLinkStatus.PARTIALLY_REFUNDED,
}


class ProviderPaymentState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class WebhookEventType(str, Enum):
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_EXPIRED = "payment_expired"
    PAYMENT_DISPUTED = "payment_disputed"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class InvoicePaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    FAILED = "failed"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ON_HOLD = "on-hold"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReminderType(str, Enum):
    PROJECT_DEADLINE = "project_deadline"
    INVOICE_PAYMENT = "invoice_payment"
    TASK_DUE = "task_due"
    CLIENT_FOLLOWUP = "client_followup"


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ReminderMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


# Invoice state machine. Everything flows forward except draft <-> cancelled;
# overdue is only entered from sent; paid is terminal.
INVOICE_TRANSITIONS: Dict[InvoiceStatus, set] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.SENT: {InvoiceStatus.OVERDUE, InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.CANCELLED: {InvoiceStatus.DRAFT},
    InvoiceStatus.PAID: set(),
}


# =============================================================================
# GATEWAY CONTRACT MODELS
# =============================================================================

class CreatePaymentLinkParams(BaseModel):
    """Input to a gateway's link creation. Amount is in major currency units."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    amount: float = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    description: str = Field(min_length=1)
    invoice_id: str = Field(min_length=1)
    client_email: str = Field(min_length=3)
    client_name: str = Field(min_length=1)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    allow_partial_payments: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("client_email")
    @classmethod
    def _email_shape(cls, value: str) -> str:
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("Valid client email is required")
        return value.strip().lower()

    def correlation_metadata(self) -> Dict[str, str]:
        """Caller metadata plus the ids every provider must echo back."""
        merged = {str(k): str(v) for k, v in self.metadata.items()}
        merged["invoice_id"] = self.invoice_id
        merged["client_email"] = self.client_email
        return merged


class PaymentLink(BaseModel):
    """Persisted payment link (Payment_Links). Authoritative application state."""
    id: str
    gateway: str
    url: Optional[str] = None
    amount: float
    currency: str
    description: Optional[str] = None
    invoice_id: str
    client_email: str
    client_name: Optional[str] = None
    status: PaymentLinkStatus = PaymentLinkStatus.ACTIVE
    paid_amount: float = 0.0
    refunded_amount: float = 0.0
    transaction_id: Optional[str] = None
    # every provider payment applied to this link, in arrival order
    transaction_ids: List[str] = Field(default_factory=list)
    allow_partial_payments: bool = False
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    paid_at: Optional[datetime] = None

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LINK_STATUSES


class PaymentStatus(BaseModel):
    """Provider view of a payment. Produced on demand, never persisted."""
    id: str
    status: ProviderPaymentState
    amount: float = 0.0
    currency: Optional[str] = None
    paid_amount: float = 0.0
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WebhookResult(BaseModel):
    """Normalized webhook event."""
    event_type: WebhookEventType
    payment_id: str
    status: str
    amount: Optional[float] = None
    paid_amount: Optional[float] = None
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    provider_event_type: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # amount covers this one payment only, not the link's running total
    incremental: bool = False


class RefundResult(BaseModel):
    id: str
    status: Literal["completed", "pending", "failed"]
    amount: float
    reason: Optional[str] = None


class PaymentAnalytics(BaseModel):
    gateway: str
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    success_rate: float = 0.0
    total_amount: float = 0.0
    average_payment_time: int = 0
    average_transaction_amount: float = 0.0
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


# =============================================================================
# INVOICES AND COLLABORATOR RECORDS
# =============================================================================

class Invoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    invoice_number: Optional[str] = None
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    currency: str = "USD"
    total_amount: float = 0.0
    status: InvoiceStatus = InvoiceStatus.DRAFT
    payment_status: InvoicePaymentStatus = InvoicePaymentStatus.PENDING
    paid_amount: float = 0.0
    due_date: date
    late_fee_applied: bool = False
    payment_link: Optional[str] = None
    updated_at: Optional[datetime] = None

    _coerce_due = field_validator("due_date", mode="before")(_coerce_date)

    @property
    def is_fully_paid(self) -> bool:
        return self.total_amount > 0 and self.paid_amount >= self.total_amount

    def can_transition(self, new_status: InvoiceStatus) -> bool:
        return new_status in INVOICE_TRANSITIONS[self.status]

    def transition_to(self, new_status: InvoiceStatus) -> "Invoice":
        """Immutable state transition guarded by the invoice state machine."""
        if new_status == self.status:
            return self
        if not self.can_transition(new_status):
            raise InvalidTransition(
                f"Invoice {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        return self.model_copy(update={"status": new_status, "updated_at": _utcnow()})

    def days_overdue(self, today: date) -> int:
        return max(0, (today - self.due_date).days)


class Client(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None


class Project(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    client_id: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    end_date: Optional[date] = None
    progress_percentage: float = 0

    _coerce_end = field_validator("end_date", mode="before")(_coerce_date)


class Task(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    project_id: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[date] = None

    _coerce_due = field_validator("due_date", mode="before")(_coerce_date)


# =============================================================================
# REMINDERS
# =============================================================================

class EscalationRule(BaseModel):
    days_offset: int
    template: str
    method: ReminderMethod = ReminderMethod.EMAIL
    priority: TaskPriority = TaskPriority.MEDIUM


class ReminderConfig(BaseModel):
    days_before: Optional[int] = Field(default=None, ge=0)
    days_after: Optional[int] = Field(default=None, ge=0)
    escalation_rules: List[EscalationRule] = Field(default_factory=list)
    template: str
    method: ReminderMethod = ReminderMethod.EMAIL
    priority: TaskPriority = TaskPriority.MEDIUM


class ReminderSchedule(BaseModel):
    id: str = Field(default_factory=_new_id)
    type: ReminderType
    entity_id: str
    scheduled_at: datetime
    reminder_config: ReminderConfig
    status: ScheduleStatus = ScheduleStatus.PENDING
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


# =============================================================================
# AUTOMATION RECORDS
# =============================================================================

class WorkflowExecution(BaseModel):
    id: str = Field(default_factory=_new_id)
    rule_id: str
    trigger_type: str
    entity_id: str
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["running", "completed"] = "running"
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    actions_executed: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None


class AutomationLog(BaseModel):
    """Append-only audit record."""
    id: str = Field(default_factory=_new_id)
    type: str = "automation"
    entity_id: str
    action: str
    status: Literal["success", "error"]
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class NotificationTemplate(BaseModel):
    id: str = Field(default_factory=_new_id)
    key: Optional[str] = None
    name: str
    type: Literal["email", "sms"] = "email"
    subject: Optional[str] = None
    body: str
    variables: List[str] = Field(default_factory=list)
    is_active: bool = True


# =============================================================================
# LATE FEES
# =============================================================================

class LateFeeRule(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=_new_id)
    name: str = Field(min_length=1)
    type: Literal["percentage", "fixed"]
    amount: float = Field(ge=0)
    grace_period_days: int = Field(ge=0)
    max_amount: Optional[float] = Field(default=None, ge=0)
    compounding_frequency: Optional[Literal["daily", "weekly", "monthly"]] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    def fee_for(self, invoice_total: float) -> float:
        if self.type == "percentage":
            fee = invoice_total * self.amount / 100
        else:
            fee = self.amount
        if self.max_amount is not None and fee > self.max_amount:
            fee = self.max_amount
        return round(fee, 2)


class LateFee(BaseModel):
    id: str = Field(default_factory=_new_id)
    invoice_id: str
    rule_id: str
    amount: float
    days_past_due: int
    applied_at: datetime = Field(default_factory=_utcnow)
