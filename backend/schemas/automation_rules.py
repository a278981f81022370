# schemas/automation_rules.py
# ============================================================================
# BILLING ENGINE — AUTOMATION RULE SCHEMA
# ============================================================================
# Trigger / condition / action rules as closed sum types. Persisted rules are
# validated here at load time, so a malformed rule is rejected before it can
# ever be executed.
# ============================================================================

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class TriggerType(str, Enum):
    PROJECT_DEADLINE = "project_deadline"
    INVOICE_DUE = "invoice_due"
    TASK_DUE = "task_due"
    TASK_COMPLETED = "task_completed"
    PROJECT_MILESTONE = "project_milestone"
    PAYMENT_RECEIVED = "payment_received"
    INVOICE_OVERDUE = "invoice_overdue"
    PROPOSAL_ACCEPTED = "proposal_accepted"
    TIME_BASED = "time_based"


class Operator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    IN = "in"


class Trigger(BaseModel):
    type: TriggerType
    config: Dict[str, Any] = Field(default_factory=dict)


class Condition(BaseModel):
    field: str = Field(min_length=1)
    operator: Operator
    value: Any = None


# =============================================================================
# ACTIONS
# =============================================================================

class MessageConfig(BaseModel):
    """Recipient may contain {{placeholders}} filled from trigger data."""
    template: str = Field(min_length=1)
    recipient: str = Field(min_length=1)


class CreateTaskConfig(BaseModel):
    task_data: Dict[str, Any] = Field(default_factory=dict)


class UpdateStatusConfig(BaseModel):
    entity_type: str = Field(min_length=1)
    new_status: str = Field(min_length=1)


class WebhookConfig(BaseModel):
    url: str = Field(min_length=1)


class SendEmailAction(BaseModel):
    type: Literal["send_email"] = "send_email"
    config: MessageConfig


class SendSmsAction(BaseModel):
    type: Literal["send_sms"] = "send_sms"
    config: MessageConfig


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"] = "send_notification"
    config: MessageConfig


class CreateTaskAction(BaseModel):
    type: Literal["create_task"] = "create_task"
    config: CreateTaskConfig = Field(default_factory=CreateTaskConfig)


class UpdateStatusAction(BaseModel):
    type: Literal["update_status"] = "update_status"
    config: UpdateStatusConfig


class WebhookAction(BaseModel):
    type: Literal["webhook"] = "webhook"
    config: WebhookConfig


class GenerateInvoiceAction(BaseModel):
    type: Literal["generate_invoice"] = "generate_invoice"
    config: Dict[str, Any] = Field(default_factory=dict)


class ApplyLateFeeAction(BaseModel):
    type: Literal["apply_late_fee"] = "apply_late_fee"
    config: Dict[str, Any] = Field(default_factory=dict)


Action = Annotated[
    Union[
        SendEmailAction,
        SendSmsAction,
        SendNotificationAction,
        CreateTaskAction,
        UpdateStatusAction,
        WebhookAction,
        GenerateInvoiceAction,
        ApplyLateFeeAction,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# RULE
# =============================================================================

class AutomationRule(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(min_length=1)
    description: Optional[str] = None
    trigger: Trigger
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def matches_trigger(self, trigger_type: str) -> bool:
        return self.is_active and self.trigger.type.value == trigger_type


class AutomationRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger: Optional[Trigger] = None
    conditions: Optional[List[Condition]] = None
    actions: Optional[List[Action]] = None
    is_active: Optional[bool] = None

