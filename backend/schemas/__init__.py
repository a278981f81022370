# schemas/__init__.py
# ============================================================================
# BILLING ENGINE — SCHEMAS
# ============================================================================
# Domain models, automation rule sum types and the error taxonomy
# ============================================================================

from schemas.errors import (
    BillingError,
    ValidationError,
    InvalidTransition,
    FraudDeclined,
    GatewayNotFound,
    UpstreamProviderError,
    SignatureInvalid,
    UnhandledEventType,
    NotFound,
    TransactionNotFound,
    NotificationError,
)

from schemas.billing_models import (
    CreatePaymentLinkParams,
    PaymentLink,
    PaymentLinkStatus,
    PaymentStatus,
    WebhookResult,
    WebhookEventType,
    RefundResult,
    PaymentAnalytics,
    Invoice,
    InvoiceStatus,
    InvoicePaymentStatus,
    ReminderConfig,
    ReminderSchedule,
    ReminderType,
    LateFeeRule,
)

from schemas.automation_rules import (
    Action,
    AutomationRule,
    AutomationRuleUpdate,
    Condition,
    Operator,
    Trigger,
    TriggerType,
)

__all__ = [
    # Errors
    "BillingError",
    "ValidationError",
    "InvalidTransition",
    "FraudDeclined",
    "GatewayNotFound",
    "UpstreamProviderError",
    "SignatureInvalid",
    "UnhandledEventType",
    "NotFound",
    "TransactionNotFound",
    "NotificationError",
    # Payments
    "CreatePaymentLinkParams",
    "PaymentLink",
    "PaymentLinkStatus",
    "PaymentStatus",
    "WebhookResult",
    "WebhookEventType",
    "RefundResult",
    "PaymentAnalytics",
    # Invoices and reminders
    "Invoice",
    "InvoiceStatus",
    "InvoicePaymentStatus",
    "ReminderConfig",
    "ReminderSchedule",
    "ReminderType",
    "LateFeeRule",
    # Automation rules
    "Action",
    "AutomationRule",
    "AutomationRuleUpdate",
    "Condition",
    "Operator",
    "Trigger",
    "TriggerType",
]
