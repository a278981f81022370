# services/__init__.py
# ============================================================================
# BILLING ENGINE — SERVICES MODULE
# ============================================================================
# Leaf services: clock, audit log, notifications, fraud screen, rule engine.
# The orchestrator, event hooks and container depend on tasks/ and are
# imported from their own modules.
# ============================================================================

from services.clock import (
    SystemClock,
    ensure_utc,
    iso,
)

from services.automation_log import AutomationLogger

from services.notifications import (
    NotificationDispatcher,
    NotificationSettings,
    render,
)

from services.fraud_screen import (
    FraudConfig,
    FraudScreen,
    FraudVerdict,
    evaluate,
)

from services.workflow_engine import (
    WorkflowEngine,
    evaluate_conditions,
)

__all__ = [
    # Clock
    "SystemClock",
    "ensure_utc",
    "iso",
    # Audit
    "AutomationLogger",
    # Notifications
    "NotificationDispatcher",
    "NotificationSettings",
    "render",
    # Fraud
    "FraudConfig",
    "FraudScreen",
    "FraudVerdict",
    "evaluate",
    # Rules
    "WorkflowEngine",
    "evaluate_conditions",
]
