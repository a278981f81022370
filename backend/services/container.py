# services/container.py
# ============================================================================
# BILLING ENGINE — SERVICE CONTAINER
# ============================================================================
# Builds every collaborator once per process and wires them by constructor.
# Startup: store init -> default rules/templates -> reminder rehydration ->
# sweeper loops. Shutdown runs the same steps in reverse.
# ============================================================================

import os
from typing import Optional

import structlog

from database import DatabaseConfig, PostgresRecordStore
from gateways.registry import GatewayRegistry
from services.automation_events import AutomationEvents
from services.automation_log import AutomationLogger
from services.clock import SystemClock
from services.fraud_screen import FraudConfig, FraudScreen
from services.notifications import NotificationDispatcher
from services.payment_orchestrator import PaymentOrchestrator
from services.workflow_engine import WorkflowEngine
from storage.record_store import InMemoryRecordStore, RecordStore
from tasks.late_fees import LateFeeService
from tasks.overdue_sweeper import OverdueSweeper, SweeperConfig
from tasks.reminder_scheduler import ReminderScheduler

logger = structlog.get_logger().bind(component="container")


class BillingContainer:
    def __init__(
        self,
        store: RecordStore,
        registry: GatewayRegistry,
        notifier: Optional[NotificationDispatcher] = None,
        clock=None,
        fraud_config: Optional[FraudConfig] = None,
        sweeper_config: Optional[SweeperConfig] = None,
        allow_overpayment: bool = False,
        admin_email: Optional[str] = None,
    ):
        self.clock = clock or SystemClock()
        self.store = store
        self.registry = registry
        self.notifier = notifier or NotificationDispatcher(store, clock=self.clock)
        self.audit = AutomationLogger(store, self.clock)
        self.fraud = FraudScreen(store, self.clock, fraud_config)
        self.engine = WorkflowEngine(store, self.notifier, self.audit, self.clock)
        self.scheduler = ReminderScheduler(store, self.notifier, self.audit, self.clock, admin_email)
        self.events = AutomationEvents(store, self.engine, self.scheduler, self.audit, self.clock)
        self.orchestrator = PaymentOrchestrator(
            store,
            registry,
            self.fraud,
            self.events,
            self.audit,
            self.clock,
            allow_overpayment=allow_overpayment,
        )
        self.late_fees = LateFeeService(store, self.notifier, self.audit, self.clock)
        self.sweeper = OverdueSweeper(
            store,
            self.scheduler,
            self.events,
            self.engine,
            self.late_fees,
            self.audit,
            self.clock,
            sweeper_config,
        )

    @classmethod
    def from_env(cls) -> "BillingContainer":
        db_config = DatabaseConfig()
        if db_config.enabled:
            store: RecordStore = PostgresRecordStore(db_config)
        else:
            logger.warning("database_not_configured", fallback="in_memory")
            store = InMemoryRecordStore()
        return cls(
            store=store,
            registry=GatewayRegistry.from_settings(),
            allow_overpayment=os.getenv("BILLING_ALLOW_OVERPAYMENT", "false").lower() == "true",
        )

    async def startup(self) -> None:
        if isinstance(self.store, PostgresRecordStore):
            await self.store.initialize()
        await self.engine.seed_defaults()
        await self.scheduler.rehydrate()
        self.sweeper.start()
        logger.info("billing_engine_started", gateways=self.registry.available())

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.scheduler.shutdown()
        await self.registry.close()
        await self.notifier.close()
        await self.store.close()
        logger.info("billing_engine_stopped")
