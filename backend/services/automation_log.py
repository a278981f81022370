# services/automation_log.py
# ============================================================================
# BILLING ENGINE — AUTOMATION AUDIT LOG
# ============================================================================
# Append-only audit trail: every state transition writes one AutomationLog
# record. Writing an audit entry never raises into the caller.
# ============================================================================

from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from schemas.billing_models import AutomationLog
from services.clock import SystemClock, iso
from storage.record_store import Collection, RecordStore

logger = structlog.get_logger().bind(component="automation_log")


class AutomationLogger:
    def __init__(self, store: RecordStore, clock=None):
        self._store = store
        self._clock = clock or SystemClock()

    async def record(
        self,
        action: str,
        entity_id: str,
        status: str = "success",
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AutomationLog]:
        entry = AutomationLog(
            entity_id=entity_id or "",
            action=action,
            status=status,
            details=details or {},
            timestamp=self._clock.now(),
        )
        log_method = logger.info if status == "success" else logger.warning
        log_method(action, entity_id=entity_id, status=status, details=entry.details)
        try:
            await self._store.create(Collection.AUTOMATION_LOGS, entry.model_dump(mode="json"))
        except Exception as e:
            logger.error("automation_log_write_failed", action=action, entity_id=entity_id, error=str(e))
            return None
        return entry

    async def error(self, action: str, entity_id: str, exc: BaseException, **details) -> None:
        await self.record(action, entity_id, "error", {**details, "error": str(exc) or type(exc).__name__})

    async def prune(self, older_than_days: int = 30) -> int:
        cutoff = iso(self._clock.now() - timedelta(days=older_than_days))
        old = await self._store.query(Collection.AUTOMATION_LOGS, {"timestamp": {"<": cutoff}})
        for entry in old:
            await self._store.delete(Collection.AUTOMATION_LOGS, entry["id"])
        return len(old)
