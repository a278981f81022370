# services/clock.py
# ============================================================================
# BILLING ENGINE — CLOCK
# ============================================================================
# Injectable wall clock. All timestamps in the core are timezone-aware UTC.
# ============================================================================

import asyncio
from datetime import datetime, timezone


class SystemClock:
    """Wall clock backed by the system time and asyncio.sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: datetime) -> str:
    """ISO-8601 in the same shape pydantic serializes UTC datetimes ("...Z")."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")
