"""
Fraud Screen
============
Heuristic pre-transaction checks consulted before a payment link is
created. Three independent checks, evaluated in order; the first failing
check declines the payment. There is no soft-decline tier.

1. high value:      amount >= FRAUD_HIGH_VALUE_THRESHOLD
2. disposable mail: client email on the disposable-domain denylist
3. rapid attempts:  >= FRAUD_MAX_ATTEMPTS links for the same email inside
                    the trailing FRAUD_WINDOW_HOURS
"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog

from schemas.errors import FraudDeclined
from services.clock import SystemClock, ensure_utc, iso
from storage.record_store import Collection, RecordStore

logger = structlog.get_logger().bind(component="fraud_screen")


class FraudConfig:
    """Fraud screening thresholds from environment"""

    HIGH_VALUE_THRESHOLD = float(os.getenv("FRAUD_HIGH_VALUE_THRESHOLD", "100000"))
    MAX_ATTEMPTS = int(os.getenv("FRAUD_MAX_ATTEMPTS", "5"))
    WINDOW_HOURS = int(os.getenv("FRAUD_WINDOW_HOURS", "24"))


DISPOSABLE_DOMAINS = frozenset({
    "mailinator.com",
    "tempmail.com",
    "10minutemail.com",
    "guerrillamail.com",
    "yopmail.com",
    "trashmail.com",
    "temp-mail.org",
    "throwawaymail.com",
})

DISPOSABLE_KEYWORDS = ("disposable", "tempmail")


@dataclass(frozen=True)
class FraudVerdict:
    approved: bool
    flag: Optional[str] = None


def is_disposable(email: str) -> bool:
    domain = email.rsplit("@", 1)[-1].lower()
    if domain in DISPOSABLE_DOMAINS:
        return True
    return any(keyword in domain for keyword in DISPOSABLE_KEYWORDS)


def evaluate(
    amount: float,
    client_email: str,
    recent_attempts: Iterable[datetime],
    now: datetime,
    config: Optional[FraudConfig] = None,
) -> FraudVerdict:
    """Pure decision over (amount, email, recent attempt timestamps)."""
    config = config or FraudConfig()

    if amount >= config.HIGH_VALUE_THRESHOLD:
        return FraudVerdict(False, "high_amount")

    if is_disposable(client_email):
        return FraudVerdict(False, "suspicious_email")

    window_start = now - timedelta(hours=config.WINDOW_HOURS)
    in_window = [t for t in recent_attempts if ensure_utc(t) >= window_start]
    if len(in_window) >= config.MAX_ATTEMPTS:
        return FraudVerdict(False, "rapid_payments")

    return FraudVerdict(True)


class FraudScreen:
    """Loads recent link history from the record store and applies evaluate()."""

    def __init__(self, store: RecordStore, clock=None, config: Optional[FraudConfig] = None):
        self._store = store
        self._clock = clock or SystemClock()
        self._config = config or FraudConfig()

    async def check(self, amount: float, client_email: str) -> FraudVerdict:
        now = self._clock.now()
        window_start = iso(now - timedelta(hours=self._config.WINDOW_HOURS))
        recent = await self._store.query(
            Collection.PAYMENT_LINKS,
            {"client_email": client_email.lower(), "created_at": {">=": window_start}},
        )
        attempts = [datetime.fromisoformat(r["created_at"].replace("Z", "+00:00")) for r in recent]
        verdict = evaluate(amount, client_email, attempts, now, self._config)
        if not verdict.approved:
            logger.warning("payment_declined", flag=verdict.flag, client_email=client_email, amount=amount)
        return verdict

    async def ensure_allowed(self, amount: float, client_email: str) -> None:
        verdict = await self.check(amount, client_email)
        if not verdict.approved:
            raise FraudDeclined(verdict.flag)
