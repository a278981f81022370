# gateways/base.py
# ============================================================================
# BILLING ENGINE — GATEWAY ADAPTER CONTRACT
# ============================================================================
# Every payment provider is wrapped behind the same four operations. Amounts
# cross this boundary in major currency units; each adapter converts to the
# provider's minor units itself.
# ============================================================================

from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

import httpx
import structlog

from schemas.billing_models import (
    CreatePaymentLinkParams,
    PaymentLink,
    PaymentStatus,
    RefundResult,
    WebhookResult,
)
from schemas.errors import UpstreamProviderError

# ISO 4217 currencies without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def to_minor_units(amount: float, currency: str) -> int:
    """Convert a major-unit amount (e.g. 12.34 USD) into minor units (1234)."""
    value = Decimal(str(amount))
    if currency.upper() not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int], currency: str) -> float:
    if amount is None:
        return 0.0
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return float(amount)
    return float(Decimal(amount) / 100)


class PaymentGatewayAdapter(ABC):
    """Common contract for an external payment provider."""

    name: str = ""
    # Header carrying the provider's webhook signature, if any.
    signature_header: Optional[str] = None

    def __init__(self):
        self._logger = structlog.get_logger().bind(component="gateway", gateway=self.name)

    @abstractmethod
    async def create_payment_link(self, params: CreatePaymentLinkParams) -> PaymentLink:
        pass

    @abstractmethod
    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookResult:
        """
        Verify and normalize a raw provider callback.

        Raises SignatureInvalid when verification fails and
        UnhandledEventType for event kinds the core does not model.
        """

    @abstractmethod
    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        """Accepts either the payment-link id or the underlying transaction id."""

    @abstractmethod
    async def refund_payment(self, payment_id: str, amount: Optional[float] = None) -> RefundResult:
        """
        Refund the transaction behind a link.

        Raises TransactionNotFound when no transaction can be resolved and
        UpstreamProviderError when the provider rejects the refund.
        """

    async def close(self) -> None:
        return None


class RestGatewayAdapter(PaymentGatewayAdapter):
    """Adapter talking to a JSON REST API through httpx.AsyncClient."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        super().__init__()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> dict:
        """Send one request and wrap any transport or provider failure."""
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            self._logger.error("provider_transport_error", operation=operation, error=str(e))
            raise UpstreamProviderError(self.name, operation, str(e)) from e

        if response.status_code >= 400:
            message = self._error_message(response)
            self._logger.warning(
                "provider_rejected",
                operation=operation,
                status=response.status_code,
                error=message,
            )
            status = 400 if response.status_code in (400, 422) else 502
            raise UpstreamProviderError(
                self.name,
                operation,
                message,
                status_code=status,
                provider_status=response.status_code,
            )

        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("description") or error.get("message") or str(error)
        if isinstance(body, dict) and body.get("message"):
            return body["message"]
        return str(error or body)
