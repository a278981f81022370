"""
Razorpay Gateway
================
Razorpay Payment Links over the REST API (httpx, HTTP basic auth).

Webhooks carry an X-Razorpay-Signature header: hex HMAC-SHA256 of the raw
request body keyed with the webhook secret. The signature is REQUIRED.

payment.captured reports a single payment's amount; payment_link.paid
reports the link's running total in amount_paid.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import httpx

from gateways.base import RestGatewayAdapter, from_minor_units, to_minor_units
from schemas.billing_models import (
    CreatePaymentLinkParams,
    PaymentLink,
    PaymentLinkStatus,
    PaymentStatus,
    ProviderPaymentState,
    RefundResult,
    WebhookEventType,
    WebhookResult,
)
from schemas.errors import SignatureInvalid, TransactionNotFound, UnhandledEventType

RAZORPAY_API_URL = "https://api.razorpay.com/v1"

LINK_STATES = {
    "paid": ProviderPaymentState.COMPLETED,
    "partially_paid": ProviderPaymentState.PROCESSING,
    "expired": ProviderPaymentState.CANCELLED,
    "cancelled": ProviderPaymentState.CANCELLED,
    "created": ProviderPaymentState.PENDING,
}

PAYMENT_STATES = {
    "captured": ProviderPaymentState.COMPLETED,
    "authorized": ProviderPaymentState.PROCESSING,
    "created": ProviderPaymentState.PENDING,
    "failed": ProviderPaymentState.FAILED,
    "refunded": ProviderPaymentState.REFUNDED,
}


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


class RazorpayGateway(RestGatewayAdapter):
    name = "razorpay"
    signature_header = "x-razorpay-signature"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = RAZORPAY_API_URL,
        default_success_url: str = "http://localhost:3000/payment/success",
    ):
        super().__init__(base_url, client)
        self._auth = httpx.BasicAuth(key_id, key_secret)
        self._webhook_secret = webhook_secret or key_secret
        self._default_success_url = default_success_url

    def _sign(self, payload: bytes) -> str:
        return hmac.new(self._webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    async def create_payment_link(self, params: CreatePaymentLinkParams) -> PaymentLink:
        request: Dict[str, Any] = {
            "amount": to_minor_units(params.amount, params.currency),
            "currency": params.currency.upper(),
            "description": params.description,
            "accept_partial": params.allow_partial_payments,
            "customer": {"name": params.client_name, "email": params.client_email},
            "notify": {"sms": True, "email": True},
            "reminder_enable": True,
            "notes": params.correlation_metadata(),
            "callback_url": params.success_url or self._default_success_url,
            "callback_method": "get",
        }
        if params.expires_at:
            request["expire_by"] = int(params.expires_at.timestamp())

        link = await self._request("create_payment_link", "POST", "/payment_links", json=request, auth=self._auth)
        self._logger.info("razorpay_link_created", payment_id=link["id"], invoice_id=params.invoice_id)

        return PaymentLink(
            id=link["id"],
            gateway=self.name,
            url=link.get("short_url"),
            amount=params.amount,
            currency=params.currency.upper(),
            description=params.description,
            invoice_id=params.invoice_id,
            client_email=params.client_email,
            client_name=params.client_name,
            status=PaymentLinkStatus.ACTIVE,
            allow_partial_payments=params.allow_partial_payments,
            expires_at=params.expires_at,
            metadata=params.metadata,
        )

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookResult:
        if not signature:
            raise SignatureInvalid("Webhook signature is required for Razorpay")
        if not hmac.compare_digest(self._sign(payload), signature):
            self._logger.warning("razorpay_signature_invalid")
            raise SignatureInvalid("Invalid webhook signature")

        event = json.loads(payload)
        event_type = event.get("event", "")
        body = event.get("payload", {})
        payment = body.get("payment", {}).get("entity", {})
        link = body.get("payment_link", {}).get("entity", {})

        if event_type == "payment.captured":
            amount = from_minor_units(payment.get("amount"), payment.get("currency", "INR"))
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_COMPLETED,
                payment_id=payment["id"],
                status="completed",
                amount=amount,
                paid_amount=amount,
                transaction_id=payment["id"],
                payment_method=payment.get("method"),
                provider_event_type=event_type,
                metadata=payment.get("notes") or {},
                incremental=True,
            )

        if event_type == "payment_link.paid":
            currency = link.get("currency", "INR")
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_COMPLETED,
                payment_id=link["id"],
                status="completed",
                amount=from_minor_units(link.get("amount"), currency),
                paid_amount=from_minor_units(link.get("amount_paid"), currency),
                transaction_id=payment.get("id"),
                payment_method=payment.get("method"),
                provider_event_type=event_type,
                metadata=link.get("notes") or {},
            )

        if event_type == "payment.failed":
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_FAILED,
                payment_id=payment["id"],
                status="failed",
                amount=from_minor_units(payment.get("amount"), payment.get("currency", "INR")),
                transaction_id=payment["id"],
                provider_event_type=event_type,
                metadata=payment.get("notes") or {},
            )

        if event_type in ("payment_link.expired", "payment_link.cancelled"):
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_EXPIRED,
                payment_id=link["id"],
                status="cancelled",
                amount=from_minor_units(link.get("amount"), link.get("currency", "INR")),
                provider_event_type=event_type,
                metadata=link.get("notes") or {},
            )

        raise UnhandledEventType(self.name, event_type)

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        if payment_id.startswith("plink_"):
            link = await self._request(
                "get_payment_status", "GET", f"/payment_links/{payment_id}", auth=self._auth
            )
            state = LINK_STATES.get(link.get("status"), ProviderPaymentState.PENDING)
            currency = link.get("currency", "INR")
            return PaymentStatus(
                id=link["id"],
                status=state,
                amount=from_minor_units(link.get("amount"), currency),
                currency=currency.lower(),
                paid_amount=from_minor_units(link.get("amount_paid"), currency),
                payment_method="razorpay",
                transaction_id=link["id"],
                paid_at=_timestamp(link.get("paid_at")) if state == ProviderPaymentState.COMPLETED else None,
                metadata=link.get("notes") or {},
            )

        payment = await self._request(
            "get_payment_status", "GET", f"/payments/{payment_id}", auth=self._auth
        )
        state = PAYMENT_STATES.get(payment.get("status"), ProviderPaymentState.PENDING)
        currency = payment.get("currency", "INR")
        amount = from_minor_units(payment.get("amount"), currency)
        completed = state == ProviderPaymentState.COMPLETED
        return PaymentStatus(
            id=payment["id"],
            status=state,
            amount=amount,
            currency=currency.lower(),
            paid_amount=amount if completed else 0.0,
            payment_method=payment.get("method"),
            transaction_id=payment["id"],
            paid_at=_timestamp(payment.get("created_at")) if completed else None,
            failure_reason=payment.get("error_description"),
            metadata=payment.get("notes") or {},
        )

    async def refund_payment(self, payment_id: str, amount: Optional[float] = None) -> RefundResult:
        transaction_id = payment_id
        currency = "INR"
        if payment_id.startswith("plink_"):
            link = await self._request(
                "refund_payment", "GET", f"/payment_links/{payment_id}", auth=self._auth
            )
            payments = link.get("payments") or []
            if not payments:
                raise TransactionNotFound(f"No payments found for payment link {payment_id}")
            transaction_id = payments[0].get("payment_id") or payments[0].get("id")
            currency = link.get("currency", currency)

        request: Dict[str, Any] = {}
        if amount:
            request["amount"] = to_minor_units(amount, currency)

        refund = await self._request(
            "refund_payment",
            "POST",
            f"/payments/{transaction_id}/refund",
            json=request,
            auth=self._auth,
        )
        self._logger.info("razorpay_refund_created", payment_id=payment_id, refund_id=refund.get("id"))
        notes = refund.get("notes") or {}
        return RefundResult(
            id=refund["id"],
            status="completed" if refund.get("status") == "processed" else "pending",
            amount=from_minor_units(refund.get("amount"), refund.get("currency", currency)),
            reason=notes.get("reason") if isinstance(notes, dict) else None,
        )
