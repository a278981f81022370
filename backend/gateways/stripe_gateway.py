"""
Stripe Gateway
==============
Payment links, checkout sessions, payment intents and refunds through the
official Stripe SDK.

- SDK calls are blocking; they run in the default executor
- webhook signatures are REQUIRED (Stripe-Signature header)
- ids starting with "plink_" are payment links, anything else is treated
  as a payment intent

pip install stripe
"""

import asyncio
import json
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, Mapping, Optional

import stripe

from gateways.base import PaymentGatewayAdapter, from_minor_units, to_minor_units
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
from schemas.errors import (
    SignatureInvalid,
    TransactionNotFound,
    UnhandledEventType,
    UpstreamProviderError,
)

SESSION_STATES = {
    "complete": ProviderPaymentState.COMPLETED,
    "expired": ProviderPaymentState.CANCELLED,
    "open": ProviderPaymentState.PENDING,
}

INTENT_STATES = {
    "succeeded": ProviderPaymentState.COMPLETED,
    "canceled": ProviderPaymentState.CANCELLED,
    "processing": ProviderPaymentState.PROCESSING,
    "requires_payment_method": ProviderPaymentState.PENDING,
    "requires_confirmation": ProviderPaymentState.PENDING,
    "requires_action": ProviderPaymentState.PENDING,
}


def _plain(obj: Any) -> Dict[str, Any]:
    if not obj:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else dict(obj)


class StripeGateway(PaymentGatewayAdapter):
    name = "stripe"
    signature_header = "stripe-signature"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        client: Optional[stripe.StripeClient] = None,
        default_success_url: str = "http://localhost:3000/payment/success",
    ):
        super().__init__()
        self._client = client or stripe.StripeClient(secret_key)
        self._webhook_secret = webhook_secret
        self._default_success_url = default_success_url

    async def _call(self, operation: str, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            status = 400 if isinstance(e, stripe.InvalidRequestError) else 502
            self._logger.warning("stripe_call_failed", operation=operation, error=message)
            raise UpstreamProviderError(self.name, operation, message, status_code=status) from e

    # -------------------------------------------------------------------------
    # create
    # -------------------------------------------------------------------------

    async def create_payment_link(self, params: CreatePaymentLinkParams) -> PaymentLink:
        metadata = params.correlation_metadata()
        metadata["client_name"] = params.client_name
        request: Dict[str, Any] = {
            "line_items": [
                {
                    "price_data": {
                        "currency": params.currency.lower(),
                        "product_data": {
                            "name": params.description,
                            "metadata": {
                                "invoice_id": params.invoice_id,
                                "client_email": params.client_email,
                            },
                        },
                        "unit_amount": to_minor_units(params.amount, params.currency),
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "after_completion": {
                "type": "redirect",
                "redirect": {"url": params.success_url or self._default_success_url},
            },
        }
        if params.expires_at:
            request["expires_at"] = int(params.expires_at.timestamp())

        link = await self._call("create_payment_link", self._client.payment_links.create, params=request)
        self._logger.info("stripe_link_created", payment_id=link.id, invoice_id=params.invoice_id)

        return PaymentLink(
            id=link.id,
            gateway=self.name,
            url=link.url,
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

    # -------------------------------------------------------------------------
    # webhooks
    # -------------------------------------------------------------------------

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookResult:
        if not signature:
            raise SignatureInvalid("Webhook signature is required for Stripe")

        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(body, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            self._logger.warning("stripe_signature_invalid", error=str(e))
            raise SignatureInvalid(f"Webhook signature verification failed: {e}") from e

        event = json.loads(body)
        event_type = event.get("type", "")
        obj = event.get("data", {}).get("object", {})
        currency = obj.get("currency") or "usd"

        if event_type == "checkout.session.completed":
            amount = from_minor_units(obj.get("amount_total"), currency)
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_COMPLETED,
                payment_id=obj.get("payment_link") or obj.get("id"),
                status="completed",
                amount=amount,
                paid_amount=amount,
                transaction_id=obj.get("payment_intent"),
                payment_method=(obj.get("payment_method_types") or [None])[0],
                provider_event_type=event_type,
                metadata=obj.get("metadata") or {},
            )

        if event_type == "checkout.session.expired":
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_EXPIRED,
                payment_id=obj.get("payment_link") or obj.get("id"),
                status="cancelled",
                provider_event_type=event_type,
                metadata=obj.get("metadata") or {},
            )

        if event_type == "payment_intent.payment_failed":
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_FAILED,
                payment_id=obj.get("id"),
                status="failed",
                amount=from_minor_units(obj.get("amount"), currency),
                transaction_id=obj.get("id"),
                provider_event_type=event_type,
                metadata=obj.get("metadata") or {},
            )

        if event_type == "charge.dispute.created":
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_DISPUTED,
                payment_id=obj.get("charge") or obj.get("id"),
                status="failed",
                amount=from_minor_units(obj.get("amount"), currency),
                transaction_id=obj.get("payment_intent"),
                provider_event_type=event_type,
                metadata={"dispute_id": obj.get("id"), "reason": obj.get("reason")},
            )

        raise UnhandledEventType(self.name, event_type)

    # -------------------------------------------------------------------------
    # status
    # -------------------------------------------------------------------------

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        if not payment_id.startswith("plink_"):
            intent = await self._call(
                "get_payment_status", self._client.payment_intents.retrieve, payment_id
            )
            return self._intent_status(intent)

        await self._call("get_payment_status", self._client.payment_links.retrieve, payment_id)
        session = await self._latest_session(payment_id, "get_payment_status")
        if session is None:
            return PaymentStatus(id=payment_id, status=ProviderPaymentState.PENDING, currency="usd")
        return self._session_status(payment_id, session)

    async def _latest_session(self, payment_link_id: str, operation: str):
        sessions = await self._call(
            operation,
            self._client.checkout.sessions.list,
            params={"payment_link": payment_link_id, "limit": 1},
        )
        data = list(sessions.data or [])
        return data[0] if data else None

    def _session_status(self, payment_link_id: str, session) -> PaymentStatus:
        state = SESSION_STATES.get(session.status, ProviderPaymentState.PENDING)
        currency = session.currency or "usd"
        amount = from_minor_units(session.amount_total, currency)
        return PaymentStatus(
            id=payment_link_id,
            status=state,
            amount=amount,
            currency=currency,
            paid_amount=amount if state == ProviderPaymentState.COMPLETED else 0.0,
            payment_method=(session.payment_method_types or [None])[0],
            transaction_id=session.payment_intent,
            paid_at=datetime.now(timezone.utc) if state == ProviderPaymentState.COMPLETED else None,
            metadata=_plain(session.metadata),
        )

    def _intent_status(self, intent) -> PaymentStatus:
        state = INTENT_STATES.get(intent.status, ProviderPaymentState.FAILED)
        amount = from_minor_units(intent.amount, intent.currency or "usd")
        completed = state == ProviderPaymentState.COMPLETED
        return PaymentStatus(
            id=intent.id,
            status=state,
            amount=amount,
            currency=intent.currency,
            paid_amount=amount if completed else 0.0,
            payment_method=(intent.payment_method_types or [None])[0],
            transaction_id=intent.id,
            paid_at=datetime.fromtimestamp(intent.created, tz=timezone.utc) if completed else None,
            metadata=_plain(intent.metadata),
        )

    # -------------------------------------------------------------------------
    # refunds
    # -------------------------------------------------------------------------

    async def refund_payment(self, payment_id: str, amount: Optional[float] = None) -> RefundResult:
        currency = "usd"
        if payment_id.startswith("pi_"):
            intent_id = payment_id
        else:
            session = await self._latest_session(payment_id, "refund_payment")
            if session is None:
                raise TransactionNotFound(f"No payment session found for payment link {payment_id}")
            intent_id = session.payment_intent
            currency = session.currency or currency
            if not intent_id:
                raise TransactionNotFound(f"No payment intent found for payment link {payment_id}")

        request: Dict[str, Any] = {"payment_intent": intent_id}
        if amount:
            request["amount"] = to_minor_units(amount, currency)

        refund = await self._call("refund_payment", self._client.refunds.create, params=request)
        self._logger.info("stripe_refund_created", payment_id=payment_id, refund_id=refund.id)
        return RefundResult(
            id=refund.id,
            status="completed" if refund.status == "succeeded" else "pending",
            amount=from_minor_units(refund.amount, refund.currency or "usd"),
            reason=refund.reason,
        )
