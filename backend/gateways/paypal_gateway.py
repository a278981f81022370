"""
PayPal Gateway
==============
Orders v2 + Captures over the REST API (httpx) with OAuth2
client-credentials.

- the invoice id travels as purchase_unit reference_id/custom_id and the
  client email as the payer email
- webhook signatures are OPTIONAL: when the transmission headers and a
  webhook id are configured, the event is verified through
  /v1/notifications/verify-webhook-signature; unsigned sandbox payloads
  are accepted otherwise
"""

import json
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from gateways.base import ZERO_DECIMAL_CURRENCIES, RestGatewayAdapter, to_minor_units
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

PAYPAL_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

ORDER_STATES = {
    "CREATED": ProviderPaymentState.PENDING,
    "SAVED": ProviderPaymentState.PENDING,
    "PAYER_ACTION_REQUIRED": ProviderPaymentState.PENDING,
    "APPROVED": ProviderPaymentState.PROCESSING,
    "COMPLETED": ProviderPaymentState.COMPLETED,
    "VOIDED": ProviderPaymentState.CANCELLED,
}

CAPTURE_STATES = {
    "COMPLETED": ProviderPaymentState.COMPLETED,
    "PENDING": ProviderPaymentState.PROCESSING,
    "DECLINED": ProviderPaymentState.FAILED,
    "FAILED": ProviderPaymentState.FAILED,
    "REFUNDED": ProviderPaymentState.REFUNDED,
    "PARTIALLY_REFUNDED": ProviderPaymentState.REFUNDED,
}

COMPLETED_EVENTS = ("PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED")
FAILED_EVENTS = ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED")

TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
}


def format_amount(amount: float, currency: str) -> str:
    """PayPal wants decimal strings: "100.00", or "100" for zero-decimal currencies."""
    minor = to_minor_units(amount, currency)
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(minor)
    return f"{Decimal(minor) / 100:.2f}"


def _money(value: Optional[Dict[str, Any]]) -> float:
    if not value:
        return 0.0
    return float(value.get("value") or 0)


def _capture_of(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


class PayPalGateway(RestGatewayAdapter):
    name = "paypal"
    signature_header = "paypal-transmission-sig"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        webhook_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        default_success_url: str = "http://localhost:3000/payment/success",
        default_cancel_url: str = "http://localhost:3000/payment/cancel",
    ):
        super().__init__(PAYPAL_URLS.get(mode, PAYPAL_URLS["sandbox"]), client)
        self._credentials = httpx.BasicAuth(client_id, client_secret)
        self._webhook_id = webhook_id
        self._default_success_url = default_success_url
        self._default_cancel_url = default_cancel_url
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        data = await self._request(
            "authenticate",
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=self._credentials,
        )
        self._token = data["access_token"]
        # refresh a minute before PayPal expires it
        self._token_expires_at = time.monotonic() + max(0, int(data.get("expires_in", 0)) - 60)
        return self._token

    async def _api(self, operation: str, method: str, url: str, **kwargs) -> dict:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        return await self._request(operation, method, url, headers=headers, **kwargs)

    async def create_payment_link(self, params: CreatePaymentLinkParams) -> PaymentLink:
        request = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": params.invoice_id,
                    "custom_id": params.invoice_id,
                    "description": params.description[:127],
                    "amount": {
                        "currency_code": params.currency.upper(),
                        "value": format_amount(params.amount, params.currency),
                    },
                }
            ],
            "payer": {"email_address": params.client_email},
            "application_context": {
                "return_url": params.success_url or self._default_success_url,
                "cancel_url": params.cancel_url or self._default_cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        order = await self._api("create_payment_link", "POST", "/v2/checkout/orders", json=request)
        approve_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        self._logger.info("paypal_order_created", payment_id=order["id"], invoice_id=params.invoice_id)

        return PaymentLink(
            id=order["id"],
            gateway=self.name,
            url=approve_url,
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

    async def _verify(self, event: Dict[str, Any], signature: str, headers: Mapping[str, str]) -> None:
        lowered = {k.lower(): v for k, v in headers.items()}
        body = {field: lowered.get(header) for field, header in TRANSMISSION_HEADERS.items()}
        body.update(transmission_sig=signature, webhook_id=self._webhook_id, webhook_event=event)
        try:
            result = await self._api(
                "verify_webhook_signature",
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json=body,
            )
        except UpstreamProviderError as e:
            raise SignatureInvalid(f"PayPal signature verification failed: {e.provider_message}") from e
        if result.get("verification_status") != "SUCCESS":
            self._logger.warning("paypal_signature_invalid", status=result.get("verification_status"))
            raise SignatureInvalid("Invalid PayPal webhook signature")

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookResult:
        event = json.loads(payload)
        if signature and headers and self._webhook_id:
            await self._verify(event, signature, headers)
        elif signature is None:
            self._logger.info("paypal_unsigned_webhook_accepted", event_id=event.get("id"))

        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}

        if event_type in COMPLETED_EVENTS:
            if event_type == "CHECKOUT.ORDER.COMPLETED":
                order_id = resource.get("id")
                capture = _capture_of(resource) or {}
                unit = (resource.get("purchase_units") or [{}])[0]
                amount = _money(unit.get("amount"))
                invoice_id = unit.get("custom_id") or unit.get("reference_id")
                capture_id = capture.get("id")
            else:
                related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
                order_id = related.get("order_id") or resource.get("id")
                amount = _money(resource.get("amount"))
                invoice_id = resource.get("custom_id")
                capture_id = resource.get("id")
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_COMPLETED,
                payment_id=order_id,
                status="completed",
                amount=amount,
                paid_amount=amount,
                transaction_id=capture_id,
                payment_method="paypal",
                provider_event_type=event_type,
                metadata={"invoice_id": invoice_id} if invoice_id else {},
            )

        if event_type in FAILED_EVENTS:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            invoice_id = resource.get("custom_id")
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_FAILED,
                payment_id=related.get("order_id") or resource.get("id"),
                status="failed",
                amount=_money(resource.get("amount")),
                transaction_id=resource.get("id"),
                provider_event_type=event_type,
                metadata={"invoice_id": invoice_id} if invoice_id else {},
            )

        if event_type == "CHECKOUT.ORDER.VOIDED":
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_EXPIRED,
                payment_id=resource.get("id"),
                status="cancelled",
                provider_event_type=event_type,
            )

        if event_type == "CUSTOMER.DISPUTE.CREATED":
            disputed = (resource.get("disputed_transactions") or [{}])[0]
            transaction_id = disputed.get("seller_transaction_id")
            return WebhookResult(
                event_type=WebhookEventType.PAYMENT_DISPUTED,
                payment_id=transaction_id or resource.get("dispute_id"),
                status="failed",
                amount=_money(resource.get("dispute_amount")),
                transaction_id=transaction_id,
                provider_event_type=event_type,
                metadata={"dispute_id": resource.get("dispute_id"), "reason": resource.get("reason")},
            )

        raise UnhandledEventType(self.name, event_type)

    async def _fetch_order(self, order_id: str, operation: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._api(operation, "GET", f"/v2/checkout/orders/{order_id}")
        except UpstreamProviderError as e:
            if e.provider_status == 404:
                return None
            raise

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        order = await self._fetch_order(payment_id, "get_payment_status")
        if order is not None:
            state = ORDER_STATES.get(order.get("status"), ProviderPaymentState.PENDING)
            unit = (order.get("purchase_units") or [{}])[0]
            amount = _money(unit.get("amount"))
            capture = _capture_of(order) or {}
            return PaymentStatus(
                id=order["id"],
                status=state,
                amount=amount,
                currency=(unit.get("amount") or {}).get("currency_code"),
                paid_amount=amount if state == ProviderPaymentState.COMPLETED else 0.0,
                payment_method="paypal",
                transaction_id=capture.get("id"),
                paid_at=capture.get("create_time"),
                metadata={"invoice_id": unit.get("custom_id")} if unit.get("custom_id") else {},
            )

        capture = await self._api("get_payment_status", "GET", f"/v2/payments/captures/{payment_id}")
        state = CAPTURE_STATES.get(capture.get("status"), ProviderPaymentState.PENDING)
        amount = _money(capture.get("amount"))
        completed = state == ProviderPaymentState.COMPLETED
        return PaymentStatus(
            id=capture["id"],
            status=state,
            amount=amount,
            currency=(capture.get("amount") or {}).get("currency_code"),
            paid_amount=amount if completed else 0.0,
            payment_method="paypal",
            transaction_id=capture["id"],
            paid_at=capture.get("create_time") if completed else None,
            metadata={"invoice_id": capture.get("custom_id")} if capture.get("custom_id") else {},
        )

    async def refund_payment(self, payment_id: str, amount: Optional[float] = None) -> RefundResult:
        capture_id = payment_id
        currency = "USD"
        order = await self._fetch_order(payment_id, "refund_payment")
        if order is not None:
            capture = _capture_of(order)
            if capture is None:
                raise TransactionNotFound(f"No capture found for PayPal order {payment_id}")
            capture_id = capture["id"]
            currency = (capture.get("amount") or {}).get("currency_code", currency)

        request: Dict[str, Any] = {}
        if amount:
            request["amount"] = {"value": format_amount(amount, currency), "currency_code": currency}

        refund = await self._api(
            "refund_payment", "POST", f"/v2/payments/captures/{capture_id}/refund", json=request
        )
        self._logger.info("paypal_refund_created", payment_id=payment_id, refund_id=refund.get("id"))
        return RefundResult(
            id=refund["id"],
            status="completed" if refund.get("status") == "COMPLETED" else "pending",
            amount=_money(refund.get("amount")) or (amount or 0.0),
            reason=refund.get("note_to_payer"),
        )
