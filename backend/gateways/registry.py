# gateways/registry.py
# ============================================================================
# BILLING ENGINE — GATEWAY REGISTRY
# ============================================================================
# Named adapters, dispatched by gateway name. A gateway is only registered
# when its credentials are present in the environment.
# ============================================================================

import os
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from gateways.base import PaymentGatewayAdapter
from gateways.paypal_gateway import PayPalGateway
from gateways.razorpay_gateway import RazorpayGateway
from gateways.stripe_gateway import StripeGateway
from schemas.errors import GatewayNotFound

logger = structlog.get_logger().bind(component="gateway_registry")


@dataclass
class GatewaySettings:
    """Provider credentials from environment."""
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_mode: str = "sandbox"
    paypal_webhook_id: str = ""
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    frontend_url: str = "http://localhost:3000"

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID", ""),
            paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET", ""),
            paypal_mode=os.getenv("PAYPAL_MODE", "sandbox"),
            paypal_webhook_id=os.getenv("PAYPAL_WEBHOOK_ID", ""),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
        )


class GatewayRegistry:
    def __init__(self):
        self._gateways: Dict[str, PaymentGatewayAdapter] = {}

    def register(self, gateway: PaymentGatewayAdapter) -> None:
        self._gateways[gateway.name] = gateway
        logger.info("gateway_registered", gateway=gateway.name)

    def get(self, name: str) -> PaymentGatewayAdapter:
        gateway = self._gateways.get(name)
        if gateway is None:
            raise GatewayNotFound(name)
        return gateway

    def available(self) -> List[str]:
        return list(self._gateways.keys())

    async def close(self) -> None:
        for gateway in self._gateways.values():
            await gateway.close()

    @classmethod
    def from_settings(cls, settings: Optional[GatewaySettings] = None) -> "GatewayRegistry":
        settings = settings or GatewaySettings.from_env()
        registry = cls()
        success_url = f"{settings.frontend_url}/payment/success"

        if settings.stripe_secret_key and settings.stripe_webhook_secret:
            registry.register(
                StripeGateway(
                    settings.stripe_secret_key,
                    settings.stripe_webhook_secret,
                    default_success_url=success_url,
                )
            )
        if settings.paypal_client_id and settings.paypal_client_secret:
            registry.register(
                PayPalGateway(
                    settings.paypal_client_id,
                    settings.paypal_client_secret,
                    mode=settings.paypal_mode,
                    webhook_id=settings.paypal_webhook_id or None,
                    default_success_url=success_url,
                    default_cancel_url=f"{settings.frontend_url}/payment/cancel",
                )
            )
        if settings.razorpay_key_id and settings.razorpay_key_secret:
            registry.register(
                RazorpayGateway(
                    settings.razorpay_key_id,
                    settings.razorpay_key_secret,
                    webhook_secret=settings.razorpay_webhook_secret or None,
                    default_success_url=success_url,
                )
            )

        if not registry.available():
            logger.warning("no_payment_gateways_configured")
        return registry
