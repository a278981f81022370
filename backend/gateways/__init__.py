# gateways/__init__.py
# ============================================================================
# BILLING ENGINE — PAYMENT GATEWAYS
# ============================================================================
# One adapter per provider behind a common contract, plus the registry
# ============================================================================

from gateways.base import PaymentGatewayAdapter, to_minor_units
from gateways.paypal_gateway import PayPalGateway
from gateways.razorpay_gateway import RazorpayGateway
from gateways.registry import GatewayRegistry, GatewaySettings
from gateways.stripe_gateway import StripeGateway

__all__ = [
    "PaymentGatewayAdapter",
    "to_minor_units",
    "StripeGateway",
    "PayPalGateway",
    "RazorpayGateway",
    "GatewayRegistry",
    "GatewaySettings",
]
