# schemas/errors.py
# ============================================================================
# BILLING ENGINE — ERROR TAXONOMY
# ============================================================================
# Every error the core raises maps to one HTTP status at the API boundary.
# ============================================================================

from typing import Optional


class BillingError(Exception):
    """Base class for all billing-core errors."""

    status_code: int = 400
    code: str = "billing_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(BillingError):
    status_code = 400
    code = "validation_error"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class FraudDeclined(BillingError):
    status_code = 400
    code = "fraud_declined"

    def __init__(self, flag: str, message: Optional[str] = None):
        super().__init__(message or f"Payment declined due to fraud screening: {flag}", flag=flag)
        self.flag = flag


class GatewayNotFound(BillingError):
    status_code = 400
    code = "gateway_not_found"

    def __init__(self, gateway: str):
        super().__init__(f"Payment gateway '{gateway}' not found", gateway=gateway)
        self.gateway = gateway


class UpstreamProviderError(BillingError):
    """Any failure reported by (or while talking to) an external payment API."""

    status_code = 502
    code = "upstream_provider_error"

    def __init__(
        self,
        gateway: str,
        operation: str,
        message: str,
        status_code: Optional[int] = None,
        provider_status: Optional[int] = None,
    ):
        super().__init__(
            f"{gateway} {operation} failed: {message}",
            gateway=gateway,
            operation=operation,
        )
        self.gateway = gateway
        self.operation = operation
        self.provider_message = message
        self.provider_status = provider_status
        if status_code is not None:
            self.status_code = status_code


class SignatureInvalid(BillingError):
    status_code = 401
    code = "signature_invalid"


class UnhandledEventType(BillingError):
    """Webhook event the core does not model. Callers log it and answer 200."""

    status_code = 200
    code = "unhandled_event_type"

    def __init__(self, gateway: str, event_type: str):
        super().__init__(
            f"Unhandled {gateway} webhook event type: {event_type}",
            gateway=gateway,
            event_type=event_type,
        )
        self.gateway = gateway
        self.event_type = event_type


class NotFound(BillingError):
    status_code = 404
    code = "not_found"


class TransactionNotFound(NotFound):
    code = "transaction_not_found"


class NotificationError(BillingError):
    status_code = 502
    code = "notification_failed"
