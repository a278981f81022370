# services/notifications.py
# ============================================================================
# BILLING ENGINE — NOTIFICATION DISPATCHER
# ============================================================================
# Renders stored templates and sends them over email (SendGrid), SMS
# (Twilio), in-app records or outbound webhooks. Unconfigured email/SMS
# transports log the message instead of sending it.
# ============================================================================

import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from schemas.billing_models import NotificationChannel, NotificationTemplate, ReminderMethod
from schemas.errors import NotFound, NotificationError
from services.clock import SystemClock, iso
from storage.record_store import Collection, RecordStore

logger = structlog.get_logger().bind(component="notifications")

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass
class NotificationSettings:
    sendgrid_api_key: str = ""
    email_from: str = "billing@example.com"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    admin_email: str = "admin@example.com"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "NotificationSettings":
        return cls(
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY", ""),
            email_from=os.getenv("EMAIL_FROM", "billing@example.com"),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
            admin_email=os.getenv("ADMIN_EMAIL", "admin@example.com"),
            timeout_seconds=float(os.getenv("NOTIFICATION_TIMEOUT", "10.0")),
        )


def render(text: str, variables: Dict[str, Any]) -> str:
    """Fill {{name}} placeholders; unknown names are left untouched."""
    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER.sub(substitute, text)


class NotificationDispatcher:
    def __init__(
        self,
        store: RecordStore,
        settings: Optional[NotificationSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock=None,
    ):
        self._store = store
        self.settings = settings or NotificationSettings.from_env()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.settings.timeout_seconds)
        self._clock = clock or SystemClock()

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def get_template(self, template_ref: str) -> NotificationTemplate:
        """Look a template up by id, then by key. Only active templates qualify."""
        for field in ("id", "key"):
            found = await self._store.query(
                Collection.NOTIFICATION_TEMPLATES, {field: template_ref, "is_active": True}
            )
            if found:
                return NotificationTemplate.model_validate(found[0])
        raise NotFound(f"Template not found: {template_ref}")

    async def send(
        self,
        channel: NotificationChannel,
        recipient: str,
        template_ref: str,
        variables: Dict[str, Any],
    ) -> bool:
        template = await self.get_template(template_ref)
        body = render(template.body, variables)
        subject = render(template.subject, variables) if template.subject else "Notification"

        if channel == NotificationChannel.EMAIL:
            return await self.send_email(recipient, subject, body)
        if channel == NotificationChannel.SMS:
            return await self.send_sms(recipient, body)
        if channel == NotificationChannel.IN_APP:
            return await self.send_in_app(recipient, body, subject)
        return await self.send_webhook(recipient, {"subject": subject, "content": body, "variables": variables})

    async def deliver(
        self,
        method: ReminderMethod,
        template_ref: str,
        variables: Dict[str, Any],
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> None:
        """Reminder-style delivery: email, sms or both."""
        if method in (ReminderMethod.EMAIL, ReminderMethod.BOTH):
            if not email:
                raise NotificationError("No email address for recipient")
            await self.send(NotificationChannel.EMAIL, email, template_ref, variables)
        if method in (ReminderMethod.SMS, ReminderMethod.BOTH):
            if phone:
                await self.send(NotificationChannel.SMS, phone, template_ref, variables)
            elif method == ReminderMethod.SMS:
                raise NotificationError("No phone number for recipient")
            else:
                logger.warning("sms_skipped_no_phone", template=template_ref)

    # -------------------------------------------------------------------------
    # transports
    # -------------------------------------------------------------------------

    async def send_email(self, recipient: str, subject: str, content: str) -> bool:
        if not self.settings.sendgrid_api_key:
            logger.info("email_logged_not_sent", recipient=recipient, subject=subject, content=content)
            return True
        payload = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.settings.email_from},
            "subject": subject,
            "content": [{"type": "text/plain", "value": content}],
        }
        await self._post(
            "email",
            SENDGRID_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self.settings.sendgrid_api_key}"},
        )
        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    async def send_sms(self, recipient: str, content: str) -> bool:
        if not (self.settings.twilio_account_sid and self.settings.twilio_auth_token):
            logger.info("sms_logged_not_sent", recipient=recipient, content=content)
            return True
        await self._post(
            "sms",
            TWILIO_URL.format(sid=self.settings.twilio_account_sid),
            data={"To": recipient, "From": self.settings.twilio_from_number, "Body": content},
            auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
        )
        logger.info("sms_sent", recipient=recipient)
        return True

    async def send_in_app(self, recipient: str, content: str, subject: Optional[str] = None) -> bool:
        await self._store.create(
            Collection.IN_APP_NOTIFICATIONS,
            {
                "recipient": recipient,
                "subject": subject,
                "content": content,
                "status": "unread",
                "created_at": iso(self._clock.now()),
            },
        )
        logger.info("in_app_notification_stored", recipient=recipient)
        return True

    async def send_webhook(self, url: str, data: Dict[str, Any]) -> bool:
        await self._post("webhook", url, json=data)
        logger.info("webhook_sent", url=url)
        return True

    async def _post(self, channel: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.post(url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("notification_rejected", channel=channel, status=e.response.status_code)
            raise NotificationError(f"{channel} transport rejected message: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("notification_transport_error", channel=channel, error=str(e))
            raise NotificationError(f"{channel} transport failed: {e}") from e
        return response
