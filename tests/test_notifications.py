"""Tests for template rendering and the notification dispatcher transports."""

import json

import httpx
import pytest

from schemas.billing_models import NotificationChannel, NotificationTemplate, ReminderMethod
from schemas.errors import NotFound, NotificationError
from services.notifications import NotificationDispatcher, NotificationSettings, render
from storage.record_store import Collection


class Recorder:
    """httpx MockTransport handler that records requests."""

    def __init__(self, status_code: int = 202):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)


@pytest.fixture
async def templates(store):
    await store.create(
        Collection.NOTIFICATION_TEMPLATES,
        NotificationTemplate(
            id="tpl-1",
            key="greeting",
            name="Greeting",
            subject="Hello {{name}}",
            body="Hi {{name}}, your total is {{amount}}.",
        ).model_dump(mode="json"),
    )
    await store.create(
        Collection.NOTIFICATION_TEMPLATES,
        NotificationTemplate(key="retired", name="Retired", body="old", is_active=False).model_dump(mode="json"),
    )


def _dispatcher(store, clock, recorder=None, **settings) -> NotificationDispatcher:
    recorder = recorder or Recorder()
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return NotificationDispatcher(store, NotificationSettings(**settings), http_client=http, clock=clock)


# ===================================================================
# Rendering
# ===================================================================

class TestRender:

    def test_fills_known_placeholders(self):
        assert render("Hi {{name}}, owe {{ amount }}", {"name": "Ann", "amount": 12.5}) == "Hi Ann, owe 12.5"

    def test_leaves_unknown_placeholders(self):
        assert render("Hi {{name}} {{missing}}", {"name": "Ann"}) == "Hi Ann {{missing}}"

    def test_none_values_left_untouched(self):
        assert render("Ref {{ref}}", {"ref": None}) == "Ref {{ref}}"


# ===================================================================
# Templates
# ===================================================================

class TestTemplates:

    @pytest.mark.asyncio
    async def test_lookup_by_id_and_key(self, store, clock, templates):
        dispatcher = _dispatcher(store, clock)
        assert (await dispatcher.get_template("tpl-1")).key == "greeting"
        assert (await dispatcher.get_template("greeting")).id == "tpl-1"

    @pytest.mark.asyncio
    async def test_inactive_template_not_found(self, store, clock, templates):
        with pytest.raises(NotFound):
            await _dispatcher(store, clock).get_template("retired")


# ===================================================================
# Transports
# ===================================================================

class TestTransports:

    @pytest.mark.asyncio
    async def test_email_via_sendgrid(self, store, clock, templates):
        recorder = Recorder()
        dispatcher = _dispatcher(store, clock, recorder, sendgrid_api_key="SG.key", email_from="ar@example.com")

        assert await dispatcher.send(NotificationChannel.EMAIL, "ann@example.com", "greeting", {"name": "Ann", "amount": 5})

        [request] = recorder.requests
        assert str(request.url) == "https://api.sendgrid.com/v3/mail/send"
        assert request.headers["Authorization"] == "Bearer SG.key"
        body = json.loads(request.content)
        assert body["personalizations"] == [{"to": [{"email": "ann@example.com"}]}]
        assert body["from"] == {"email": "ar@example.com"}
        assert body["subject"] == "Hello Ann"
        assert body["content"][0]["value"] == "Hi Ann, your total is 5."

    @pytest.mark.asyncio
    async def test_unconfigured_email_is_logged_only(self, store, clock, templates):
        recorder = Recorder()
        dispatcher = _dispatcher(store, clock, recorder)
        assert await dispatcher.send(NotificationChannel.EMAIL, "ann@example.com", "greeting", {"name": "Ann"})
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_sms_via_twilio(self, store, clock, templates):
        recorder = Recorder(status_code=201)
        dispatcher = _dispatcher(
            store, clock, recorder, twilio_account_sid="AC1", twilio_auth_token="tok", twilio_from_number="+1555"
        )
        await dispatcher.send(NotificationChannel.SMS, "+1666", "greeting", {"name": "Ann", "amount": 1})

        [request] = recorder.requests
        assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages.json"
        assert request.headers["Authorization"].startswith("Basic ")
        assert b"To=%2B1666" in request.content

    @pytest.mark.asyncio
    async def test_rejected_email_raises(self, store, clock, templates):
        dispatcher = _dispatcher(store, clock, Recorder(status_code=500), sendgrid_api_key="SG.key")
        with pytest.raises(NotificationError):
            await dispatcher.send(NotificationChannel.EMAIL, "ann@example.com", "greeting", {"name": "Ann"})

    @pytest.mark.asyncio
    async def test_in_app_notification_stored(self, store, clock, templates):
        dispatcher = _dispatcher(store, clock)
        await dispatcher.send(NotificationChannel.IN_APP, "user-1", "greeting", {"name": "Ann", "amount": 3})

        [stored] = await store.read_all(Collection.IN_APP_NOTIFICATIONS)
        assert stored["recipient"] == "user-1"
        assert stored["subject"] == "Hello Ann"
        assert stored["status"] == "unread"
        assert stored["created_at"] == "2024-06-01T12:00:00Z"

    @pytest.mark.asyncio
    async def test_webhook_posts_json(self, store, clock):
        recorder = Recorder(status_code=200)
        dispatcher = _dispatcher(store, clock, recorder)
        await dispatcher.send_webhook("https://hooks.example.com/in", {"invoice_id": "inv-1"})

        [request] = recorder.requests
        assert json.loads(request.content) == {"invoice_id": "inv-1"}


# ===================================================================
# Reminder delivery
# ===================================================================

class TestDeliver:

    @pytest.mark.asyncio
    async def test_sms_without_phone_fails(self, store, clock, templates):
        with pytest.raises(NotificationError):
            await _dispatcher(store, clock).deliver(ReminderMethod.SMS, "greeting", {"name": "Ann"}, email="a@b.co")

    @pytest.mark.asyncio
    async def test_email_without_address_fails(self, store, clock, templates):
        with pytest.raises(NotificationError):
            await _dispatcher(store, clock).deliver(ReminderMethod.EMAIL, "greeting", {"name": "Ann"})

    @pytest.mark.asyncio
    async def test_both_without_phone_sends_email_only(self, store, clock, templates):
        recorder = Recorder()
        dispatcher = _dispatcher(store, clock, recorder, sendgrid_api_key="SG.key", twilio_account_sid="AC1", twilio_auth_token="tok")
        await dispatcher.deliver(ReminderMethod.BOTH, "greeting", {"name": "Ann"}, email="a@b.co")

        assert [r.url.host for r in recorder.requests] == ["api.sendgrid.com"]
