# backend/tests/test_webhooks_router.py

import json
from urllib.parse import urlencode

from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from dental_notify.main import create_app
from dental_notify.notifications.config import NotificationSettings
from dental_notify.notifications.delivery_log import InMemoryDeliveryLogStore
from dental_notify.notifications.directory import InMemoryRecipientDirectory
from dental_notify.notifications.schemas import Channel, ChannelResult, DeliveryAttempt, NotificationType, Recipient
from dental_notify.webhooks.processor import LineWebhookProcessor
from dental_notify.webhooks.router import get_line_webhook_processor, get_twilio_status_processor
from dental_notify.webhooks.signature import compute_line_signature
from dental_notify.webhooks.sms_status import TwilioStatusProcessor

SECRET = "router-secret"
TWILIO_TOKEN = "router-twilio-token"
TWILIO_URL = "https://clinic.test/webhooks/twilio/status"


def create_test_client():
    directory = InMemoryRecipientDirectory(recipients=[Recipient(id="p1", name="山田太郎", line_user_id="U1")])
    store = InMemoryDeliveryLogStore()
    line_processor = LineWebhookProcessor(
        channel_secret=SECRET,
        directory=directory,
        log_store=store,
        settings=NotificationSettings(),
    )
    twilio_processor = TwilioStatusProcessor(TWILIO_TOKEN, store, callback_url=TWILIO_URL)

    app = create_app()
    app.dependency_overrides[get_line_webhook_processor] = lambda: line_processor
    app.dependency_overrides[get_twilio_status_processor] = lambda: twilio_processor
    return TestClient(app), directory, store


def _line_body() -> bytes:
    # 署名は受信したバイト列そのものに対して計算される（空白や順序も含む）
    return json.dumps(
        {"destination": "Uxxx", "events": [{"type": "unfollow", "webhookEventId": "ev-1", "source": {"userId": "U1"}}]},
        indent=2,
    ).encode("utf-8")


def test_line_webhook_accepts_valid_signature() -> None:
    client, directory, _ = create_test_client()
    body = _line_body()

    resp = client.post(
        "/webhooks/line",
        content=body,
        headers={"Content-Type": "application/json", "X-Line-Signature": compute_line_signature(body, SECRET)},
    )

    assert resp.status_code == 200
    assert resp.json()["results"][0]["status"] == "processed"
    assert directory.get_recipient("p1").line_user_id is None


def test_line_webhook_rejects_bad_signature_with_401() -> None:
    client, directory, _ = create_test_client()
    body = _line_body()

    resp = client.post(
        "/webhooks/line",
        content=body,
        headers={"Content-Type": "application/json", "X-Line-Signature": "bogus"},
    )

    assert resp.status_code == 401
    assert directory.get_recipient("p1").line_user_id == "U1"


def test_line_webhook_rejects_missing_signature_with_401() -> None:
    client, _, _ = create_test_client()

    resp = client.post("/webhooks/line", content=_line_body(), headers={"Content-Type": "application/json"})

    assert resp.status_code == 401


def test_line_webhook_rejects_invalid_json_with_400() -> None:
    client, _, _ = create_test_client()
    body = b"{not json"

    resp = client.post(
        "/webhooks/line",
        content=body,
        headers={"Content-Type": "application/json", "X-Line-Signature": compute_line_signature(body, SECRET)},
    )

    assert resp.status_code == 400


def test_twilio_status_webhook_marks_delivery() -> None:
    client, _, store = create_test_client()
    attempt = store.create(
        DeliveryAttempt(
            request_id="req-1",
            recipient_id="p1",
            channel=Channel.SMS,
            notification_type=NotificationType.REMINDER_ONE_DAY,
        )
    )
    store.record_result(attempt.id, ChannelResult.ok(Channel.SMS, provider_message_id="SM123"))
    params = {"MessageSid": "SM123", "MessageStatus": "delivered"}
    signature = RequestValidator(TWILIO_TOKEN).compute_signature(TWILIO_URL, params)

    resp = client.post(
        "/webhooks/twilio/status",
        content=urlencode(params),
        headers={"Content-Type": "application/x-www-form-urlencoded", "X-Twilio-Signature": signature},
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"


def test_twilio_status_webhook_rejects_bad_signature() -> None:
    client, _, _ = create_test_client()

    resp = client.post(
        "/webhooks/twilio/status",
        content=urlencode({"MessageSid": "SM123", "MessageStatus": "delivered"}),
        headers={"Content-Type": "application/x-www-form-urlencoded", "X-Twilio-Signature": "bogus"},
    )

    assert resp.status_code == 401


def test_line_webhook_without_channel_secret_returns_503(monkeypatch) -> None:
    monkeypatch.delenv("LINE_CHANNEL_SECRET", raising=False)
    client = TestClient(create_app())
    body = _line_body()

    resp = client.post(
        "/webhooks/line",
        content=body,
        headers={"Content-Type": "application/json", "X-Line-Signature": compute_line_signature(body, SECRET)},
    )

    assert resp.status_code == 503


def test_twilio_status_without_auth_token_returns_503(monkeypatch) -> None:
    monkeypatch.delenv("TWILIO_AUTH_TOKEN", raising=False)
    client = TestClient(create_app())

    resp = client.post(
        "/webhooks/twilio/status",
        content=urlencode({"MessageSid": "SM123", "MessageStatus": "delivered"}),
        headers={"Content-Type": "application/x-www-form-urlencoded", "X-Twilio-Signature": "sig"},
    )

    assert resp.status_code == 503
