# backend/tests/test_notifications_router.py

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from dental_notify.main import create_app
from dental_notify.notifications.config import NotificationSettings
from dental_notify.notifications.directory import InMemoryRecipientDirectory
from dental_notify.notifications.factory import build_notification_services, get_notification_services
from dental_notify.notifications.retry import ManualRetryQueue
from dental_notify.notifications.schemas import Appointment, Channel, ChannelResult, DeliveryStatus, Recipient


class DummyAdapter:
    def __init__(self, channel: Channel, success: bool = True) -> None:
        self.channel = channel
        self.success = success
        self.calls = []

    def send(self, identifier, payload) -> ChannelResult:
        self.calls.append((identifier, payload))
        if self.success:
            return ChannelResult.ok(self.channel, provider_message_id="msg-1")
        return ChannelResult.failure(self.channel, "down")


def create_test_client(adapters, retry_queue=None):
    directory = InMemoryRecipientDirectory(
        recipients=[
            Recipient(id="p1", name="山田太郎", line_user_id="U1", email="taro@example.com"),
            Recipient(id="p2", name="佐藤花子"),
        ],
        appointments=[
            Appointment(
                id="a1",
                recipient_id="p1",
                scheduled_at=datetime(2025, 1, 10, 1, 30, tzinfo=timezone.utc),
            ),
        ],
    )
    services = build_notification_services(
        NotificationSettings(),
        adapters=adapters,
        directory=directory,
        retry_queue=retry_queue if retry_queue is not None else ManualRetryQueue(),
    )
    app = create_app()
    app.dependency_overrides[get_notification_services] = lambda: services
    return TestClient(app), services


def test_health_check_lists_registered_channels() -> None:
    client, _ = create_test_client([DummyAdapter(Channel.EMAIL), DummyAdapter(Channel.LINE)])

    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "channels": ["line", "email"]}


def test_dispatch_returns_outcome_and_records_delivery() -> None:
    line = DummyAdapter(Channel.LINE)
    client, services = create_test_client([line, DummyAdapter(Channel.EMAIL)])

    resp = client.post(
        "/notifications/dispatch",
        json={"recipient_id": "p1", "notification_type": "reminder_one_day", "appointment_id": "a1"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["winning_channel"] == "line"
    assert body["total_attempts"] == 1

    deliveries = client.get("/notifications/deliveries", params={"recipient_id": "p1"}).json()
    assert deliveries["count"] == 1
    assert deliveries["items"][0]["status"] == "sent"
    assert deliveries["items"][0]["notification_type"] == "reminder_one_day"


def test_dispatch_unknown_recipient_returns_404() -> None:
    client, _ = create_test_client([DummyAdapter(Channel.LINE)])

    resp = client.post("/notifications/dispatch", json={"recipient_id": "missing"})

    assert resp.status_code == 404


def test_dispatch_unknown_appointment_returns_404() -> None:
    client, _ = create_test_client([DummyAdapter(Channel.LINE)])

    resp = client.post("/notifications/dispatch", json={"recipient_id": "p2", "appointment_id": "a1"})

    assert resp.status_code == 404


def test_dispatch_without_contact_method_returns_failure_outcome() -> None:
    client, _ = create_test_client([DummyAdapter(Channel.LINE), DummyAdapter(Channel.EMAIL)])

    resp = client.post("/notifications/dispatch", json={"recipient_id": "p2", "notification_type": "confirmation"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["error_type"] == "no_contact_method"


def test_dispatch_with_custom_message() -> None:
    line = DummyAdapter(Channel.LINE)
    client, _ = create_test_client([line])

    resp = client.post("/notifications/dispatch", json={"recipient_id": "p1", "message": "本日は臨時休診です"})

    assert resp.status_code == 200
    assert line.calls[0][1] == {"type": "text", "text": "本日は臨時休診です"}


def test_issue_line_link_code_for_recipient() -> None:
    client, services = create_test_client([DummyAdapter(Channel.LINE)])

    resp = client.post("/notifications/recipients/p2/line-link-code")

    assert resp.status_code == 200
    body = resp.json()
    assert body["recipient_id"] == "p2"
    assert len(body["code"]) == 6 and body["code"].isdigit()
    assert services.directory.redeem_line_link_code(body["code"]) == "p2"


def test_issue_line_link_code_for_unknown_recipient_returns_404() -> None:
    client, _ = create_test_client([DummyAdapter(Channel.LINE)])

    resp = client.post("/notifications/recipients/ghost/line-link-code")

    assert resp.status_code == 404


def test_deliver_queues_retry_after_transient_failure() -> None:
    queue = ManualRetryQueue()
    line = DummyAdapter(Channel.LINE, success=False)
    client, services = create_test_client([line, DummyAdapter(Channel.EMAIL)], retry_queue=queue)

    resp = client.post(
        "/notifications/deliver",
        json={"recipient_id": "p1", "notification_type": "reminder_one_day", "appointment_id": "a1"},
    )

    assert resp.status_code == 202
    body = resp.json()
    assert body["channel"] == "line"
    assert body["status"] == "failed"
    assert body["retry_count"] == 1
    assert len(queue) == 1

    line.success = True
    queue.drain()

    rows = services.log_store.list_for_recipient("p1")
    assert len(rows) == 1
    assert rows[0].status == DeliveryStatus.SENT
    assert len(line.calls) == 2


def test_deliver_uses_requested_channel() -> None:
    line, email = DummyAdapter(Channel.LINE), DummyAdapter(Channel.EMAIL)
    client, _ = create_test_client([line, email])

    resp = client.post("/notifications/deliver", json={"recipient_id": "p1", "channel": "email"})

    assert resp.status_code == 202
    assert resp.json()["channel"] == "email"
    assert resp.json()["status"] == "sent"
    assert line.calls == []


def test_deliver_without_contact_method_returns_422() -> None:
    client, _ = create_test_client([DummyAdapter(Channel.LINE)])

    resp = client.post("/notifications/deliver", json={"recipient_id": "p2"})

    assert resp.status_code == 422
