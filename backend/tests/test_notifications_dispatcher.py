# backend/tests/test_notifications_dispatcher.py

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from dental_notify.line.client import LineConnectionError
from dental_notify.notifications.config import NotificationSettings
from dental_notify.notifications.content import ContentBuilder
from dental_notify.notifications.delivery_log import InMemoryDeliveryLogStore
from dental_notify.notifications.dispatcher import FallbackDispatcher
from dental_notify.notifications.errors import DeliveryExhaustedError, NoContactMethodError
from dental_notify.notifications.retry import ManualRetryQueue, RetryPolicy, RetryScheduler
from dental_notify.notifications.schemas import (
    Appointment,
    Channel,
    ChannelResult,
    DeliveryErrorType,
    DeliveryStatus,
    DispatchErrorType,
    NotificationType,
    Recipient,
)

T0 = datetime(2025, 1, 7, 9, 0, tzinfo=timezone.utc)


class DummyAdapter:
    """
    送信結果を順番に返すだけのアダプタ。結果を使い切ったら成功を返す。
    """

    def __init__(self, channel: Channel, results: Optional[List[ChannelResult]] = None, exc: Exception = None) -> None:
        self.channel = channel
        self.calls = []
        self._results = list(results or [])
        self._exc = exc

    def send(self, identifier, payload) -> ChannelResult:
        self.calls.append((identifier, payload))
        if self._exc is not None:
            raise self._exc
        if self._results:
            return self._results.pop(0)
        return ChannelResult.ok(self.channel, provider_message_id=f"{self.channel.value}-{len(self.calls)}")


def _fail(channel: Channel, error: str = "boom", error_type=DeliveryErrorType.TRANSPORT) -> ChannelResult:
    return ChannelResult.failure(channel, error, error_type=error_type)


def _always_failing(channel: Channel, times: int = 10, **kwargs) -> DummyAdapter:
    return DummyAdapter(channel, [_fail(channel, **kwargs) for _ in range(times)])


def _recipient(**kwargs) -> Recipient:
    values = {"id": "p1", "name": "山田太郎"}
    values.update(kwargs)
    return Recipient(**values)


def _full_recipient() -> Recipient:
    return _recipient(line_user_id="U1", email="taro@example.com", phone="090-1234-5678")


def _appointment() -> Appointment:
    return Appointment(id="a1", recipient_id="p1", scheduled_at=T0 + timedelta(days=3), treatment_type="定期検診")


def _build(adapters, *, scheduler_queue: Optional[ManualRetryQueue] = None):
    store = InMemoryDeliveryLogStore()
    scheduler = None
    if scheduler_queue is not None:
        scheduler = RetryScheduler(RetryPolicy(max_attempts=3, backoff_unit_seconds=600), scheduler_queue, store)
    dispatcher = FallbackDispatcher(adapters, store, ContentBuilder(NotificationSettings()), scheduler)
    return dispatcher, store


# ----------------------------------------------------------------------
# dispatch(): 同期フォールバック
# ----------------------------------------------------------------------
def test_email_only_recipient_gets_exactly_one_email_attempt() -> None:
    line, email, sms = DummyAdapter(Channel.LINE), DummyAdapter(Channel.EMAIL), DummyAdapter(Channel.SMS)
    dispatcher, store = _build([line, email, sms])

    outcome = dispatcher.dispatch(_recipient(email="taro@example.com"), NotificationType.REMINDER_SEVEN_DAY, _appointment())

    assert outcome.success is True
    assert outcome.winning_channel == Channel.EMAIL
    assert [row.channel for row in store.list_all()] == [Channel.EMAIL]
    assert line.calls == [] and sms.calls == []


def test_first_success_wins_when_line_succeeds() -> None:
    line, email, sms = DummyAdapter(Channel.LINE), DummyAdapter(Channel.EMAIL), DummyAdapter(Channel.SMS)
    dispatcher, store = _build([line, email, sms])

    outcome = dispatcher.dispatch(_full_recipient(), NotificationType.CONFIRMATION, _appointment())

    assert outcome.success is True
    assert outcome.winning_channel == Channel.LINE
    assert outcome.total_attempts == 1
    assert len(store) == 1
    assert email.calls == [] and sms.calls == []


def test_sms_is_tried_once_after_line_and_email_fail() -> None:
    line = _always_failing(Channel.LINE)
    email = _always_failing(Channel.EMAIL)
    sms = DummyAdapter(Channel.SMS)
    dispatcher, store = _build([line, email, sms])

    outcome = dispatcher.dispatch(_full_recipient(), NotificationType.REMINDER_ONE_DAY, _appointment())

    assert len(sms.calls) == 1
    assert outcome.success is True
    assert outcome.winning_channel == Channel.SMS
    assert [a.channel for a in outcome.attempts] == [Channel.LINE, Channel.EMAIL, Channel.SMS]
    assert [row.status for row in store.list_all()] == [
        DeliveryStatus.FAILED,
        DeliveryStatus.FAILED,
        DeliveryStatus.SENT,
    ]


def test_all_channels_failing_reports_exhaustion_with_every_error() -> None:
    dispatcher, store = _build(
        [
            _always_failing(Channel.LINE, error="line down"),
            _always_failing(Channel.EMAIL, error="smtp down"),
            _always_failing(Channel.SMS, error="twilio down"),
        ]
    )

    outcome = dispatcher.dispatch(_full_recipient(), NotificationType.REMINDER_ONE_DAY, _appointment())

    assert outcome.success is False
    assert outcome.error_type == DispatchErrorType.EXHAUSTED
    assert outcome.total_attempts == 3
    assert outcome.errors_by_channel() == {
        Channel.LINE: "line down",
        Channel.EMAIL: "smtp down",
        Channel.SMS: "twilio down",
    }
    with pytest.raises(DeliveryExhaustedError) as exc_info:
        outcome.raise_for_failure()
    assert set(exc_info.value.errors) == {Channel.LINE, Channel.EMAIL, Channel.SMS}


def test_recipient_without_contact_methods_fails_without_attempts() -> None:
    dispatcher, store = _build([DummyAdapter(Channel.LINE), DummyAdapter(Channel.EMAIL), DummyAdapter(Channel.SMS)])

    outcome = dispatcher.dispatch(_recipient(), NotificationType.CONFIRMATION)

    assert outcome.success is False
    assert outcome.error_type == DispatchErrorType.NO_CONTACT_METHOD
    assert outcome.attempts == []
    assert len(store) == 0
    with pytest.raises(NoContactMethodError):
        outcome.raise_for_failure()


def test_line_only_patient_three_day_reminder_end_to_end() -> None:
    dispatcher, store = _build([DummyAdapter(Channel.LINE), DummyAdapter(Channel.EMAIL), DummyAdapter(Channel.SMS)])

    outcome = dispatcher.dispatch(_recipient(line_user_id="U1"), "reminder_three_day", _appointment())

    rows = store.list_all()
    assert outcome.success is True
    assert outcome.winning_channel == Channel.LINE
    assert len(rows) == 1
    assert rows[0].channel == Channel.LINE
    assert rows[0].status == DeliveryStatus.SENT
    assert rows[0].appointment_id == "a1"
    assert rows[0].notification_type == NotificationType.REMINDER_THREE_DAY


def test_email_failure_falls_back_to_sms_and_line_is_skipped() -> None:
    # LINE ID が無いので、LINE アダプタが例外を投げる設定でも呼ばれない
    line = DummyAdapter(Channel.LINE, exc=LineConnectionError("connection refused"))
    email = DummyAdapter(
        Channel.EMAIL,
        [ChannelResult.failure(Channel.EMAIL, "HTTP 500", response_data={"status_code": 500})],
    )
    sms = DummyAdapter(Channel.SMS)
    dispatcher, store = _build([line, email, sms])

    outcome = dispatcher.dispatch(
        _recipient(email="taro@example.com", phone="090-1234-5678"),
        NotificationType.REMINDER_ONE_DAY,
        _appointment(),
    )

    assert outcome.success is True
    assert outcome.winning_channel == Channel.SMS
    assert len(outcome.attempts) == 2
    assert [(row.channel, row.status) for row in store.list_all()] == [
        (Channel.EMAIL, DeliveryStatus.FAILED),
        (Channel.SMS, DeliveryStatus.SENT),
    ]
    assert line.calls == []


def test_unexpected_adapter_exception_is_contained(caplog) -> None:
    line = DummyAdapter(Channel.LINE, exc=RuntimeError("unexpected"))
    email = DummyAdapter(Channel.EMAIL)
    dispatcher, store = _build([line, email])

    with caplog.at_level(logging.ERROR):
        outcome = dispatcher.dispatch(_full_recipient(), NotificationType.CONFIRMATION, _appointment())

    assert outcome.success is True
    assert outcome.winning_channel == Channel.EMAIL
    assert outcome.attempts[0].error_type == DeliveryErrorType.TRANSPORT
    assert any(r.exc_info for r in caplog.records)


def test_opted_out_and_unregistered_channels_are_skipped() -> None:
    line, email = DummyAdapter(Channel.LINE), DummyAdapter(Channel.EMAIL)
    # SMS アダプタ未登録（ENABLE_SMS=false 相当）
    dispatcher, store = _build([line, email])

    recipient = _recipient(line_user_id="U1", line_opt_out=True, phone="090-1234-5678")
    outcome = dispatcher.dispatch(recipient, NotificationType.CONFIRMATION)

    assert outcome.error_type == DispatchErrorType.NO_CONTACT_METHOD
    assert line.calls == []


def test_custom_text_content_overrides_templates() -> None:
    line = DummyAdapter(Channel.LINE)
    dispatcher, _ = _build([line])

    dispatcher.dispatch(_recipient(line_user_id="U1"), NotificationType.GENERIC, content="本日は臨時休診です")

    identifier, payload = line.calls[0]
    assert identifier == "U1"
    assert payload == {"type": "text", "text": "本日は臨時休診です"}


# ----------------------------------------------------------------------
# deliver_via(): 同一チャンネル再送とフォールバック
# ----------------------------------------------------------------------
def test_same_channel_retries_use_linear_backoff_then_fall_back() -> None:
    queue = ManualRetryQueue(clock=lambda: T0)
    sms = _always_failing(Channel.SMS)
    email = DummyAdapter(Channel.EMAIL)
    dispatcher, store = _build([email, sms], scheduler_queue=queue)

    attempt = dispatcher.deliver_via(
        _recipient(email="taro@example.com", phone="090-1234-5678"),
        NotificationType.REMINDER_ONE_DAY,
        Channel.SMS,
        _appointment(),
    )

    assert attempt.retry_count == 1
    assert attempt.status == DeliveryStatus.PENDING
    assert [job.due_at for job in queue.scheduled] == [T0 + timedelta(seconds=600)]

    assert queue.run_due(T0 + timedelta(seconds=599)) == 0
    assert queue.run_due(T0 + timedelta(seconds=600)) == 1
    assert [job.due_at for job in queue.scheduled] == [T0 + timedelta(seconds=1200)]

    queue.drain()

    # SMS は初回＋再送 2 回の計 3 回で打ち切り、4 回目は行わずにメールへ移る
    assert len(sms.calls) == 3
    assert len(email.calls) == 1
    rows = store.list_all()
    assert [(row.channel, row.status) for row in rows] == [
        (Channel.SMS, DeliveryStatus.FAILED),
        (Channel.EMAIL, DeliveryStatus.SENT),
    ]
    assert rows[0].retry_count == 2
    assert rows[0].request_id == rows[1].request_id


def test_validation_failure_falls_back_without_scheduling_retry() -> None:
    queue = ManualRetryQueue(clock=lambda: T0)
    sms = DummyAdapter(Channel.SMS, [_fail(Channel.SMS, "Invalid phone number format", DeliveryErrorType.VALIDATION)])
    email = DummyAdapter(Channel.EMAIL)
    dispatcher, store = _build([email, sms], scheduler_queue=queue)

    dispatcher.deliver_via(
        _recipient(email="taro@example.com", phone="123"),
        NotificationType.CONFIRMATION,
        Channel.SMS,
    )

    assert len(queue) == 0
    assert len(sms.calls) == 1
    assert len(email.calls) == 1
    assert store.list_all()[0].retry_count == 0


def test_exhausting_last_channel_logs_error(caplog) -> None:
    queue = ManualRetryQueue(clock=lambda: T0)
    line = _always_failing(Channel.LINE)
    dispatcher, store = _build([line], scheduler_queue=queue)

    dispatcher.deliver_via(_recipient(line_user_id="U1"), NotificationType.CONFIRMATION, Channel.LINE)
    with caplog.at_level(logging.ERROR):
        queue.drain()

    assert len(line.calls) == 3
    assert len(store) == 1
    assert any("exhausted every channel" in r.getMessage() for r in caplog.records)


def test_deliver_via_replaces_unavailable_channel() -> None:
    line, email = DummyAdapter(Channel.LINE), DummyAdapter(Channel.EMAIL)
    dispatcher, _ = _build([line, email])

    attempt = dispatcher.deliver_via(_recipient(email="taro@example.com"), NotificationType.CONFIRMATION, Channel.LINE)

    assert attempt.channel == Channel.EMAIL
    assert attempt.status == DeliveryStatus.SENT
    assert line.calls == []


def test_without_scheduler_transport_failure_falls_back_immediately() -> None:
    line = _always_failing(Channel.LINE)
    email = DummyAdapter(Channel.EMAIL)
    dispatcher, store = _build([line, email])

    dispatcher.deliver_via(_full_recipient(), NotificationType.CONFIRMATION, Channel.LINE)

    assert len(line.calls) == 1
    assert [row.channel for row in store.list_all()] == [Channel.LINE, Channel.EMAIL]


def test_resend_for_unknown_delivery_is_skipped() -> None:
    dispatcher, _ = _build([DummyAdapter(Channel.LINE)])

    assert dispatcher.resend("missing") is None
    assert dispatcher.fall_back("missing") is None
