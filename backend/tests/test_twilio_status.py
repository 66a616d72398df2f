# backend/tests/test_twilio_status.py

import pytest
from twilio.request_validator import RequestValidator

from dental_notify.notifications.delivery_log import InMemoryDeliveryLogStore
from dental_notify.notifications.errors import WebhookPayloadError, WebhookSignatureError
from dental_notify.notifications.schemas import (
    Channel,
    ChannelResult,
    DeliveryAttempt,
    DeliveryStatus,
    NotificationType,
)
from dental_notify.webhooks.sms_status import TwilioStatusProcessor

TOKEN = "twilio-token"
URL = "https://clinic.test/webhooks/twilio/status"


def _sent_sms(store: InMemoryDeliveryLogStore, sid: str = "SM123") -> DeliveryAttempt:
    attempt = store.create(
        DeliveryAttempt(
            request_id="req-1",
            recipient_id="p1",
            channel=Channel.SMS,
            notification_type=NotificationType.REMINDER_ONE_DAY,
        )
    )
    return store.record_result(attempt.id, ChannelResult.ok(Channel.SMS, provider_message_id=sid))


def _sign(params) -> str:
    return RequestValidator(TOKEN).compute_signature(URL, params)


def test_delivered_status_marks_attempt_delivered() -> None:
    store = InMemoryDeliveryLogStore()
    attempt = _sent_sms(store)
    params = {"MessageSid": "SM123", "MessageStatus": "delivered"}

    result = TwilioStatusProcessor(TOKEN, store).handle(URL, params, _sign(params))

    assert result.matched is True
    assert result.delivery_id == attempt.id
    assert result.status == DeliveryStatus.DELIVERED
    assert store.get(attempt.id).delivered_at is not None


def test_undelivered_status_marks_attempt_failed_with_error_code() -> None:
    store = InMemoryDeliveryLogStore()
    attempt = _sent_sms(store)
    params = {"MessageSid": "SM123", "MessageStatus": "undelivered", "ErrorCode": "30003"}

    result = TwilioStatusProcessor(TOKEN, store).handle(URL, params, _sign(params))

    row = store.get(attempt.id)
    assert result.status == DeliveryStatus.FAILED
    assert row.status == DeliveryStatus.FAILED
    assert "30003" in row.error_message


def test_intermediate_status_leaves_attempt_unchanged() -> None:
    store = InMemoryDeliveryLogStore()
    attempt = _sent_sms(store)
    params = {"MessageSid": "SM123", "MessageStatus": "sending"}

    result = TwilioStatusProcessor(TOKEN, store).handle(URL, params, _sign(params))

    assert result.status == DeliveryStatus.SENT
    assert store.get(attempt.id).status == DeliveryStatus.SENT


def test_unknown_message_sid_is_reported_as_unmatched() -> None:
    store = InMemoryDeliveryLogStore()
    params = {"MessageSid": "SM404", "MessageStatus": "delivered"}

    result = TwilioStatusProcessor(TOKEN, store).handle(URL, params, _sign(params))

    assert result.matched is False
    assert result.delivery_id is None


def test_invalid_signature_is_rejected() -> None:
    store = InMemoryDeliveryLogStore()
    attempt = _sent_sms(store)
    params = {"MessageSid": "SM123", "MessageStatus": "delivered"}
    signature = _sign(params)
    tampered = dict(params, MessageStatus="failed")

    with pytest.raises(WebhookSignatureError):
        TwilioStatusProcessor(TOKEN, store).handle(URL, tampered, signature)
    with pytest.raises(WebhookSignatureError):
        TwilioStatusProcessor(TOKEN, store).handle(URL, params, None)

    assert store.get(attempt.id).status == DeliveryStatus.SENT


def test_missing_message_sid_is_a_payload_error() -> None:
    store = InMemoryDeliveryLogStore()
    params = {"MessageStatus": "delivered"}

    with pytest.raises(WebhookPayloadError):
        TwilioStatusProcessor(TOKEN, store).handle(URL, params, _sign(params))
