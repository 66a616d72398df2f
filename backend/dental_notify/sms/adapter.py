# backend/dental_notify/sms/adapter.py

"""
SMS チャンネルアダプタ。

送信前に電話番号を E.164 へ正規化し、本文を 160 文字に切り詰める。
正規化できない番号は Twilio を呼ばずに VALIDATION 失敗として返す。
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from dental_notify.notifications.channels import result_from_exception
from dental_notify.notifications.schemas import Channel, ChannelResult, DeliveryErrorType

from .client import SmsTransportError
from .formatting import DEFAULT_COUNTRY_CODE, InvalidPhoneNumberError, normalize_phone_number, truncate_sms

logger = logging.getLogger(__name__)


class SmsSender(Protocol):
    def send(self, to: str, body: str) -> str:  # pragma: no cover - Protocol
        ...


class SmsChannelAdapter:
    channel = Channel.SMS

    def __init__(self, sender: SmsSender, *, country_code: str = DEFAULT_COUNTRY_CODE) -> None:
        self._sender = sender
        self._country_code = country_code

    def send(self, identifier: str, payload: Any) -> ChannelResult:
        try:
            to = normalize_phone_number(identifier, self._country_code)
        except InvalidPhoneNumberError as exc:
            logger.warning("SMS skipped: %s", exc)
            return result_from_exception(self.channel, exc)

        body = truncate_sms(str(payload or ""))
        if not body:
            return ChannelResult.failure(
                self.channel,
                "SMS body is empty",
                error_type=DeliveryErrorType.VALIDATION,
            )

        try:
            sid = self._sender.send(to, body)
        except SmsTransportError as exc:
            logger.error("Failed to send SMS: %s", exc)
            result = result_from_exception(self.channel, exc)
            if exc.status_code is not None:
                result.response_data["status_code"] = exc.status_code
            return result

        logger.info("SMS sent (sid=%s, length=%d)", sid, len(body))
        return ChannelResult.ok(
            self.channel,
            provider_message_id=sid,
            response_data={"length": len(body)},
        )
