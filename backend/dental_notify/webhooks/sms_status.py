# backend/dental_notify/webhooks/sms_status.py

"""
Twilio の SMS 配信ステータスコールバック処理。

MessageSid で配信ログを引き当て、MessageStatus を反映する:
- delivered → delivered
- failed / undelivered → failed
- それ以外（queued / sending / sent）は途中経過なので何もしない
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from twilio.request_validator import RequestValidator

from dental_notify.notifications.delivery_log import DeliveryLogStore
from dental_notify.notifications.errors import WebhookPayloadError, WebhookSignatureError
from dental_notify.notifications.schemas import DeliveryErrorType, DeliveryStatus

from .schemas import SmsStatusResult

logger = logging.getLogger(__name__)

_FAILED_STATUSES = ("failed", "undelivered")


class TwilioStatusProcessor:
    def __init__(
        self,
        auth_token: str,
        log_store: DeliveryLogStore,
        *,
        callback_url: Optional[str] = None,
        validator: Optional[Any] = None,
    ) -> None:
        self.callback_url = callback_url
        self._validator = validator or RequestValidator(auth_token)
        self._log_store = log_store

    def handle(self, url: str, params: Mapping[str, str], signature: Optional[str]) -> SmsStatusResult:
        """
        :param url: Twilio に登録したコールバック URL（署名計算に使う）
        :param params: フォームパラメータ
        :param signature: X-Twilio-Signature
        """
        if not signature or not self._validator.validate(url, dict(params), signature):
            logger.warning("Rejected Twilio status callback with invalid signature.")
            raise WebhookSignatureError("Invalid Twilio signature.")

        message_sid = params.get("MessageSid") or params.get("SmsSid")
        provider_status = (params.get("MessageStatus") or params.get("SmsStatus") or "").lower()
        if not message_sid or not provider_status:
            raise WebhookPayloadError("Twilio callback lacks MessageSid or MessageStatus.")

        attempt = self._log_store.find_by_provider_message_id(message_sid)
        if attempt is None:
            logger.info("No delivery found for Twilio message %s.", message_sid)
            return SmsStatusResult(message_sid=message_sid, provider_status=provider_status, matched=False)

        updated = None
        if provider_status == "delivered":
            updated = self._log_store.mark_delivered(attempt.id)
        elif provider_status in _FAILED_STATUSES and attempt.status != DeliveryStatus.READ:
            error_code = params.get("ErrorCode")
            updated = self._log_store.update(
                attempt.id,
                status=DeliveryStatus.FAILED,
                error_type=DeliveryErrorType.TRANSPORT,
                error_message=f"Twilio reported {provider_status}"
                + (f" (ErrorCode={error_code})" if error_code else ""),
            )
            logger.warning("SMS delivery %s reported as %s by Twilio.", attempt.id, provider_status)

        current = updated or self._log_store.get(attempt.id) or attempt
        return SmsStatusResult(
            message_sid=message_sid,
            provider_status=provider_status,
            matched=True,
            delivery_id=attempt.id,
            status=current.status,
        )
