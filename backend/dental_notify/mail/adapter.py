# backend/dental_notify/mail/adapter.py

"""
メールチャンネルアダプタ。
"""

from __future__ import annotations

import logging
from typing import Any

from dental_notify.notifications.channels import result_from_exception
from dental_notify.notifications.schemas import (
    Channel,
    ChannelResult,
    DeliveryErrorType,
    EmailContent,
)

from .client import Mailer, MailTransportError

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "お知らせ"


class EmailChannelAdapter:
    channel = Channel.EMAIL

    def __init__(self, mailer: Mailer) -> None:
        self._mailer = mailer

    def send(self, identifier: str, payload: Any) -> ChannelResult:
        if not identifier or "@" not in identifier:
            return ChannelResult.failure(
                self.channel,
                "Invalid email address",
                error_type=DeliveryErrorType.VALIDATION,
            )

        if isinstance(payload, EmailContent):
            content = payload
        elif payload:
            content = EmailContent(subject=DEFAULT_SUBJECT, body=str(payload))
        else:
            return ChannelResult.failure(
                self.channel,
                "Email content is empty",
                error_type=DeliveryErrorType.VALIDATION,
            )

        try:
            message_id = self._mailer.send(identifier, content.subject, content.body)
        except MailTransportError as exc:
            logger.error("Failed to send email: %s", exc)
            return result_from_exception(self.channel, exc)

        logger.info("Email handed to mail transport (message_id=%s)", message_id)
        return ChannelResult.ok(
            self.channel,
            provider_message_id=message_id,
            response_data={"subject": content.subject},
        )
