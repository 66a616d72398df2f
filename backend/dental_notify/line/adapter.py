# backend/dental_notify/line/adapter.py

"""
LINE チャンネルアダプタ。

NotificationContent.line_message（Flex / テキスト）または素の文字列を受け取り、
push API で送信した結果を ChannelResult に正規化する。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from dental_notify.notifications.channels import result_from_exception
from dental_notify.notifications.content import LINE_TEXT_MAX_LENGTH
from dental_notify.notifications.schemas import Channel, ChannelResult, DeliveryErrorType

from .client import LineClient, LineClientError

logger = logging.getLogger(__name__)


def to_line_messages(payload: Any) -> List[Dict[str, Any]]:
    """
    ペイロードを LINE の messages 配列に変換する。

    - dict: そのまま 1 メッセージ（Flex など）
    - list: メッセージ配列として扱う
    - それ以外: テキストメッセージ（5000 文字上限）
    """
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list):
        return list(payload)
    return [{"type": "text", "text": str(payload)[:LINE_TEXT_MAX_LENGTH]}]


class LineChannelAdapter:
    channel = Channel.LINE

    def __init__(self, client: LineClient) -> None:
        self._client = client

    @property
    def client(self) -> LineClient:
        return self._client

    def send(self, identifier: str, payload: Any) -> ChannelResult:
        if not identifier:
            return ChannelResult.failure(
                self.channel,
                "LINE user ID is blank",
                error_type=DeliveryErrorType.VALIDATION,
            )
        if payload is None or payload == "":
            return ChannelResult.failure(
                self.channel,
                "LINE message is empty",
                error_type=DeliveryErrorType.VALIDATION,
            )

        messages = to_line_messages(payload)
        try:
            request_id = self._client.push(identifier, messages)
        except LineClientError as exc:
            logger.error("Failed to send LINE message: %s", exc)
            result = result_from_exception(self.channel, exc)
            status_code = getattr(exc, "status_code", None)
            if status_code is not None:
                result.response_data["status_code"] = status_code
            return result

        logger.info("LINE message sent (request_id=%s)", request_id)
        return ChannelResult.ok(
            self.channel,
            provider_message_id=request_id,
            response_data={"message_types": [m.get("type") for m in messages]},
        )
