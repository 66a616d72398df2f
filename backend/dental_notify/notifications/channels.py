# backend/dental_notify/notifications/channels.py

"""
チャンネルアダプタのインターフェースと呼び出し境界。

実装:
- LineChannelAdapter: LINE Messaging API の push 送信（dental_notify.line）
- EmailChannelAdapter: SMTP 経由のメール送信（dental_notify.mail）
- SmsChannelAdapter: Twilio 経由の SMS 送信（dental_notify.sms）

アダプタは失敗を ChannelResult で返すのが原則。想定外の例外は safe_send() で
失敗結果に変換し、フォールバックの連鎖を止めないようにする。
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from .errors import ChannelTransportError, NotificationValidationError
from .schemas import Channel, ChannelResult, DeliveryErrorType

logger = logging.getLogger(__name__)


class ChannelAdapter(Protocol):
    """
    1 チャンネル分の送信インターフェース。

    identifier はチャンネル固有の宛先（LINE ユーザー ID / メールアドレス / 電話番号）。
    """

    channel: Channel

    def send(self, identifier: str, payload: Any) -> ChannelResult:  # pragma: no cover - Protocol
        ...


def result_from_exception(channel: Channel, exc: BaseException) -> ChannelResult:
    """
    例外を ChannelResult に畳み込む。宛先不正はリトライ対象外として区別する。
    """
    if isinstance(exc, NotificationValidationError):
        error_type = DeliveryErrorType.VALIDATION
    elif isinstance(exc, ChannelTransportError) and exc.timeout:
        error_type = DeliveryErrorType.TIMEOUT
    else:
        error_type = DeliveryErrorType.TRANSPORT
    return ChannelResult.failure(channel, str(exc) or exc.__class__.__name__, error_type=error_type)


def safe_send(adapter: ChannelAdapter, identifier: str, payload: Any) -> ChannelResult:
    """
    アダプタ呼び出しの唯一の catch-all 境界。

    どんな例外もここで ChannelResult(success=False) に変換し、呼び出し元には投げない。
    """
    try:
        return adapter.send(identifier, payload)
    except (ChannelTransportError, NotificationValidationError) as exc:
        logger.warning("Channel %s failed: %s", adapter.channel.value, exc)
        return result_from_exception(adapter.channel, exc)
    except Exception as exc:  # noqa: BLE001 - 1 チャンネルの失敗でディスパッチ全体を止めない
        logger.exception("Unexpected error in %s channel adapter.", adapter.channel.value)
        return result_from_exception(adapter.channel, exc)
