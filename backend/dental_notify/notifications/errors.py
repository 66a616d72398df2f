# backend/dental_notify/notifications/errors.py

"""
通知コアの例外体系。

チャンネル単位のエラー（送信失敗・宛先不正）はアダプタ境界で ChannelResult に変換され、
ディスパッチの外には出ない。呼び出し元まで届くのは「全チャンネル失敗」と
「連絡先なし」だけで、通常は DispatchOutcome として返る。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from .schemas import Channel


class NotificationError(Exception):
    """通知コア全般の基底例外。"""


class NoContactMethodError(NotificationError):
    """宛先に利用可能なチャンネル識別子が 1 つもない。"""


class ChannelTransportError(NotificationError):
    """
    単一チャンネルの送信失敗（ネットワーク・プロバイダ側エラー）。

    各連携モジュールのクライアント例外はこのクラスを継承する。
    """

    timeout: bool = False


class ChannelTimeoutError(ChannelTransportError):
    """送信先が制限時間内に応答しなかった。"""

    timeout = True


class NotificationValidationError(NotificationError):
    """宛先やペイロードが不正で、送信前に弾いたもの。リトライ枠は消費しない。"""


class WebhookSignatureError(NotificationError):
    """Webhook 署名が無い、または一致しない。"""


class WebhookPayloadError(NotificationError):
    """Webhook 本文が JSON として解釈できない、またはイベント配列がない。"""


class DeliveryExhaustedError(NotificationError):
    """
    対象チャンネルをすべて試して失敗した。

    errors にチャンネルごとの失敗理由を保持する。
    """

    def __init__(self, errors: Optional[Dict["Channel", str]] = None) -> None:
        self.errors = dict(errors or {})
        detail = ", ".join(
            f"{getattr(channel, 'value', channel)}: {message}"
            for channel, message in self.errors.items()
        )
        super().__init__(f"All delivery channels failed ({detail})" if detail else "All delivery channels failed")
