# backend/dental_notify/sms/client.py

"""
Twilio SDK を使った SMS 送信クライアント。

SDK の例外（TwilioRestException など）はここで SmsTransportError に揃え、
通知コアに Twilio 固有の型を漏らさない。
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from dental_notify.notifications.errors import ChannelTransportError

from .config import TwilioSettings, get_twilio_settings

logger = logging.getLogger(__name__)


class SmsTransportError(ChannelTransportError):
    """Twilio API 呼び出しに失敗した。"""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TwilioSmsClient:
    """
    Twilio の Messages API の薄いラッパー。

    NOTE:
      - client はテスト用の差し替え口。省略時は設定値から twilio.rest.Client を作る。
    """

    def __init__(self, settings: TwilioSettings | None = None, *, client: Any = None) -> None:
        self._settings = settings or get_twilio_settings()
        self._client = client or Client(
            self._settings.account_sid,
            self._settings.auth_token,
            http_client=TwilioHttpClient(timeout=self._settings.timeout_seconds),
        )

    @property
    def from_number(self) -> str:
        return self._settings.from_number

    def send(self, to: str, body: str) -> str:
        """
        SMS を 1 通送信し、Twilio の Message SID を返す。
        """
        params = {"body": body, "from_": self._settings.from_number, "to": to}
        if self._settings.status_callback_url:
            params["status_callback"] = self._settings.status_callback_url

        try:
            message = self._client.messages.create(**params)
        except TwilioRestException as exc:
            raise SmsTransportError(
                f"Twilio API error: status_code={exc.status} code={exc.code}",
                status_code=exc.status,
            ) from exc
        except TwilioException as exc:
            raise SmsTransportError(f"Twilio client error: {exc}") from exc
        except OSError as exc:
            # requests の接続・タイムアウト例外は OSError 系
            raise SmsTransportError(f"Failed to call Twilio API: {exc}") from exc

        return message.sid
