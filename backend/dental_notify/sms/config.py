# backend/dental_notify/sms/config.py

"""
Twilio（SMS）に必要な設定値をまとめるモジュール。
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dental_notify.utils.config import get_env, get_env_float


@dataclass(frozen=True)
class TwilioSettings:
    """Twilio 用の設定値コンテナ。"""

    account_sid: str
    auth_token: str
    from_number: str
    status_callback_url: Optional[str] = None
    timeout_seconds: float = 10.0


@lru_cache()
def get_twilio_settings() -> TwilioSettings:
    """
    環境変数から Twilio 設定を読み込む。

    必須:
      - TWILIO_ACCOUNT_SID
      - TWILIO_AUTH_TOKEN
      - TWILIO_PHONE_NUMBER

    任意:
      - TWILIO_STATUS_CALLBACK_URL  (配信ステータス Webhook の公開 URL)
      - TWILIO_TIMEOUT_SECONDS      (デフォルト: 10)
    """
    return TwilioSettings(
        account_sid=get_env("TWILIO_ACCOUNT_SID"),
        auth_token=get_env("TWILIO_AUTH_TOKEN"),
        from_number=get_env("TWILIO_PHONE_NUMBER"),
        status_callback_url=get_env("TWILIO_STATUS_CALLBACK_URL", required=False),
        timeout_seconds=get_env_float("TWILIO_TIMEOUT_SECONDS", default=10.0),
    )
