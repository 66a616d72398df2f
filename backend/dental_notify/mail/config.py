# backend/dental_notify/mail/config.py

"""
メール送信（SMTP）に必要な設定値をまとめるモジュール。
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dental_notify.utils.config import get_env, get_env_bool, get_env_float, get_env_int


@dataclass(frozen=True)
class SmtpSettings:
    """SMTP 用の設定値コンテナ。"""

    host: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    from_address: str = "noreply@dental-clinic.jp"
    timeout_seconds: float = 10.0


@lru_cache()
def get_smtp_settings() -> SmtpSettings:
    """
    環境変数から SMTP 設定を読み込む。

    必須:
      - SMTP_HOST

    任意:
      - SMTP_PORT             (デフォルト: 587)
      - SMTP_USERNAME / SMTP_PASSWORD
      - SMTP_USE_TLS          (デフォルト: true)
      - MAIL_FROM             (デフォルト: noreply@dental-clinic.jp)
      - SMTP_TIMEOUT_SECONDS  (デフォルト: 10)
    """
    return SmtpSettings(
        host=get_env("SMTP_HOST"),
        port=get_env_int("SMTP_PORT", default=587),
        username=get_env("SMTP_USERNAME", required=False),
        password=get_env("SMTP_PASSWORD", required=False),
        use_tls=get_env_bool("SMTP_USE_TLS", default=True),
        from_address=get_env(
            "MAIL_FROM",
            default="noreply@dental-clinic.jp",
            required=False,
        ),
        timeout_seconds=get_env_float("SMTP_TIMEOUT_SECONDS", default=10.0),
    )
