# backend/dental_notify/notifications/config.py

"""
通知コアの設定値をまとめるモジュール。

クリニック情報（本文テンプレートに埋め込む）と、リトライ方針を扱う。
各チャンネルの認証情報は line/ mail/ sms/ 側の config に置く。
"""

from dataclasses import dataclass
from functools import lru_cache

from dental_notify.utils.config import get_env, get_env_bool, get_env_float, get_env_int

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_UNIT_SECONDS = 600.0  # 10分


@dataclass(frozen=True)
class NotificationSettings:
    """通知コア用の設定値コンテナ。"""

    clinic_name: str = "歯科クリニック"
    clinic_phone: str = "03-1234-5678"
    app_base_url: str = "https://clinic.example.com"
    sms_enabled: bool = False
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_unit_seconds: float = DEFAULT_RETRY_UNIT_SECONDS


@lru_cache()
def get_notification_settings() -> NotificationSettings:
    """
    環境変数から通知コアの設定を読み込む。

    任意:
      - CLINIC_NAME                (デフォルト: 歯科クリニック)
      - CLINIC_PHONE_NUMBER        (デフォルト: 03-1234-5678)
      - APP_BASE_URL               (デフォルト: https://clinic.example.com)
      - ENABLE_SMS                 (デフォルト: false)
      - NOTIFY_MAX_ATTEMPTS        (同一チャンネルの最大試行回数, デフォルト: 3)
      - NOTIFY_RETRY_UNIT_SECONDS  (線形バックオフの単位秒, デフォルト: 600)
    """
    defaults = NotificationSettings()

    max_attempts = get_env_int("NOTIFY_MAX_ATTEMPTS", default=DEFAULT_MAX_ATTEMPTS)
    if max_attempts < 1:
        raise RuntimeError("NOTIFY_MAX_ATTEMPTS must be >= 1")

    return NotificationSettings(
        clinic_name=get_env("CLINIC_NAME", default=defaults.clinic_name, required=False),
        clinic_phone=get_env(
            "CLINIC_PHONE_NUMBER",
            default=defaults.clinic_phone,
            required=False,
        ),
        app_base_url=get_env(
            "APP_BASE_URL",
            default=defaults.app_base_url,
            required=False,
        ).rstrip("/"),
        sms_enabled=get_env_bool("ENABLE_SMS", default=False),
        max_attempts=max_attempts,
        retry_unit_seconds=get_env_float(
            "NOTIFY_RETRY_UNIT_SECONDS",
            default=DEFAULT_RETRY_UNIT_SECONDS,
        ),
    )
