# backend/dental_notify/line/config.py

"""
LINE Messaging API 連携に必要な設定値をまとめるモジュール。
"""

from dataclasses import dataclass
from functools import lru_cache

from dental_notify.utils.config import get_env, get_env_float


@dataclass(frozen=True)
class LineSettings:
    """LINE Messaging API 用の設定値コンテナ。"""

    channel_access_token: str
    channel_secret: str
    api_base_url: str = "https://api.line.me"
    timeout_seconds: float = 10.0


@lru_cache()
def get_line_settings() -> LineSettings:
    """
    環境変数から LINE 設定を読み込む。

    必須:
      - LINE_CHANNEL_ACCESS_TOKEN
      - LINE_CHANNEL_SECRET

    任意:
      - LINE_API_BASE_URL     (デフォルト: https://api.line.me)
      - LINE_TIMEOUT_SECONDS  (デフォルト: 10)
    """
    channel_access_token = get_env("LINE_CHANNEL_ACCESS_TOKEN")
    channel_secret = get_env("LINE_CHANNEL_SECRET")

    api_base_url = get_env(
        "LINE_API_BASE_URL",
        default="https://api.line.me",
        required=False,
    )
    timeout_seconds = get_env_float("LINE_TIMEOUT_SECONDS", default=10.0)

    return LineSettings(
        channel_access_token=channel_access_token,
        channel_secret=channel_secret,
        api_base_url=api_base_url.rstrip("/"),
        timeout_seconds=timeout_seconds,
    )
