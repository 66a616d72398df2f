# backend/tests/conftest.py
"""
テスト共通の前準備。

- backend/ を sys.path に追加し、`import dental_notify.*` を解決できるようにする
- 各チャンネルの必須環境変数にダミー値を入れる（実際の送信は行わない）
- lru_cache で保持している設定・サービスをテストごとに破棄する
"""

import os
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

DUMMY_ENV = {
    "LINE_CHANNEL_ACCESS_TOKEN": "dummy-line-token-for-tests",
    "LINE_CHANNEL_SECRET": "dummy-line-secret-for-tests",
    "TWILIO_ACCOUNT_SID": "ACdummy-sid-for-tests",
    "TWILIO_AUTH_TOKEN": "dummy-twilio-token-for-tests",
    "TWILIO_PHONE_NUMBER": "+815012345678",
}

for _key, _value in DUMMY_ENV.items():
    os.environ.setdefault(_key, _value)


@pytest.fixture(autouse=True)
def _reset_cached_services():
    from dental_notify.line.config import get_line_settings
    from dental_notify.notifications.factory import get_notification_services
    from dental_notify.sms.config import get_twilio_settings
    from dental_notify.webhooks.router import get_line_webhook_processor, get_twilio_status_processor

    cached = (
        get_line_settings,
        get_twilio_settings,
        get_notification_services,
        get_line_webhook_processor,
        get_twilio_status_processor,
    )
    for getter in cached:
        getter.cache_clear()
    yield
    for getter in cached:
        getter.cache_clear()
