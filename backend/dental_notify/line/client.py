# backend/dental_notify/line/client.py

"""
LINE Messaging API との通信を担当するクライアントモジュール。

- push: 1 ユーザーへの送信
- multicast: 複数ユーザーへの一斉送信（1 回あたり最大 500 人）
- reply: Webhook の replyToken を使った返信
- get_profile: プロフィール取得
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from dental_notify.notifications.errors import ChannelTimeoutError, ChannelTransportError

from .config import LineSettings, get_line_settings
from .schemas import MULTICAST_BATCH_SIZE, LineMulticastBatchResult, LineMulticastResult

logger = logging.getLogger(__name__)


class LineClientError(ChannelTransportError):
    """LINE クライアント全般の例外。"""


class LineAuthError(LineClientError):
    """認証・権限関連のエラー。"""


class LineAPIError(LineClientError):
    """HTTP ステータスコードがエラーだった場合の例外。"""

    def __init__(self, status_code: int, body: Any | None = None) -> None:
        super().__init__(f"LINE API error: status_code={status_code}")
        self.status_code = status_code
        self.body = body


class LineConnectionError(LineClientError):
    """接続エラー時の例外。"""


class LineTimeoutError(LineClientError, ChannelTimeoutError):
    """タイムアウト時の例外。"""


class LineClient:
    """
    LINE Messaging API の薄いラッパークライアント。

    NOTE:
      - transport はテスト用の差し替え口（httpx.MockTransport など）。
    """

    def __init__(
        self,
        settings: LineSettings | None = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._settings = settings or get_line_settings()
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._settings.api_base_url

    @property
    def timeout(self) -> float:
        return self._settings.timeout_seconds

    def _build_headers(self) -> Dict[str, str]:
        """
        LINE API 呼び出しに使用する HTTP ヘッダを構築する。
        """
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._settings.channel_access_token}",
        }

    def _raise_for_status(self, response: httpx.Response) -> None:
        """
        HTTP レスポンスコードに応じて適切な例外を投げる。
        """
        if response.status_code in (401, 403):
            raise LineAuthError(
                f"LINE API rejected credentials: status_code={response.status_code}"
            )
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            raise LineAPIError(status_code=response.status_code, body=body)

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.request(
                    method,
                    url,
                    json=payload,
                    headers=self._build_headers(),
                )
        except httpx.TimeoutException as exc:
            raise LineTimeoutError(f"LINE API timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise LineConnectionError(f"Failed to call LINE API: {exc}") from exc

        self._raise_for_status(response)
        return response

    def push(self, to: str, messages: Sequence[Dict[str, Any]]) -> Optional[str]:
        """
        1 ユーザーへメッセージを送る。

        :return: X-Line-Request-Id（配信ログの provider_message_id に使う）
        """
        response = self._request(
            "POST",
            "/v2/bot/message/push",
            {"to": to, "messages": list(messages)},
        )
        return response.headers.get("x-line-request-id")

    def reply(self, reply_token: str, messages: Sequence[Dict[str, Any]]) -> Optional[str]:
        response = self._request(
            "POST",
            "/v2/bot/message/reply",
            {"replyToken": reply_token, "messages": list(messages)},
        )
        return response.headers.get("x-line-request-id")

    def multicast(self, user_ids: Sequence[str], messages: Sequence[Dict[str, Any]]) -> LineMulticastResult:
        """
        複数ユーザーへ一斉送信する。

        LINE API の上限（1 回 500 人）に合わせて順番にバッチ送信し、
        バッチごとの結果を集約して返す。1 バッチの失敗で残りを止めない。
        """
        batches: List[LineMulticastBatchResult] = []
        ids = list(user_ids)

        for index, start in enumerate(range(0, len(ids), MULTICAST_BATCH_SIZE)):
            batch = ids[start:start + MULTICAST_BATCH_SIZE]
            try:
                response = self._request(
                    "POST",
                    "/v2/bot/message/multicast",
                    {"to": batch, "messages": list(messages)},
                )
            except LineClientError as exc:
                logger.error("LINE multicast batch %d failed (%d users): %s", index, len(batch), exc)
                batches.append(
                    LineMulticastBatchResult(
                        batch_index=index,
                        recipient_count=len(batch),
                        success=False,
                        error=str(exc),
                    )
                )
                continue

            logger.info("LINE multicast batch %d sent to %d users", index, len(batch))
            batches.append(
                LineMulticastBatchResult(
                    batch_index=index,
                    recipient_count=len(batch),
                    success=True,
                    request_id=response.headers.get("x-line-request-id"),
                )
            )

        return LineMulticastResult(batches=batches)

    def get_profile(self, user_id: str) -> Dict[str, Any]:
        response = self._request("GET", f"/v2/bot/profile/{user_id}")
        try:
            return response.json()
        except ValueError:
            return {}
