# backend/dental_notify/notifications/delivery_log.py

"""
配信ログ（DeliveryAttempt）の保存先。

- 1 チャンネルへの 1 回の配信試行が 1 行
- リトライ回数の参照、同一リマインドの重複送信チェック、既読反映に使う
- 並行するディスパッチからの追記に耐えるよう、インメモリ実装はロックで保護する

永続化層（DB 等）を使う場合は DeliveryLogStore プロトコルを満たす実装を差し込む。
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .schemas import (
    Channel,
    ChannelResult,
    DeliveryAttempt,
    DeliveryStatus,
    NotificationType,
    utcnow,
)


class DeliveryLogStore(Protocol):
    """
    配信ログストアの最小インターフェース。
    """

    def create(self, attempt: DeliveryAttempt) -> DeliveryAttempt:  # pragma: no cover - Protocol
        ...

    def get(self, attempt_id: str) -> Optional[DeliveryAttempt]:  # pragma: no cover - Protocol
        ...

    def update(self, attempt_id: str, **changes) -> DeliveryAttempt:  # pragma: no cover - Protocol
        ...

    def record_result(self, attempt_id: str, result: ChannelResult) -> DeliveryAttempt:  # pragma: no cover - Protocol
        ...

    def increment_retry(self, attempt_id: str) -> DeliveryAttempt:  # pragma: no cover - Protocol
        ...

    def mark_read(self, attempt_id: str, at: Optional[datetime] = None) -> Optional[DeliveryAttempt]:  # pragma: no cover - Protocol
        ...

    def mark_delivered(self, attempt_id: str, at: Optional[datetime] = None) -> Optional[DeliveryAttempt]:  # pragma: no cover - Protocol
        ...

    def list_for_request(self, request_id: str) -> List[DeliveryAttempt]:  # pragma: no cover - Protocol
        ...

    def list_for_recipient(self, recipient_id: str) -> List[DeliveryAttempt]:  # pragma: no cover - Protocol
        ...

    def latest_sent(self, recipient_id: str, channel: Channel) -> Optional[DeliveryAttempt]:  # pragma: no cover - Protocol
        ...

    def find_by_provider_message_id(self, provider_message_id: str) -> Optional[DeliveryAttempt]:  # pragma: no cover - Protocol
        ...

    def has_notification(self, appointment_id: str, notification_type: NotificationType) -> bool:  # pragma: no cover - Protocol
        ...


class UnknownDeliveryAttemptError(KeyError):
    """指定 ID の配信ログが存在しない。"""


class InMemoryDeliveryLogStore:
    """
    プロセス内メモリに配信ログを保持する DeliveryLogStore 実装。

    - 行の追加・更新はすべて単一のロック下で行う
    - 呼び出し元には常にコピーを返し、外部からの書き換えで状態が壊れないようにする
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, DeliveryAttempt] = {}
        # 追加順を保持（「最新の送信済み」を引くため）
        self._order: List[str] = []

    # ------------------------------------------------------------------
    # 内部ユーティリティ
    # ------------------------------------------------------------------
    def _require(self, attempt_id: str) -> DeliveryAttempt:
        row = self._rows.get(attempt_id)
        if row is None:
            raise UnknownDeliveryAttemptError(attempt_id)
        return row

    def _replace(self, attempt_id: str, **changes) -> DeliveryAttempt:
        row = self._require(attempt_id).model_copy(update=changes)
        self._rows[attempt_id] = row
        return row.model_copy()

    # ------------------------------------------------------------------
    # 書き込み
    # ------------------------------------------------------------------
    def create(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        with self._lock:
            if attempt.id in self._rows:
                raise ValueError(f"Delivery attempt {attempt.id} already exists.")
            self._rows[attempt.id] = attempt.model_copy()
            self._order.append(attempt.id)
        return attempt.model_copy()

    def update(self, attempt_id: str, **changes) -> DeliveryAttempt:
        with self._lock:
            return self._replace(attempt_id, **changes)

    def record_result(self, attempt_id: str, result: ChannelResult) -> DeliveryAttempt:
        """
        アダプタの送信結果を配信ログに反映する（pending → sent | failed）。
        """
        if result.success:
            changes = {
                "status": DeliveryStatus.SENT,
                "sent_at": result.sent_at,
                "provider_message_id": result.provider_message_id,
                "error_message": None,
                "error_type": None,
                "response_data": dict(result.response_data),
            }
        else:
            changes = {
                "status": DeliveryStatus.FAILED,
                "error_message": result.error,
                "error_type": result.error_type,
                "response_data": dict(result.response_data),
            }
        with self._lock:
            return self._replace(attempt_id, **changes)

    def increment_retry(self, attempt_id: str) -> DeliveryAttempt:
        with self._lock:
            row = self._require(attempt_id)
            return self._replace(
                attempt_id,
                retry_count=row.retry_count + 1,
                status=DeliveryStatus.PENDING,
            )

    def mark_read(self, attempt_id: str, at: Optional[datetime] = None) -> Optional[DeliveryAttempt]:
        """
        sent / delivered の行を read にする。それ以外の状態なら何もしない（None を返す）。
        """
        with self._lock:
            row = self._require(attempt_id)
            if row.status not in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED):
                return None
            return self._replace(attempt_id, status=DeliveryStatus.READ, read_at=at or utcnow())

    def mark_delivered(self, attempt_id: str, at: Optional[datetime] = None) -> Optional[DeliveryAttempt]:
        """
        sent の行を delivered にする。既読済みの行は巻き戻さない。
        """
        with self._lock:
            row = self._require(attempt_id)
            if row.status != DeliveryStatus.SENT:
                return None
            return self._replace(
                attempt_id,
                status=DeliveryStatus.DELIVERED,
                delivered_at=at or utcnow(),
            )

    # ------------------------------------------------------------------
    # 参照
    # ------------------------------------------------------------------
    def get(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        with self._lock:
            row = self._rows.get(attempt_id)
            return row.model_copy() if row is not None else None

    def _snapshot(self) -> List[DeliveryAttempt]:
        with self._lock:
            return [self._rows[attempt_id].model_copy() for attempt_id in self._order]

    def list_all(self) -> List[DeliveryAttempt]:
        return self._snapshot()

    def list_for_request(self, request_id: str) -> List[DeliveryAttempt]:
        return [row for row in self._snapshot() if row.request_id == request_id]

    def list_for_recipient(self, recipient_id: str) -> List[DeliveryAttempt]:
        return [row for row in self._snapshot() if row.recipient_id == recipient_id]

    def latest_sent(self, recipient_id: str, channel: Channel) -> Optional[DeliveryAttempt]:
        """
        宛先＋チャンネルで最も新しい「送信済み」の行を返す。

        既読イベントには配信 ID が含まれないため、既読反映はこの推定に頼る（ベストエフォート）。
        """
        for row in reversed(self._snapshot()):
            if (
                row.recipient_id == recipient_id
                and row.channel == channel
                and row.status == DeliveryStatus.SENT
            ):
                return row
        return None

    def find_by_provider_message_id(self, provider_message_id: str) -> Optional[DeliveryAttempt]:
        for row in self._snapshot():
            if row.provider_message_id == provider_message_id:
                return row
        return None

    def has_notification(self, appointment_id: str, notification_type: NotificationType) -> bool:
        """
        同じ予約・同じ通知種別の配信ログが既にあるか（失敗のみの行は除く）。
        """
        return any(
            row.appointment_id == appointment_id
            and row.notification_type == notification_type
            and row.status != DeliveryStatus.FAILED
            for row in self._snapshot()
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
