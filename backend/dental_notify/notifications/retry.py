# backend/dental_notify/notifications/retry.py

"""
同一チャンネル再送のスケジューラ。

- 失敗した配信ログの retry_count を増やし、retry_count * 単位秒 後に再送を予約する（線形バックオフ）
- 同一チャンネルの試行は最大 max_attempts 回（初回を含む）。使い切ったらフォールバックに引き渡す
- 次のチャンネルを選ぶのはディスパッチャの責務で、ここでは扱わない

再送の実行はキュー（RetryQueue）に委ねる。常駐プロセスでは ThreadingRetryQueue、
テストや cron 型のワーカーでは ManualRetryQueue を使う。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol

from .config import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_UNIT_SECONDS, NotificationSettings
from .delivery_log import DeliveryLogStore
from .schemas import DeliveryAttempt, utcnow

logger = logging.getLogger(__name__)

RetryJob = Callable[[], Any]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_unit_seconds: float = DEFAULT_RETRY_UNIT_SECONDS

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_unit_seconds=settings.retry_unit_seconds,
        )

    def delay_for(self, retry_count: int) -> float:
        return retry_count * self.backoff_unit_seconds

    def allows_resend(self, retry_count: int) -> bool:
        """
        retry_count 回目の再送が上限内か。retry_count は「初回を除いた再送回数」。
        """
        return retry_count < self.max_attempts


class RetryQueue(Protocol):
    def schedule(self, delay_seconds: float, job: RetryJob) -> None:  # pragma: no cover - Protocol
        ...


class ThreadingRetryQueue:
    """
    threading.Timer で再送を遅延実行するキュー。

    schedule() は即座に戻るため、dispatch の呼び出し元をブロックしない。
    プロセスが落ちると未実行の再送は失われる。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: List[threading.Timer] = []

    def schedule(self, delay_seconds: float, job: RetryJob) -> None:
        timer = threading.Timer(max(delay_seconds, 0.0), self._run, args=(job,))
        timer.daemon = True
        with self._lock:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    @staticmethod
    def _run(job: RetryJob) -> None:
        try:
            job()
        except Exception:  # noqa: BLE001 - タイマースレッドで例外を握りつぶさずログに残す
            logger.exception("Scheduled notification retry failed.")

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for t in self._timers if t.is_alive())

    def cancel_all(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()


@dataclass
class ScheduledRetry:
    due_at: datetime
    job: RetryJob = field(repr=False)


class ManualRetryQueue:
    """
    予約された再送を記録するだけのキュー。run_due() / drain() を呼んだときに実行する。
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: List[ScheduledRetry] = []

    def schedule(self, delay_seconds: float, job: RetryJob) -> None:
        due_at = self._clock() + timedelta(seconds=delay_seconds)
        with self._lock:
            self._jobs.append(ScheduledRetry(due_at=due_at, job=job))

    @property
    def scheduled(self) -> List[ScheduledRetry]:
        with self._lock:
            return list(self._jobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def run_due(self, now: Optional[datetime] = None) -> int:
        """
        now 時点で期限が来ている再送を実行し、実行件数を返す。
        実行中に新しく予約された再送は次回の呼び出しまで持ち越す。
        """
        now = now or self._clock()
        with self._lock:
            due = [job for job in self._jobs if job.due_at <= now]
            self._jobs = [job for job in self._jobs if job.due_at > now]

        for item in sorted(due, key=lambda j: j.due_at):
            item.job()
        return len(due)

    def drain(self) -> int:
        """
        期限に関係なく、キューが空になるまで再送を実行する。
        """
        executed = 0
        while True:
            with self._lock:
                jobs, self._jobs = self._jobs, []
            if not jobs:
                return executed
            for item in sorted(jobs, key=lambda j: j.due_at):
                item.job()
                executed += 1


class RetryScheduler:
    """
    同一チャンネルの再送可否を判断し、再送またはフォールバックを起動する。
    """

    def __init__(
        self,
        policy: RetryPolicy,
        queue: RetryQueue,
        log_store: DeliveryLogStore,
    ) -> None:
        self.policy = policy
        self._queue = queue
        self._log_store = log_store

    def handle_failure(
        self,
        attempt: DeliveryAttempt,
        resend: Callable[[str], Any],
        fall_back: Callable[[str], Any],
    ) -> bool:
        """
        失敗した配信ログを受け取り、再送を予約したら True を返す。

        上限に達していれば再送せず fall_back(attempt.id) を呼んで False を返す。
        この場合 retry_count は増やさず、行は failed のまま残す。
        """
        next_count = attempt.retry_count + 1
        if not self.policy.allows_resend(next_count):
            logger.warning(
                "Retries exhausted on %s for delivery %s (%d attempts). Falling back.",
                attempt.channel.value,
                attempt.id,
                attempt.retry_count + 1,
            )
            fall_back(attempt.id)
            return False

        updated = self._log_store.increment_retry(attempt.id)
        delay = self.policy.delay_for(updated.retry_count)
        logger.info(
            "Scheduling %s resend for delivery %s in %.0f seconds (retry %d/%d).",
            attempt.channel.value,
            attempt.id,
            delay,
            updated.retry_count,
            self.policy.max_attempts - 1,
        )
        attempt_id = attempt.id
        self._queue.schedule(delay, lambda: resend(attempt_id))
        return True
