# backend/dental_notify/reminders/jobs.py
from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from time import sleep
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from dental_notify.notifications.content import JST
from dental_notify.notifications.directory import ACTIVE_APPOINTMENT_STATUSES
from dental_notify.notifications.factory import (
    NotificationServices,
    build_notification_services,
    get_notification_services,
)
from dental_notify.notifications.retry import ManualRetryQueue
from dental_notify.notifications.schemas import DeliveryAttempt, DeliveryStatus, NotificationType, utcnow

logger = logging.getLogger(__name__)

# 予約日の何日前にどの通知を送るか
REMINDER_SCHEDULE: Dict[int, NotificationType] = {
    7: NotificationType.REMINDER_SEVEN_DAY,
    3: NotificationType.REMINDER_THREE_DAY,
    1: NotificationType.REMINDER_ONE_DAY,
}


class ReminderRunSummary(BaseModel):
    checked: int = Field(0, description="対象日に予約があった件数")
    dispatched: int = Field(0, description="ジョブ実行中に送信できた件数")
    skipped: int = Field(0, description="送信済み・宛先不明などで送らなかった件数")
    queued: int = Field(0, description="送信に失敗し、再送・フォールバック待ちになった件数")
    failed: int = Field(0, description="全チャンネル失敗・連絡先なしの件数")
    failed_appointment_ids: List[str] = Field(default_factory=list)


def _normalize_now(now: Optional[datetime]) -> datetime:
    """
    naive な datetime が渡された場合でも UTC として扱うヘルパー。
    """
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _day_window(now: datetime, days_ahead: int):
    """
    now（JST 換算）から days_ahead 日後の 0:00〜24:00（JST）を返す。
    """
    target_date = now.astimezone(JST).date() + timedelta(days=days_ahead)
    start = datetime.combine(target_date, time.min, tzinfo=JST)
    return start, start + timedelta(days=1)


_SENT_STATUSES = (DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.READ)


def _delivery_state(services: NotificationServices, attempt: Optional[DeliveryAttempt]) -> str:
    """
    deliver_via() の結果を "sent" / "queued" / "failed" に分類する。
    フォールバック先での成功も同じ要求の配信ログから判定する。
    """
    if attempt is None:
        return "failed"
    rows = services.log_store.list_for_request(attempt.request_id)
    if any(row.status in _SENT_STATUSES for row in rows):
        return "sent"
    if services.dispatcher.is_pending(attempt.request_id):
        return "queued"
    return "failed"


def run_daily_reminders(
    services: Optional[NotificationServices] = None,
    *,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> ReminderRunSummary:
    """
    7日前・3日前・1日前のリマインドを送る日次ジョブ。

    - 対象は booked / confirmed の予約のみ
    - 同じ予約・同じ種別の配信ログ（失敗のみの行を除く）があれば送らない
    - 宛先が使える最優先チャンネルで送信し、失敗時は再送スケジューラに委ねる
      （同一チャンネルで再送し、上限に達したら次のチャンネルへフォールバック）
    """
    services = services or get_notification_services()
    now_norm = _normalize_now(now)
    summary = ReminderRunSummary()

    for days_ahead, notification_type in REMINDER_SCHEDULE.items():
        start, end = _day_window(now_norm, days_ahead)
        appointments = [
            a
            for a in services.directory.appointments_between(start, end)
            if a.status in ACTIVE_APPOINTMENT_STATUSES
        ]

        for appointment in appointments:
            summary.checked += 1

            if services.log_store.has_notification(appointment.id, notification_type):
                summary.skipped += 1
                continue

            recipient = services.directory.get_recipient(appointment.recipient_id)
            if recipient is None:
                logger.warning("Recipient %s for appointment %s not found.", appointment.recipient_id, appointment.id)
                summary.skipped += 1
                continue

            if dry_run:
                logger.info("[dry-run] Would send %s for appointment %s.", notification_type.value, appointment.id)
                summary.skipped += 1
                continue

            channels = services.dispatcher.eligible_channels(recipient)
            if not channels:
                logger.warning("No contact method for appointment %s.", appointment.id)
                summary.failed += 1
                summary.failed_appointment_ids.append(appointment.id)
                continue

            attempt = services.dispatcher.deliver_via(
                recipient,
                notification_type,
                channels[0],
                appointment=appointment,
            )
            state = _delivery_state(services, attempt)
            if state == "sent":
                summary.dispatched += 1
            elif state == "queued":
                summary.queued += 1
            else:
                summary.failed += 1
                summary.failed_appointment_ids.append(appointment.id)

    logger.info(
        "Daily reminders finished: checked=%d dispatched=%d queued=%d skipped=%d failed=%d",
        summary.checked,
        summary.dispatched,
        summary.queued,
        summary.skipped,
        summary.failed,
    )
    return summary


def wait_for_retries(
    queue: ManualRetryQueue,
    *,
    clock: Callable[[], datetime] = utcnow,
    sleep_fn: Callable[[float], None] = sleep,
) -> int:
    """
    キューに残った再送を期限どおりに実行し、空になったら実行件数を返す。

    再送の中で新たに予約された再送（次の再送・フォールバック先の再送）も待つ。
    """
    executed = 0
    while True:
        scheduled = queue.scheduled
        if not scheduled:
            return executed
        next_due = min(item.due_at for item in scheduled)
        delay = (next_due - clock()).total_seconds()
        if delay > 0:
            logger.info("Waiting %.0f seconds for the next notification retry.", delay)
            sleep_fn(delay)
        executed += queue.run_due(max(next_due, clock()))


def main() -> None:
    """
    簡易 CLI エントリーポイント。

    例:
        python -m dental_notify.reminders.jobs daily
        python -m dental_notify.reminders.jobs daily --dry-run
        python -m dental_notify.reminders.jobs daily --no-wait
    """
    import argparse

    parser = argparse.ArgumentParser(description="Reminder jobs runner")
    parser.add_argument(
        "job",
        choices=["daily"],
        help="実行するジョブ種別",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="送信せずに対象件数だけを確認する",
    )
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="失敗した送信の再送を待たずに終了する",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    if args.job == "daily":
        # 再送はこのプロセスが終了する前に実行しきる
        queue = ManualRetryQueue()
        services = build_notification_services(retry_queue=queue)
        summary = run_daily_reminders(services, dry_run=args.dry_run)
        print(summary.model_dump_json())

        if not args.no_wait and len(queue):
            executed = wait_for_retries(queue)
            logger.info("Finished %d queued notification retry job(s).", executed)


if __name__ == "__main__":
    main()
