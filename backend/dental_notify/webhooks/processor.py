# backend/dental_notify/webhooks/processor.py

"""
LINE Webhook イベントの処理。

- 署名検証はイベントの解釈より前に行い、不一致なら WebhookSignatureError
- イベントは 1 件ずつ独立に処理し、1 件の失敗で他のイベントを止めない
- LINE は同じイベントを再送することがあるため、webhookEventId
  （無ければ type + userId + timestamp）で処理済みかを判定する

対応イベント:
- follow: プロフィール取得・フォロワー記録・あいさつメッセージ
- unfollow: 患者との LINE 連携を解除
- message: 「連携 123456」で患者と LINE を紐付け、それ以外はキーワード（予約 / 変更 / キャンセル / 営業時間）に応じた自動応答
- postback: 予約の確認・確定・キャンセル・変更案内
- read: 最後に送った LINE 通知を既読にする（推定によるベストエフォート）
"""

from __future__ import annotations

import json
import logging
import re
import threading
import unicodedata
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from dental_notify.line.client import LineClientError
from dental_notify.notifications.config import NotificationSettings
from dental_notify.notifications.content import LINE_TEXT_MAX_LENGTH, format_appointment_time
from dental_notify.notifications.delivery_log import DeliveryLogStore
from dental_notify.notifications.directory import RecipientDirectory
from dental_notify.notifications.errors import WebhookPayloadError, WebhookSignatureError
from dental_notify.notifications.schemas import (
    AppointmentStatus,
    Channel,
    Recipient,
    utcnow,
)

from .schemas import EventResult, EventStatus, PostbackAction, PostbackData, ProcessingResult
from .signature import verify_line_signature

logger = logging.getLogger(__name__)

DEFAULT_IDEMPOTENCY_CACHE_SIZE = 1000
UPCOMING_APPOINTMENT_LIMIT = 5

# NFKC 正規化後の本文に対して照合する（全角数字・全角コロンも受け付ける）
_LINK_MESSAGE = re.compile(r"^\s*(?:連携|れんけい)\s*:?\s*([0-9]{6})\s*$")

_STATUS_LABELS = {
    AppointmentStatus.BOOKED: "予約済み",
    AppointmentStatus.CONFIRMED: "来院予定確認済み",
    AppointmentStatus.CANCELLED: "キャンセル済み",
    AppointmentStatus.COMPLETED: "来院済み",
    AppointmentStatus.NO_SHOW: "未来院",
}


class LineMessenger(Protocol):
    """Webhook からの応答に使う LINE API の一部（LineClient が満たす）。"""

    def reply(self, reply_token: str, messages: List[Dict[str, Any]]) -> Optional[str]:  # pragma: no cover - Protocol
        ...

    def push(self, to: str, messages: List[Dict[str, Any]]) -> Optional[str]:  # pragma: no cover - Protocol
        ...

    def get_profile(self, user_id: str) -> Dict[str, Any]:  # pragma: no cover - Protocol
        ...


class SeenEventCache:
    """
    処理済みイベントキーを最大 max_size 件まで保持する LRU。
    """

    def __init__(self, max_size: int = DEFAULT_IDEMPOTENCY_CACHE_SIZE) -> None:
        self._max_size = max_size
        self._lock = threading.Lock()
        self._keys: "OrderedDict[Tuple[str, ...], None]" = OrderedDict()

    def add(self, key: Tuple[str, ...]) -> bool:
        """
        未処理なら記録して True、処理済みなら False。
        """
        with self._lock:
            if key in self._keys:
                self._keys.move_to_end(key)
                return False
            self._keys[key] = None
            while len(self._keys) > self._max_size:
                self._keys.popitem(last=False)
            return True

    def discard(self, key: Tuple[str, ...]) -> None:
        with self._lock:
            self._keys.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


def idempotency_key(event: Dict[str, Any]) -> Optional[Tuple[str, ...]]:
    """
    イベントの重複判定キー。webhookEventId が無く、userId か timestamp も欠けていれば None。
    """
    event_id = event.get("webhookEventId")
    if event_id:
        return ("id", str(event_id))

    user_id = _user_id(event)
    timestamp = event.get("timestamp")
    if user_id and timestamp is not None:
        return ("fallback", str(event.get("type")), user_id, str(timestamp))
    return None


def _user_id(event: Dict[str, Any]) -> Optional[str]:
    source = event.get("source")
    if isinstance(source, dict):
        return source.get("userId")
    return None


def _event_time(event: Dict[str, Any]) -> datetime:
    timestamp = event.get("timestamp")
    if isinstance(timestamp, (int, float)):
        return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
    return utcnow()


def _text(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text[:LINE_TEXT_MAX_LENGTH]}


def _link_code(text: str) -> Optional[str]:
    match = _LINK_MESSAGE.match(unicodedata.normalize("NFKC", text))
    return match.group(1) if match else None


class LineWebhookProcessor:
    def __init__(
        self,
        channel_secret: str,
        directory: RecipientDirectory,
        log_store: DeliveryLogStore,
        settings: NotificationSettings,
        messenger: Optional[LineMessenger] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        seen_events: Optional[SeenEventCache] = None,
    ) -> None:
        self._channel_secret = channel_secret
        self._directory = directory
        self._log_store = log_store
        self._settings = settings
        self._messenger = messenger
        self._clock = clock
        self._seen = seen_events or SeenEventCache()
        self._handlers: Dict[str, Callable[[Dict[str, Any]], str]] = {
            "follow": self._handle_follow,
            "unfollow": self._handle_unfollow,
            "message": self._handle_message,
            "postback": self._handle_postback,
            "read": self._handle_read,
        }

    def handle(self, raw_body: bytes, signature: Optional[str]) -> ProcessingResult:
        """
        受信したままの本文と X-Line-Signature を受け取り、全イベントを処理する。

        :raises WebhookSignatureError: 署名が無い・一致しない
        :raises WebhookPayloadError: 本文が JSON でない、events 配列が無い
        """
        if not verify_line_signature(raw_body, signature, self._channel_secret):
            logger.warning("Rejected LINE webhook with invalid signature.")
            raise WebhookSignatureError("Invalid LINE signature.")

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise WebhookPayloadError(f"LINE webhook body is not valid JSON: {exc}") from exc

        events = payload.get("events") if isinstance(payload, dict) else None
        if not isinstance(events, list):
            raise WebhookPayloadError("LINE webhook body has no events array.")

        results = [self._process_event(event) for event in events]
        logger.info(
            "Processed LINE webhook: %d event(s), %d error(s).",
            len(results),
            sum(1 for r in results if r.status == EventStatus.ERROR),
        )
        return ProcessingResult(results=results)

    # ------------------------------------------------------------------
    # イベント単位
    # ------------------------------------------------------------------
    def _process_event(self, event: Any) -> EventResult:
        if not isinstance(event, dict):
            return EventResult(event_type="unknown", status=EventStatus.ERROR, detail="Event is not an object.")

        event_type = str(event.get("type") or "unknown")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring unsupported LINE event type: %s", event_type)
            return EventResult(event_type=event_type, status=EventStatus.IGNORED)

        key = idempotency_key(event)
        if key is None:
            logger.info("LINE %s event has no idempotency key; processing without dedupe.", event_type)
        elif not self._seen.add(key):
            logger.info("Skipping duplicate LINE %s event.", event_type)
            return EventResult(event_type=event_type, status=EventStatus.DUPLICATE)

        try:
            detail = handler(event)
        except Exception as exc:  # noqa: BLE001 - 1 イベントの失敗で残りのイベントを止めない
            logger.exception("Failed to process LINE %s event.", event_type)
            if key is not None:
                # 再送時に処理し直せるようにする
                self._seen.discard(key)
            return EventResult(event_type=event_type, status=EventStatus.ERROR, detail=str(exc))

        return EventResult(event_type=event_type, status=EventStatus.PROCESSED, detail=detail)

    def _require_user_id(self, event: Dict[str, Any]) -> str:
        user_id = _user_id(event)
        if not user_id:
            raise WebhookPayloadError("LINE event has no source.userId.")
        return user_id

    # ------------------------------------------------------------------
    # follow / unfollow
    # ------------------------------------------------------------------
    def _handle_follow(self, event: Dict[str, Any]) -> str:
        user_id = self._require_user_id(event)
        profile = self._fetch_profile(user_id)
        self._directory.record_line_follower(user_id, profile)

        recipient = self._directory.find_by_line_user_id(user_id)
        greeting = f"{recipient.name}様\n\n" if recipient else ""
        link_guide = (
            ""
            if recipient
            else "\n\n受付でお渡しした連携コードを「連携 123456」の形式でお送りいただくと、"
            "ご予約のお知らせを LINE でお受け取りいただけます。"
        )
        self._respond(
            event,
            user_id,
            f"{greeting}{self._settings.clinic_name}の公式LINEにご登録いただき、ありがとうございます！\n\n"
            "「予約」とお送りいただくと、ご予約状況を確認できます。\n"
            f"「営業時間」とお送りいただくと、診療時間をご案内します。{link_guide}",
        )

        if recipient is not None:
            return f"Follower linked to recipient {recipient.id}."
        return "Follower recorded."

    def _handle_unfollow(self, event: Dict[str, Any]) -> str:
        user_id = self._require_user_id(event)
        unlinked = self._directory.unlink_line_user(user_id)
        logger.info("LINE user unfollowed; unlinked %d recipient(s).", unlinked)
        return f"Unlinked {unlinked} recipient(s)."

    def _fetch_profile(self, user_id: str) -> Dict[str, Any]:
        if self._messenger is None:
            return {}
        try:
            return self._messenger.get_profile(user_id)
        except LineClientError as exc:
            logger.warning("Failed to fetch LINE profile: %s", exc)
            return {}

    # ------------------------------------------------------------------
    # message
    # ------------------------------------------------------------------
    def _handle_message(self, event: Dict[str, Any]) -> str:
        user_id = self._require_user_id(event)
        message = event.get("message")
        if not isinstance(message, dict) or message.get("type") != "text":
            return "Non-text message ignored."

        text = str(message.get("text") or "")
        link_code = _link_code(text)
        if link_code is not None:
            return self._link_recipient(event, user_id, link_code)

        recipient = self._directory.find_by_line_user_id(user_id)
        intent, reply = self._reply_for_text(text, recipient)
        self._respond(event, user_id, reply)
        return f"Replied to {intent} message."

    def _link_recipient(self, event: Dict[str, Any], user_id: str, code: str) -> str:
        """
        連携コードを消費し、送信元の LINE ユーザーを患者に結び付ける。
        """
        recipient_id = self._directory.redeem_line_link_code(code, now=self._clock())
        recipient = self._directory.get_recipient(recipient_id) if recipient_id else None
        if recipient is None:
            self._respond(
                event,
                user_id,
                "連携コードが正しくないか、有効期限が切れています。\n"
                f"受付で新しいコードをお受け取りください: {self._settings.clinic_phone}",
            )
            return "Invalid link code."

        self._directory.link_line_user(recipient.id, user_id)
        logger.info("LINE user linked to recipient %s.", recipient.id)
        self._respond(
            event,
            user_id,
            f"{recipient.name}様\n\nLINE 連携が完了しました。\n今後のご予約のお知らせは LINE でお送りします。",
        )
        return f"Linked to recipient {recipient.id}."

    def _reply_for_text(self, text: str, recipient: Optional[Recipient]) -> Tuple[str, str]:
        """
        キーワードから意図を判定し、(意図, 返信本文) を返す。

        「予約をキャンセル」のような複合メッセージはキャンセル・変更を優先する。
        """
        phone = self._settings.clinic_phone
        name = f"{recipient.name}様" if recipient else "患者様"

        if "キャンセル" in text or "きゃんせる" in text:
            return "cancellation", (
                f"{name}\n\nご予約のキャンセルは、予約通知メッセージの「キャンセル」ボタン、"
                f"またはお電話（{phone}）にて承ります。"
            )
        if "変更" in text or "へんこう" in text:
            return "change", (
                f"{name}\n\nご予約の変更はお電話（{phone}）にて承ります。\n"
                "ご希望の日時をお知らせください。"
            )
        if "予約" in text or "よやく" in text:
            return "booking", self._booking_reply(recipient)
        if "営業時間" in text or "診療時間" in text:
            return "business_hours", "【診療時間】\n平日：9:00-18:00\n土曜：9:00-17:00\n日曜・祝日：休診"

        return "default", (
            f"{name}\n\nご用件をお聞かせください。\n・予約確認\n・診療時間\n・その他\n\n"
            f"お急ぎの場合はお電話ください: {phone}"
        )

    def _booking_reply(self, recipient: Optional[Recipient]) -> str:
        if recipient is None:
            return (
                "LINE 連携がまだ完了していないため、ご予約を確認できませんでした。\n"
                f"お手数ですが受付までお問い合わせください: {self._settings.clinic_phone}"
            )

        appointments = self._directory.upcoming_appointments(
            recipient.id, self._clock(), limit=UPCOMING_APPOINTMENT_LIMIT
        )
        if not appointments:
            return f"{recipient.name}様\n\n現在、ご予約は入っておりません。"

        lines = [f"{recipient.name}様", "", "ご予約状況:"]
        for appointment in appointments:
            line = f"・{format_appointment_time(appointment.scheduled_at)}"
            if appointment.treatment_type:
                line += f" {appointment.treatment_type}"
            lines.append(line)
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # postback
    # ------------------------------------------------------------------
    def _handle_postback(self, event: Dict[str, Any]) -> str:
        user_id = self._require_user_id(event)
        postback = event.get("postback") if isinstance(event.get("postback"), dict) else {}
        data = PostbackData.parse(postback.get("data"))
        if data is None:
            self._respond(event, user_id, "操作を認識できませんでした。もう一度お試しください。")
            return "Unrecognized postback data."

        recipient = self._directory.find_by_line_user_id(user_id)
        appointment = (
            self._directory.get_appointment(data.appointment_id) if data.appointment_id else None
        )
        # 他人の予約は操作させない
        if recipient is None or appointment is None or appointment.recipient_id != recipient.id:
            self._respond(event, user_id, "申し訳ございません。予約情報が見つかりませんでした。")
            return f"Appointment not found for {data.action.value} postback."

        phone = self._settings.clinic_phone

        if data.action == PostbackAction.VIEW:
            lines = [
                "【ご予約内容】",
                f"日時: {format_appointment_time(appointment.scheduled_at)}",
                f"治療: {appointment.treatment_type or '一般診療'}",
                f"状態: {_STATUS_LABELS[appointment.status]}",
            ]
            self._respond(event, user_id, "\n".join(lines))
            return f"Appointment {appointment.id} shown."

        if data.action == PostbackAction.CONFIRM:
            if self._directory.confirm_appointment(appointment.id):
                self._respond(event, user_id, "ご予約を確認いたしました。ありがとうございます。")
                return f"Appointment {appointment.id} confirmed."
            self._respond(event, user_id, f"この予約は確認できませんでした。お電話にてお問い合わせください: {phone}")
            return f"Appointment {appointment.id} could not be confirmed."

        if data.action == PostbackAction.CANCEL:
            if self._directory.cancel_appointment(appointment.id):
                self._respond(event, user_id, "ご予約をキャンセルいたしました。")
                return f"Appointment {appointment.id} cancelled."
            self._respond(event, user_id, f"申し訳ございません。お電話にてお問い合わせください: {phone}")
            return f"Appointment {appointment.id} could not be cancelled."

        self._respond(
            event,
            user_id,
            f"ご予約の変更はお電話（{phone}）にて承ります。\n"
            f"現在のご予約: {format_appointment_time(appointment.scheduled_at)}",
        )
        return f"Change guidance sent for appointment {appointment.id}."

    # ------------------------------------------------------------------
    # read
    # ------------------------------------------------------------------
    def _handle_read(self, event: Dict[str, Any]) -> str:
        """
        既読イベントには配信 ID が含まれないため、その患者に最後に送った
        LINE 通知を既読扱いにする。通知が複数送信中だと取り違える可能性がある。
        """
        user_id = self._require_user_id(event)
        recipient = self._directory.find_by_line_user_id(user_id)
        if recipient is None:
            return "Read event from unknown LINE user."

        attempt = self._log_store.latest_sent(recipient.id, Channel.LINE)
        if attempt is None:
            return "No sent LINE delivery to mark as read."

        self._log_store.mark_read(attempt.id, at=_event_time(event))
        return f"Delivery {attempt.id} marked as read."

    # ------------------------------------------------------------------
    # 応答
    # ------------------------------------------------------------------
    def _respond(self, event: Dict[str, Any], user_id: str, text: str) -> None:
        """
        replyToken があれば reply、無い・失効していれば push で返す。

        応答の失敗はログに残すだけで、イベントは processed のまま返す。
        """
        if self._messenger is None:
            logger.warning("LINE messenger is not configured; reply skipped.")
            return

        messages = [_text(text)]
        reply_token = event.get("replyToken")
        if reply_token:
            try:
                self._messenger.reply(reply_token, messages)
                return
            except LineClientError as exc:
                logger.warning("LINE reply failed, falling back to push: %s", exc)

        try:
            self._messenger.push(user_id, messages)
        except LineClientError as exc:
            logger.error("Failed to send LINE response: %s", exc)
