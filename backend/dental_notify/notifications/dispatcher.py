# backend/dental_notify/notifications/dispatcher.py

"""
LINE → Email → SMS のフォールバック配信。

2 つの入口を持つ:

- dispatch(): 同期のフォールバック連鎖。対象チャンネルを優先順に 1 回ずつ試し、
  最初に成功したチャンネルで止める（1 要求につき成功は最大 1 チャンネル）。
  例外は投げず、結果は常に DispatchOutcome で返す。
- deliver_via(): 指定チャンネルでのキュー配信。送信失敗時は RetryScheduler が
  同一チャンネルの再送を予約し、上限に達したら fall_back() で次のチャンネルへ移る。
  宛先不正などリトライしても無駄な失敗は即座にフォールバックする。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .channels import ChannelAdapter, safe_send
from .content import ContentBuilder
from .delivery_log import DeliveryLogStore
from .errors import DeliveryExhaustedError
from .retry import RetryScheduler
from .schemas import (
    CHANNEL_PRIORITY,
    Appointment,
    Channel,
    ChannelResult,
    DeliveryAttempt,
    DeliveryErrorType,
    DispatchErrorType,
    DispatchOutcome,
    NotificationContent,
    NotificationRequest,
    NotificationType,
    Recipient,
)

logger = logging.getLogger(__name__)

ContentInput = Union[NotificationContent, str, None]


@dataclass(frozen=True)
class _DeliveryContext:
    """再送・フォールバックで同じ宛先・本文を使い回すための要求単位の情報。"""

    request_id: str
    recipient: Recipient
    notification_type: NotificationType
    appointment: Optional[Appointment]
    content: NotificationContent


class FallbackDispatcher:
    def __init__(
        self,
        adapters: Iterable[ChannelAdapter],
        log_store: DeliveryLogStore,
        content_builder: ContentBuilder,
        retry_scheduler: Optional[RetryScheduler] = None,
    ) -> None:
        self._adapters: Dict[Channel, ChannelAdapter] = {adapter.channel: adapter for adapter in adapters}
        self._log_store = log_store
        self._content_builder = content_builder
        self._retry_scheduler = retry_scheduler

        # deliver_via() 系の処理中要求（成功または全滅で破棄）
        self._lock = threading.Lock()
        self._contexts: Dict[str, _DeliveryContext] = {}

    @property
    def channels(self) -> List[Channel]:
        return [channel for channel in CHANNEL_PRIORITY if channel in self._adapters]

    def eligible_channels(self, recipient: Recipient) -> List[Channel]:
        """
        アダプタが登録済みで、宛先が受信可能なチャンネルを優先順に返す。
        """
        return [channel for channel in self.channels if recipient.can_receive(channel)]

    # ------------------------------------------------------------------
    # 同期フォールバック
    # ------------------------------------------------------------------
    def dispatch(
        self,
        recipient: Recipient,
        notification_type: Union[NotificationType, str],
        appointment: Optional[Appointment] = None,
        content: ContentInput = None,
    ) -> DispatchOutcome:
        request = NotificationRequest(
            recipient=recipient,
            notification_type=NotificationType.parse(notification_type),
            appointment=appointment,
        )

        channels = self.eligible_channels(recipient)
        if not channels:
            logger.warning(
                "No contact method available for recipient %s (request %s).",
                recipient.id,
                request.request_id,
            )
            return DispatchOutcome(
                request_id=request.request_id,
                success=False,
                error="No contact method available for recipient.",
                error_type=DispatchErrorType.NO_CONTACT_METHOD,
            )

        context = self._make_context(request, content)
        results: List[ChannelResult] = []

        for channel in channels:
            _, result = self._attempt(context, channel)
            results.append(result)
            if result.success:
                logger.info(
                    "Notification %s delivered to recipient %s via %s after %d attempt(s).",
                    request.request_id,
                    recipient.id,
                    channel.value,
                    len(results),
                )
                return DispatchOutcome(
                    request_id=request.request_id,
                    success=True,
                    winning_channel=channel,
                    attempts=results,
                    total_attempts=len(results),
                )

        exhausted = DeliveryExhaustedError({r.channel: r.error or "unknown error" for r in results})
        logger.error(
            "Notification %s for recipient %s failed on every channel: %s",
            request.request_id,
            recipient.id,
            exhausted,
        )
        return DispatchOutcome(
            request_id=request.request_id,
            success=False,
            attempts=results,
            total_attempts=len(results),
            error=str(exhausted),
            error_type=DispatchErrorType.EXHAUSTED,
        )

    # ------------------------------------------------------------------
    # キュー配信（再送・フォールバック）
    # ------------------------------------------------------------------
    def deliver_via(
        self,
        recipient: Recipient,
        notification_type: Union[NotificationType, str],
        channel: Channel,
        appointment: Optional[Appointment] = None,
        content: ContentInput = None,
    ) -> Optional[DeliveryAttempt]:
        """
        指定チャンネルで送信し、その配信ログを返す。

        指定チャンネルが使えない宛先なら、優先順で最初に使えるチャンネルに置き換える。
        使えるチャンネルが 1 つもなければ None。
        """
        request = NotificationRequest(
            recipient=recipient,
            notification_type=NotificationType.parse(notification_type),
            appointment=appointment,
        )

        channels = self.eligible_channels(recipient)
        if not channels:
            logger.warning("No contact method available for recipient %s.", recipient.id)
            return None
        if channel not in channels:
            logger.info(
                "Channel %s unavailable for recipient %s; using %s instead.",
                channel.value,
                recipient.id,
                channels[0].value,
            )
            channel = channels[0]

        context = self._make_context(request, content)
        with self._lock:
            self._contexts[context.request_id] = context

        attempt, result = self._attempt(context, channel)
        if result.success:
            self._forget(context.request_id)
            return attempt

        self._handle_failure(attempt)
        return self._log_store.get(attempt.id)

    def resend(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        """
        既存の配信ログと同じチャンネルで再送し、その行を更新する。

        retry_count は RetryScheduler 側で増やし済み。
        """
        attempt = self._log_store.get(attempt_id)
        context = self._context_for(attempt)
        if attempt is None or context is None:
            logger.warning("Resend requested for unknown delivery %s; skipping.", attempt_id)
            return None

        result = self._send(context, attempt.channel)
        updated = self._log_store.record_result(attempt_id, result)
        self._log_result(updated, result)

        if result.success:
            self._forget(context.request_id)
            return updated

        self._handle_failure(updated)
        return self._log_store.get(attempt_id)

    def fall_back(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        """
        チャンネルを使い切った配信ログから、同じ要求でまだ使っていないチャンネルへ移る。

        新しい配信ログ行を作って返す。残りのチャンネルがなければ None。
        """
        attempt = self._log_store.get(attempt_id)
        context = self._context_for(attempt)
        if attempt is None or context is None:
            logger.warning("Fallback requested for unknown delivery %s; skipping.", attempt_id)
            return None

        used = {row.channel for row in self._log_store.list_for_request(context.request_id)}
        remaining = [c for c in self.eligible_channels(context.recipient) if c not in used]
        if not remaining:
            self._forget(context.request_id)
            logger.error(
                "Notification %s for recipient %s exhausted every channel (%s).",
                context.request_id,
                context.recipient.id,
                ", ".join(sorted(channel.value for channel in used)),
            )
            return None

        channel = remaining[0]
        logger.info(
            "Falling back from %s to %s for notification %s.",
            attempt.channel.value,
            channel.value,
            context.request_id,
        )
        new_attempt, result = self._attempt(context, channel)
        if result.success:
            self._forget(context.request_id)
            return new_attempt

        self._handle_failure(new_attempt)
        return self._log_store.get(new_attempt.id)

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------
    def _make_context(self, request: NotificationRequest, content: ContentInput) -> _DeliveryContext:
        return _DeliveryContext(
            request_id=request.request_id,
            recipient=request.recipient,
            notification_type=request.notification_type,
            appointment=request.appointment,
            content=self._resolve_content(request, content),
        )

    def _resolve_content(self, request: NotificationRequest, content: ContentInput) -> NotificationContent:
        if isinstance(content, NotificationContent):
            return content
        if isinstance(content, str) and content.strip():
            return self._content_builder.from_text(content, request.recipient)
        return self._content_builder.build(
            request.notification_type,
            request.recipient,
            request.appointment,
        )

    def _context_for(self, attempt: Optional[DeliveryAttempt]) -> Optional[_DeliveryContext]:
        if attempt is None:
            return None
        with self._lock:
            return self._contexts.get(attempt.request_id)

    def is_pending(self, request_id: str) -> bool:
        """
        deliver_via() で始めた要求が再送・フォールバック待ちなら True。
        """
        with self._lock:
            return request_id in self._contexts

    def _forget(self, request_id: str) -> None:
        with self._lock:
            self._contexts.pop(request_id, None)

    def _send(self, context: _DeliveryContext, channel: Channel) -> ChannelResult:
        identifier = context.recipient.identifier_for(channel)
        payload = context.content.payload_for(channel)
        if identifier is None or payload is None:
            return ChannelResult.failure(
                channel,
                f"No {channel.value} identifier or payload for recipient.",
                error_type=DeliveryErrorType.VALIDATION,
            )
        return safe_send(self._adapters[channel], identifier, payload)

    def _attempt(self, context: _DeliveryContext, channel: Channel) -> Tuple[DeliveryAttempt, ChannelResult]:
        """
        1 チャンネル分の配信ログ行を作り、送信し、結果を反映する。
        """
        attempt = self._log_store.create(
            DeliveryAttempt(
                request_id=context.request_id,
                recipient_id=context.recipient.id,
                appointment_id=context.appointment.id if context.appointment else None,
                channel=channel,
                notification_type=context.notification_type,
            )
        )
        result = self._send(context, channel)
        updated = self._log_store.record_result(attempt.id, result)
        self._log_result(updated, result)
        return updated, result

    def _handle_failure(self, attempt: DeliveryAttempt) -> None:
        retryable = attempt.error_type is not None and attempt.error_type.retryable
        if self._retry_scheduler is not None and retryable:
            self._retry_scheduler.handle_failure(attempt, self.resend, self.fall_back)
        else:
            self.fall_back(attempt.id)

    @staticmethod
    def _log_result(attempt: DeliveryAttempt, result: ChannelResult) -> None:
        if result.success:
            logger.info(
                "Delivery %s sent via %s (recipient=%s, retry=%d).",
                attempt.id,
                attempt.channel.value,
                attempt.recipient_id,
                attempt.retry_count,
            )
        else:
            logger.warning(
                "Delivery %s via %s failed [%s]: %s",
                attempt.id,
                attempt.channel.value,
                result.error_type.value if result.error_type else "unknown",
                result.error,
            )
