# backend/dental_notify/notifications/schemas.py

"""
通知コアの共通スキーマ定義。

- チャンネル種別と配信優先順位（LINE → Email → SMS）
- 通知種別（7日前/3日前/1日前リマインド、予約確定、キャンセル、変更、汎用）
- 宛先（患者）と予約
- チャンネル送信結果（ChannelResult）、配信ログ行（DeliveryAttempt）、
  ディスパッチ全体の結果（DispatchOutcome）

※ 宛先の連絡先（LINE ID / メールアドレス / 電話番号）は個人情報のため、
  ログ出力時は ID のみを出すこと。
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    """
    配信チャンネル。

    並び順は CHANNEL_PRIORITY で固定する。
    """

    LINE = "line"
    EMAIL = "email"
    SMS = "sms"


CHANNEL_PRIORITY = (Channel.LINE, Channel.EMAIL, Channel.SMS)


class NotificationType(str, Enum):
    """
    通知種別。

    未知の文字列は parse() で GENERIC に寄せる（テンプレートも汎用になる）。
    """

    REMINDER_SEVEN_DAY = "reminder_seven_day"
    REMINDER_THREE_DAY = "reminder_three_day"
    REMINDER_ONE_DAY = "reminder_one_day"
    CONFIRMATION = "confirmation"
    CANCELLATION = "cancellation"
    CHANGE = "change"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value: Union["NotificationType", str, None]) -> "NotificationType":
        if isinstance(value, NotificationType):
            return value
        if not value:
            return cls.GENERIC
        key = str(value).strip().lower()
        try:
            return cls(key)
        except ValueError:
            return _NOTIFICATION_TYPE_ALIASES.get(key, cls.GENERIC)

    @property
    def is_reminder(self) -> bool:
        return self in (
            NotificationType.REMINDER_SEVEN_DAY,
            NotificationType.REMINDER_THREE_DAY,
            NotificationType.REMINDER_ONE_DAY,
        )


# 既存のリマインダージョブやメーラーが使っていた呼び名
_NOTIFICATION_TYPE_ALIASES = {
    "seven_day_reminder": NotificationType.REMINDER_SEVEN_DAY,
    "seven_days": NotificationType.REMINDER_SEVEN_DAY,
    "week": NotificationType.REMINDER_SEVEN_DAY,
    "reminder-7d": NotificationType.REMINDER_SEVEN_DAY,
    "three_day_reminder": NotificationType.REMINDER_THREE_DAY,
    "three_days": NotificationType.REMINDER_THREE_DAY,
    "reminder-3d": NotificationType.REMINDER_THREE_DAY,
    "one_day_reminder": NotificationType.REMINDER_ONE_DAY,
    "one_day": NotificationType.REMINDER_ONE_DAY,
    "same_day": NotificationType.REMINDER_ONE_DAY,
    "reminder-1d": NotificationType.REMINDER_ONE_DAY,
    "appointment_confirmation": NotificationType.CONFIRMATION,
    "appointment_cancellation": NotificationType.CANCELLATION,
    "appointment_change": NotificationType.CHANGE,
}


class DeliveryStatus(str, Enum):
    """
    配信ログのステータス。

    pending → sent | failed（送信直後）→ delivered | read（Webhook 経由）
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"
    READ = "read"


class DeliveryErrorType(str, Enum):
    """
    チャンネル失敗の分類。

    - TRANSPORT: ネットワーク・プロバイダ側の失敗（リトライ対象）
    - TIMEOUT: タイムアウト（TRANSPORT と同じ扱い）
    - VALIDATION: 宛先不正など、送信前に弾いたもの（リトライ枠を消費しない）
    - DISABLED: チャンネル無効化・未設定
    """

    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    DISABLED = "disabled"

    @property
    def retryable(self) -> bool:
        return self in (DeliveryErrorType.TRANSPORT, DeliveryErrorType.TIMEOUT)


class DispatchErrorType(str, Enum):
    NO_CONTACT_METHOD = "no_contact_method"
    EXHAUSTED = "exhausted"


class AppointmentStatus(str, Enum):
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class Recipient(BaseModel):
    """
    通知の宛先となる患者。

    各チャンネルの識別子は任意。存在チェックは can_receive() に集約する。
    """

    id: str = Field(..., description="患者 ID")
    name: str = Field(..., description="患者氏名（本文の宛名に使用）")
    line_user_id: Optional[str] = Field(None, description="LINE ユーザー ID")
    email: Optional[str] = Field(None, description="メールアドレス")
    phone: Optional[str] = Field(None, description="電話番号（国内表記可）")
    line_opt_out: bool = Field(False, description="LINE 配信を拒否しているか")
    email_opt_out: bool = Field(False, description="メール配信を拒否しているか")
    sms_opt_out: bool = Field(False, description="SMS 配信を拒否しているか")

    def identifier_for(self, channel: Channel) -> Optional[str]:
        if channel == Channel.LINE:
            value = self.line_user_id
        elif channel == Channel.EMAIL:
            value = self.email
        else:
            value = self.phone
        if value is None or not value.strip():
            return None
        return value.strip()

    def can_receive(self, channel: Channel) -> bool:
        """
        識別子があり、かつ配信拒否していないチャンネルなら True。
        """
        opted_out = {
            Channel.LINE: self.line_opt_out,
            Channel.EMAIL: self.email_opt_out,
            Channel.SMS: self.sms_opt_out,
        }[channel]
        return not opted_out and self.identifier_for(channel) is not None

    def reachable_channels(self) -> List[Channel]:
        return [channel for channel in CHANNEL_PRIORITY if self.can_receive(channel)]


class Appointment(BaseModel):
    id: str = Field(..., description="予約 ID")
    recipient_id: str = Field(..., description="予約者（患者）ID")
    scheduled_at: datetime = Field(..., description="予約日時")
    treatment_type: Optional[str] = Field(None, description="治療内容")
    status: AppointmentStatus = Field(AppointmentStatus.BOOKED, description="予約ステータス")


class EmailContent(BaseModel):
    subject: str
    body: str


class NotificationContent(BaseModel):
    """
    1つの通知種別から組み立てたチャンネル別ペイロード。

    - message: 汎用のプレーンテキスト
    - line_message: LINE のメッセージオブジェクト（flex / text）
    - email: 件名＋本文
    - sms_message: 160 文字以内を想定した SMS 本文
    """

    message: str
    line_message: Optional[Dict[str, Any]] = None
    email: Optional[EmailContent] = None
    sms_message: Optional[str] = None

    def payload_for(self, channel: Channel) -> Any:
        if channel == Channel.LINE:
            return self.line_message or self.message
        if channel == Channel.EMAIL:
            return self.email
        return self.sms_message or self.message


class NotificationRequest(BaseModel):
    """
    送信要求 1 件分。永続化はせず、ディスパッチャが即座に消費する。
    """

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    recipient: Recipient
    notification_type: NotificationType
    appointment: Optional[Appointment] = None
    content: Optional[NotificationContent] = None


class ChannelResult(BaseModel):
    """
    チャンネルアダプタ 1 回分の送信結果。

    単体では永続化せず、必ず DeliveryAttempt に畳み込む。
    """

    success: bool
    channel: Channel
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[DeliveryErrorType] = None
    sent_at: datetime = Field(default_factory=utcnow)
    response_data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        channel: Channel,
        *,
        provider_message_id: Optional[str] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> "ChannelResult":
        return cls(
            success=True,
            channel=channel,
            provider_message_id=provider_message_id,
            response_data=response_data or {},
        )

    @classmethod
    def failure(
        cls,
        channel: Channel,
        error: str,
        *,
        error_type: DeliveryErrorType = DeliveryErrorType.TRANSPORT,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> "ChannelResult":
        return cls(
            success=False,
            channel=channel,
            error=error,
            error_type=error_type,
            response_data=response_data or {},
        )

    @property
    def retryable(self) -> bool:
        return not self.success and self.error_type is not None and self.error_type.retryable


class DeliveryAttempt(BaseModel):
    """
    配信ログ 1 行（1 チャンネルへの 1 回の配信試行）。

    同一チャンネルの再送では retry_count を増やして同じ行を更新し、
    別チャンネルへのフォールバックでは新しい行を作る。
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    request_id: str = Field(..., description="同じ送信要求から派生した試行をまとめる ID")
    recipient_id: str
    appointment_id: Optional[str] = None
    channel: Channel
    notification_type: NotificationType
    status: DeliveryStatus = DeliveryStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    retry_count: int = Field(0, ge=0)
    error_message: Optional[str] = None
    error_type: Optional[DeliveryErrorType] = None
    provider_message_id: Optional[str] = None
    response_data: Dict[str, Any] = Field(default_factory=dict)


class DispatchOutcome(BaseModel):
    """
    ディスパッチ全体の結果。呼び出し元に返す唯一の値。
    """

    request_id: str
    success: bool
    winning_channel: Optional[Channel] = None
    attempts: List[ChannelResult] = Field(default_factory=list)
    total_attempts: int = 0
    error: Optional[str] = None
    error_type: Optional[DispatchErrorType] = None

    def errors_by_channel(self) -> Dict[Channel, str]:
        return {
            attempt.channel: attempt.error or "unknown error"
            for attempt in self.attempts
            if not attempt.success
        }

    def raise_for_failure(self) -> None:
        """
        失敗結果を例外として扱いたい呼び出し元向け。成功時は何もしない。
        """
        from .errors import DeliveryExhaustedError, NoContactMethodError

        if self.success:
            return
        if self.error_type == DispatchErrorType.NO_CONTACT_METHOD:
            raise NoContactMethodError(self.error or "No contact method available.")
        raise DeliveryExhaustedError(self.errors_by_channel())


class LineLinkCode(BaseModel):
    """
    LINE 友だちと患者を結び付けるための一回限りのコード。

    受付で発行して患者に渡し、患者が LINE で「連携 123456」と送ると連携される。
    """

    recipient_id: str = Field(..., description="連携先の患者 ID")
    code: str = Field(..., description="6 桁の数字コード")
    expires_at: datetime = Field(..., description="有効期限（UTC）")


# ----------------------------------------------------------------------
# HTTP API 用
# ----------------------------------------------------------------------
class DispatchRequest(BaseModel):
    recipient_id: str = Field(..., description="送信先の患者 ID")
    notification_type: str = Field(
        NotificationType.GENERIC.value,
        description="通知種別（未知の値は generic として扱う）",
    )
    appointment_id: Optional[str] = Field(None, description="関連する予約 ID")
    message: Optional[str] = Field(
        None,
        description="本文を直接指定する場合のテキスト。指定時はテンプレートを使わない",
    )


class DeliverRequest(DispatchRequest):
    channel: Optional[Channel] = Field(
        None,
        description="最初に使うチャンネル。省略時・受信できない場合は優先順で最初に使えるもの",
    )


class DeliveryListResponse(BaseModel):
    items: List[DeliveryAttempt]
    count: int
