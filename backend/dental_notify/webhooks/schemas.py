# backend/dental_notify/webhooks/schemas.py

"""
Webhook 処理の入出力スキーマ。
"""

from __future__ import annotations

import re
from enum import Enum
from typing import List, Optional
from urllib.parse import parse_qs

from pydantic import BaseModel, Field

from dental_notify.notifications.schemas import DeliveryStatus


class PostbackAction(str, Enum):
    VIEW = "view"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    CHANGE = "change"


# 旧形式のボタン（"confirm_appointment_123"）
_LEGACY_POSTBACK = re.compile(r"^(view|confirm|cancel|change)_appointment_(\w+)$")


class PostbackData(BaseModel):
    """
    LINE postback の data 文字列を解釈した結果。

    Webhook の入口で 1 回だけ parse() し、以降はこの型で扱う。
    """

    action: PostbackAction
    appointment_id: Optional[str] = None

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["PostbackData"]:
        """
        "action=confirm&appointment_id=123" 形式（および旧形式）を解釈する。
        解釈できなければ None。
        """
        if not raw:
            return None

        legacy = _LEGACY_POSTBACK.match(raw.strip())
        if legacy:
            return cls(action=PostbackAction(legacy.group(1)), appointment_id=legacy.group(2))

        params = parse_qs(raw, keep_blank_values=False)
        action = (params.get("action") or [None])[0]
        if action is None:
            return None
        try:
            parsed_action = PostbackAction(action.strip().lower())
        except ValueError:
            return None

        appointment_id = (params.get("appointment_id") or [None])[0]
        return cls(action=parsed_action, appointment_id=appointment_id)


class EventStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    ERROR = "error"


class EventResult(BaseModel):
    event_type: str = Field(..., description="LINE イベント種別（follow / message など）")
    status: EventStatus
    detail: Optional[str] = None


class ProcessingResult(BaseModel):
    results: List[EventResult] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.results)

    def count_by_status(self, status: EventStatus) -> int:
        return sum(1 for r in self.results if r.status == status)


class SmsStatusResult(BaseModel):
    """Twilio ステータスコールバック 1 件分の処理結果。"""

    message_sid: str
    provider_status: str = Field(..., description="Twilio の MessageStatus")
    matched: bool = Field(..., description="配信ログに該当行があったか")
    delivery_id: Optional[str] = None
    status: Optional[DeliveryStatus] = Field(None, description="反映後の配信ステータス")
