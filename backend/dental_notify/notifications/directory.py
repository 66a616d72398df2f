# backend/dental_notify/notifications/directory.py

"""
患者・予約情報の参照インターフェース。

通知コアは患者台帳や予約管理を直接持たず、このインターフェース経由で
- 宛先の連絡先（LINE ID / メール / 電話）と配信拒否フラグ
- 予約情報
を参照する。LINE の友だち追加・ブロックに伴う連携情報の更新もここに委ねる。
"""

from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .schemas import Appointment, AppointmentStatus, LineLinkCode, Recipient, utcnow

ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.BOOKED, AppointmentStatus.CONFIRMED)
LINE_LINK_CODE_TTL = timedelta(hours=24)


class RecipientDirectory(Protocol):
    def get_recipient(self, recipient_id: str) -> Optional[Recipient]:  # pragma: no cover - Protocol
        ...

    def find_by_line_user_id(self, line_user_id: str) -> Optional[Recipient]:  # pragma: no cover - Protocol
        ...

    def link_line_user(self, recipient_id: str, line_user_id: str) -> bool:  # pragma: no cover - Protocol
        ...

    def unlink_line_user(self, line_user_id: str) -> int:  # pragma: no cover - Protocol
        ...

    def record_line_follower(self, line_user_id: str, profile: Dict[str, Any]) -> None:  # pragma: no cover - Protocol
        ...

    def issue_line_link_code(
        self, recipient_id: str, now: Optional[datetime] = None
    ) -> Optional[LineLinkCode]:  # pragma: no cover - Protocol
        ...

    def redeem_line_link_code(self, code: str, now: Optional[datetime] = None) -> Optional[str]:  # pragma: no cover - Protocol
        ...

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:  # pragma: no cover - Protocol
        ...

    def upcoming_appointments(
        self, recipient_id: str, now: datetime, limit: int = 5
    ) -> List[Appointment]:  # pragma: no cover - Protocol
        ...

    def appointments_between(self, start: datetime, end: datetime) -> List[Appointment]:  # pragma: no cover - Protocol
        ...

    def confirm_appointment(self, appointment_id: str) -> bool:  # pragma: no cover - Protocol
        ...

    def cancel_appointment(self, appointment_id: str) -> bool:  # pragma: no cover - Protocol
        ...


class InMemoryRecipientDirectory:
    """
    テスト・単体起動用のインメモリ実装。
    """

    def __init__(
        self,
        recipients: Iterable[Recipient] = (),
        appointments: Iterable[Appointment] = (),
    ) -> None:
        self._lock = threading.Lock()
        self._recipients: Dict[str, Recipient] = {r.id: r for r in recipients}
        self._appointments: Dict[str, Appointment] = {a.id: a for a in appointments}
        self.line_followers: Dict[str, Dict[str, Any]] = {}
        self._link_codes: Dict[str, LineLinkCode] = {}

    def add_recipient(self, recipient: Recipient) -> None:
        with self._lock:
            self._recipients[recipient.id] = recipient

    def add_appointment(self, appointment: Appointment) -> None:
        with self._lock:
            self._appointments[appointment.id] = appointment

    # ---- 宛先 ----------------------------------------------------------

    def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        with self._lock:
            return self._recipients.get(recipient_id)

    def find_by_line_user_id(self, line_user_id: str) -> Optional[Recipient]:
        with self._lock:
            for recipient in self._recipients.values():
                if recipient.line_user_id == line_user_id:
                    return recipient
        return None

    def link_line_user(self, recipient_id: str, line_user_id: str) -> bool:
        with self._lock:
            recipient = self._recipients.get(recipient_id)
            if recipient is None:
                return False
            if recipient.line_user_id == line_user_id:
                return False
            self._recipients[recipient_id] = recipient.model_copy(
                update={"line_user_id": line_user_id}
            )
            return True

    def unlink_line_user(self, line_user_id: str) -> int:
        """
        該当 LINE ID を持つ患者の連携を解除し、解除件数を返す。
        """
        with self._lock:
            unlinked = 0
            for recipient_id, recipient in list(self._recipients.items()):
                if recipient.line_user_id == line_user_id:
                    self._recipients[recipient_id] = recipient.model_copy(
                        update={"line_user_id": None}
                    )
                    unlinked += 1
            self.line_followers.pop(line_user_id, None)
            return unlinked

    def record_line_follower(self, line_user_id: str, profile: Dict[str, Any]) -> None:
        with self._lock:
            self.line_followers[line_user_id] = dict(profile)

    def issue_line_link_code(
        self, recipient_id: str, now: Optional[datetime] = None
    ) -> Optional[LineLinkCode]:
        """
        患者に LINE 連携コードを発行する。発行済みのコードは無効になる。
        """
        issued_at = now or utcnow()
        with self._lock:
            if recipient_id not in self._recipients:
                return None
            self._link_codes = {
                code: link for code, link in self._link_codes.items() if link.recipient_id != recipient_id
            }
            code = f"{secrets.randbelow(1_000_000):06d}"
            while code in self._link_codes:
                code = f"{secrets.randbelow(1_000_000):06d}"
            link = LineLinkCode(
                recipient_id=recipient_id,
                code=code,
                expires_at=issued_at + LINE_LINK_CODE_TTL,
            )
            self._link_codes[code] = link
            return link

    def redeem_line_link_code(self, code: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        コードを消費して患者 ID を返す。未発行・期限切れ・使用済みなら None。
        """
        now = now or utcnow()
        with self._lock:
            link = self._link_codes.pop(code, None)
        if link is None or link.expires_at <= now:
            return None
        return link.recipient_id

    # ---- 予約 ----------------------------------------------------------

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        with self._lock:
            return self._appointments.get(appointment_id)

    def upcoming_appointments(
        self, recipient_id: str, now: datetime, limit: int = 5
    ) -> List[Appointment]:
        with self._lock:
            items = [
                a
                for a in self._appointments.values()
                if a.recipient_id == recipient_id
                and a.scheduled_at >= now
                and a.status in ACTIVE_APPOINTMENT_STATUSES
            ]
        items.sort(key=lambda a: a.scheduled_at)
        return items[:limit]

    def appointments_between(self, start: datetime, end: datetime) -> List[Appointment]:
        with self._lock:
            items = [a for a in self._appointments.values() if start <= a.scheduled_at < end]
        items.sort(key=lambda a: a.scheduled_at)
        return items

    def _set_status(self, appointment_id: str, status: AppointmentStatus) -> bool:
        with self._lock:
            appointment = self._appointments.get(appointment_id)
            if appointment is None or appointment.status not in ACTIVE_APPOINTMENT_STATUSES:
                return False
            self._appointments[appointment_id] = appointment.model_copy(update={"status": status})
            return True

    def confirm_appointment(self, appointment_id: str) -> bool:
        return self._set_status(appointment_id, AppointmentStatus.CONFIRMED)

    def cancel_appointment(self, appointment_id: str) -> bool:
        return self._set_status(appointment_id, AppointmentStatus.CANCELLED)
