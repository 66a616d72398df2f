# backend/dental_notify/notifications/content.py

"""
通知種別ごとの本文組み立て。

1 つの通知種別＋宛先＋予約から、全チャンネル分のペイロードを一度に作る。
- LINE: Flex Message（キャンセル・汎用はテキスト）
- Email: 件名＋本文
- SMS: 160 文字以内のプレーンテキスト

どのチャンネルにフォールバックしても同じ内容を再計算せずに送れるようにするため。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from dental_notify.sms.formatting import truncate_sms

from .config import NotificationSettings
from .schemas import (
    Appointment,
    EmailContent,
    NotificationContent,
    NotificationType,
    Recipient,
)

JST = timezone(timedelta(hours=9), "JST")
_WEEKDAYS = ("月", "火", "水", "木", "金", "土", "日")

LINE_TEXT_MAX_LENGTH = 5000


def format_appointment_time(value: datetime) -> str:
    """
    "2025年01月10日(金) 10:30" 形式に整形する。タイムゾーン付きなら JST に寄せる。
    """
    if value.tzinfo is not None:
        value = value.astimezone(JST)
    weekday = _WEEKDAYS[value.weekday()]
    return f"{value:%Y年%m月%d日}({weekday}) {value:%H:%M}"


@dataclass(frozen=True)
class _Template:
    title: str
    subtitle: str
    color: str
    lead: str  # "{time}" を予約日時に置き換える
    note: str
    email_subject: str
    sms_text: str


_TEMPLATES: Dict[NotificationType, _Template] = {
    NotificationType.REMINDER_SEVEN_DAY: _Template(
        title="予約確認（1週間前）",
        subtitle="ご準備をお願いします",
        color="#2563EB",
        lead="1週間後の{time}にご予約をいただいております。",
        note="変更・キャンセルをご希望の場合はお早めにご連絡ください。",
        email_subject="予約のご確認（7日前のお知らせ）",
        sms_text="1週間後の{time}にご予約をいただいております。変更はお早めにご連絡ください。",
    ),
    NotificationType.REMINDER_THREE_DAY: _Template(
        title="予約確認（3日前）",
        subtitle="保険証の準備をお忘れなく",
        color="#F59E0B",
        lead="3日後の{time}にご予約をいただいております。",
        note="保険証をお忘れなくお持ちください。",
        email_subject="予約最終確認（3日前のお知らせ）",
        sms_text="3日後の{time}にご予約をいただいております。保険証をお持ちください。",
    ),
    NotificationType.REMINDER_ONE_DAY: _Template(
        title="明日のご予約",
        subtitle="お待ちしております",
        color="#10B981",
        lead="明日{time}にご予約をいただいております。",
        note="【お持ち物】\n・保険証\n・お薬手帳\n・診察券\n\nお気をつけてお越しください。",
        email_subject="明日の予約について（最終確認）",
        sms_text="明日{time}にご予約をいただいております。遅刻・キャンセルの際は必ずご連絡ください。",
    ),
    NotificationType.CONFIRMATION: _Template(
        title="予約確定",
        subtitle="ご予約を確定いたしました",
        color="#10B981",
        lead="ご予約を確定いたしました。\n日時: {time}",
        note="何かご不明な点がございましたらお気軽にお電話ください。",
        email_subject="ご予約が確定いたしました",
        sms_text="予約確定 {time}",
    ),
    NotificationType.CHANGE: _Template(
        title="予約変更",
        subtitle="新しい日時をご確認ください",
        color="#F59E0B",
        lead="ご予約を変更いたしました。\n新しい日時: {time}",
        note="ご確認をお願いいたします。",
        email_subject="予約変更のお知らせ",
        sms_text="予約変更 新しい日時 {time}",
    ),
}


class ContentBuilder:
    """
    NotificationType と宛先・予約から NotificationContent を生成するサービス。

    - 予約が必要な種別で予約が無い場合、未知の種別の場合は汎用テンプレートにフォールバックする
    - 例外は投げない
    """

    def __init__(self, settings: NotificationSettings) -> None:
        self._settings = settings

    @property
    def clinic_name(self) -> str:
        return self._settings.clinic_name

    def build(
        self,
        notification_type: NotificationType,
        recipient: Recipient,
        appointment: Optional[Appointment] = None,
    ) -> NotificationContent:
        notification_type = NotificationType.parse(notification_type)

        if notification_type == NotificationType.CANCELLATION:
            return self._build_cancellation(recipient)

        template = _TEMPLATES.get(notification_type)
        if template is None or appointment is None:
            return self._build_generic(recipient)

        return self._build_from_template(template, recipient, appointment)

    def from_text(self, text: str, recipient: Recipient) -> NotificationContent:
        """
        呼び出し元が本文を直接指定した場合のペイロード。全チャンネルに同じ本文を流用する。
        """
        return NotificationContent(
            message=text,
            line_message=_text_message(text),
            email=EmailContent(
                subject=f"【{self.clinic_name}】お知らせ",
                body=f"{recipient.name}様\n\n{text}\n\n{self._signature()}",
            ),
            sms_message=truncate_sms(f"【{self.clinic_name}】{text}"),
        )

    # ------------------------------------------------------------------
    # テンプレート別
    # ------------------------------------------------------------------
    def _build_from_template(
        self,
        template: _Template,
        recipient: Recipient,
        appointment: Appointment,
    ) -> NotificationContent:
        time_text = format_appointment_time(appointment.scheduled_at)
        lead = template.lead.format(time=time_text)

        message = (
            f"【{self.clinic_name}】\n{recipient.name}様\n\n{lead}\n\n{template.note}"
        )

        return NotificationContent(
            message=message,
            line_message=self._build_flex_message(template, recipient, appointment, time_text),
            email=EmailContent(
                subject=f"【{self.clinic_name}】{template.email_subject}",
                body=self._build_email_body(recipient, appointment, lead, time_text),
            ),
            sms_message=truncate_sms(
                f"【{self.clinic_name}】{recipient.name}様 "
                f"{template.sms_text.format(time=time_text)} {self._settings.clinic_phone}"
            ),
        )

    def _build_cancellation(self, recipient: Recipient) -> NotificationContent:
        text = "ご予約をキャンセルいたしました。\n\nまたのご利用をお待ちしております。"
        message = f"【{self.clinic_name}】\n{recipient.name}様\n\n{text}"
        return NotificationContent(
            message=message,
            line_message=_text_message(message),
            email=EmailContent(
                subject=f"【{self.clinic_name}】予約キャンセルのお知らせ",
                body=f"{recipient.name}様\n\n{text}\n\n{self._signature()}",
            ),
            sms_message=truncate_sms(f"【{self.clinic_name}】予約キャンセル完了 {recipient.name}様"),
        )

    def _build_generic(self, recipient: Recipient) -> NotificationContent:
        text = "重要なお知らせがございます。\n詳細はお電話にてお問い合わせください。"
        message = f"【{self.clinic_name}】\n{recipient.name}様\n\n{text}"
        return NotificationContent(
            message=message,
            line_message=_text_message(message),
            email=EmailContent(
                subject=f"【{self.clinic_name}】お知らせ",
                body=f"{recipient.name}様\n\n{text}\n\n{self._signature()}",
            ),
            sms_message=truncate_sms(
                f"【{self.clinic_name}】{recipient.name}様 重要なお知らせがございます。"
                f"お電話ください {self._settings.clinic_phone}"
            ),
        )

    # ------------------------------------------------------------------
    # チャンネル別の部品
    # ------------------------------------------------------------------
    def _signature(self) -> str:
        return f"{self.clinic_name}\n電話: {self._settings.clinic_phone}"

    def _build_email_body(
        self,
        recipient: Recipient,
        appointment: Appointment,
        lead: str,
        time_text: str,
    ) -> str:
        lines: List[str] = [
            f"{recipient.name}様",
            "",
            f"いつも{self.clinic_name}をご利用いただき、ありがとうございます。",
            "",
            lead,
            "",
            "■ 予約詳細",
            f"日時: {time_text}",
        ]
        if appointment.treatment_type:
            lines.append(f"治療内容: {appointment.treatment_type}")
        lines += [
            "",
            "■ ご来院時のお願い",
            "・保険証をお忘れなくお持ちください",
            "・ご不明な点がございましたらお気軽にお電話ください",
            "",
            "■ 変更・キャンセルについて",
            "前日までにお電話にてご連絡ください。",
            "",
            self._signature(),
        ]
        return "\n".join(lines)

    def _build_flex_message(
        self,
        template: _Template,
        recipient: Recipient,
        appointment: Appointment,
        time_text: str,
    ) -> Dict[str, Any]:
        detail_rows = [_detail_row("日時", time_text, bold=True)]
        detail_rows.append(_detail_row("治療", appointment.treatment_type or "一般診療"))

        return {
            "type": "flex",
            "altText": f"【{template.title}】{self.clinic_name} - {recipient.name}様",
            "contents": {
                "type": "bubble",
                "header": {
                    "type": "box",
                    "layout": "vertical",
                    "contents": [
                        {
                            "type": "text",
                            "text": self.clinic_name,
                            "weight": "bold",
                            "size": "xl",
                            "color": "#ffffff",
                        },
                        {
                            "type": "text",
                            "text": template.title,
                            "size": "sm",
                            "color": "#ffffff",
                        },
                    ],
                    "backgroundColor": template.color,
                    "paddingAll": "lg",
                },
                "body": {
                    "type": "box",
                    "layout": "vertical",
                    "contents": [
                        {"type": "text", "text": f"{recipient.name}様", "weight": "bold", "size": "lg"},
                        {
                            "type": "text",
                            "text": template.subtitle,
                            "size": "sm",
                            "color": "#666666",
                            "margin": "md",
                        },
                        {"type": "separator", "margin": "lg"},
                        {
                            "type": "box",
                            "layout": "vertical",
                            "margin": "lg",
                            "spacing": "sm",
                            "contents": detail_rows,
                        },
                    ],
                },
                "footer": {
                    "type": "box",
                    "layout": "vertical",
                    "contents": [
                        {
                            "type": "button",
                            "style": "primary",
                            "color": template.color,
                            "action": {
                                "type": "uri",
                                "label": "予約詳細を確認",
                                "uri": f"{self._settings.app_base_url}/appointments/{appointment.id}",
                            },
                        },
                        {
                            "type": "button",
                            "style": "secondary",
                            "margin": "sm",
                            "action": {
                                "type": "postback",
                                "label": "来院予定を確認しました",
                                "data": f"action=confirm&appointment_id={appointment.id}",
                                "displayText": "予約を確認しました",
                            },
                        },
                        {
                            "type": "text",
                            "text": "変更・キャンセルはお電話でお願いします",
                            "size": "xs",
                            "color": "#999999",
                            "align": "center",
                            "margin": "md",
                        },
                    ],
                },
            },
        }


def _text_message(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text[:LINE_TEXT_MAX_LENGTH]}


def _detail_row(label: str, value: str, *, bold: bool = False) -> Dict[str, Any]:
    value_text: Dict[str, Any] = {
        "type": "text",
        "text": value,
        "wrap": True,
        "color": "#1a1a1a",
        "size": "md",
        "flex": 5,
    }
    if bold:
        value_text["weight"] = "bold"
    return {
        "type": "box",
        "layout": "baseline",
        "spacing": "sm",
        "contents": [
            {"type": "text", "text": label, "color": "#666666", "size": "sm", "flex": 2},
            value_text,
        ],
    }
