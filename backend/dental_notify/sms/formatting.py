# backend/dental_notify/sms/formatting.py

"""
SMS 送信前の整形処理。

- 電話番号を E.164 形式（+<国番号><番号>）に正規化する
- 本文を 1 セグメント上限の 160 文字に収める
"""

from __future__ import annotations

import re
from typing import Optional

from dental_notify.notifications.errors import NotificationValidationError

SMS_MAX_LENGTH = 160
SMS_ELLIPSIS = "..."
DEFAULT_COUNTRY_CODE = "81"
MIN_PHONE_DIGITS = 10

_NON_DIGIT = re.compile(r"\D")


class InvalidPhoneNumberError(NotificationValidationError):
    """電話番号として解釈できない。送信前に弾くため、リトライ枠は消費しない。"""

    def __init__(self, phone: Optional[str]) -> None:
        super().__init__("Invalid phone number format")
        self.phone = phone


def normalize_phone_number(phone: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    国内表記・国際表記の電話番号を E.164 形式に変換する。

    例:
      - "090-1234-5678"    → "+819012345678"
      - "0312345678"       → "+81312345678"
      - "+81 90-1234-5678" → "+819012345678"

    数字が 10 桁未満のもの、どの形式にも当てはまらないものは InvalidPhoneNumberError。
    """
    if not phone:
        raise InvalidPhoneNumberError(phone)

    digits = _NON_DIGIT.sub("", phone)
    if len(digits) < MIN_PHONE_DIGITS:
        raise InvalidPhoneNumberError(phone)

    # 先頭 0 はトランクプレフィックス。国番号に置き換える
    if digits.startswith("0"):
        if len(digits) > 11:
            raise InvalidPhoneNumberError(phone)
        return f"+{country_code}{digits[1:]}"

    # 国番号付き（+81 90-xxxx-xxxx / 81312345678 など）
    if digits.startswith(country_code) and len(digits) in (11, 12, 13):
        return f"+{digits}"

    # トランクプレフィックスを省いた国内番号
    if len(digits) == 10:
        return f"+{country_code}{digits}"

    raise InvalidPhoneNumberError(phone)


def truncate_sms(message: str, limit: int = SMS_MAX_LENGTH) -> str:
    """
    本文を limit 文字以内に収める。超える場合は末尾を "..." にして丁度 limit 文字にする。

    limit 以内の本文はそのまま返すので、何度適用しても結果は変わらない。
    """
    if len(message) <= limit:
        return message
    return message[: limit - len(SMS_ELLIPSIS)] + SMS_ELLIPSIS
