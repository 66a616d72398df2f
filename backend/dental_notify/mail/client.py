# backend/dental_notify/mail/client.py

"""
SMTP によるメール送信クライアント。

通知コアから見たメール配送は外部協力者であり、ここでは
「件名＋本文を渡して、送れたか・送れなかったか」だけを扱う。
"""

from __future__ import annotations

import smtplib
import socket
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol

from dental_notify.notifications.errors import ChannelTimeoutError, ChannelTransportError

from .config import SmtpSettings, get_smtp_settings


class MailTransportError(ChannelTransportError):
    """SMTP サーバーとの通信・配送受付に失敗した。"""


class MailTimeoutError(MailTransportError, ChannelTimeoutError):
    """SMTP サーバーが制限時間内に応答しなかった。"""


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> str:  # pragma: no cover - Protocol
        """送信したメールの Message-ID を返す。"""
        ...


class SmtpMailer:
    """
    smtplib の薄いラッパー。1 通ごとに接続し、タイムアウトを必ず設定する。
    """

    def __init__(self, settings: SmtpSettings | None = None) -> None:
        self._settings = settings or get_smtp_settings()

    def _build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._settings.from_address
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content(body)
        return message

    def send(self, to: str, subject: str, body: str) -> str:
        message = self._build_message(to, subject, body)
        settings = self._settings

        try:
            with smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout_seconds) as smtp:
                if settings.use_tls:
                    smtp.starttls()
                if settings.username:
                    smtp.login(settings.username, settings.password or "")
                smtp.send_message(message)
        except (socket.timeout, TimeoutError) as exc:
            raise MailTimeoutError(f"SMTP server timed out: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise MailTransportError(f"Failed to send email: {exc}") from exc

        return message["Message-ID"]
