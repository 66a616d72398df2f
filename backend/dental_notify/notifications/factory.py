# backend/dental_notify/notifications/factory.py

"""
通知コアのサービス群を組み立てるファクトリ。

プロセス起動時に 1 回だけ組み立て、ルーターやジョブには参照を渡す。
チャンネルは設定が揃っているものだけを登録する:

- LINE: LINE_CHANNEL_ACCESS_TOKEN / LINE_CHANNEL_SECRET
- Email: SMTP_HOST
- SMS: ENABLE_SMS=true かつ TWILIO_* 一式
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Sequence

from dental_notify.line.adapter import LineChannelAdapter
from dental_notify.line.client import LineClient
from dental_notify.mail.adapter import EmailChannelAdapter
from dental_notify.mail.client import SmtpMailer
from dental_notify.sms.adapter import SmsChannelAdapter
from dental_notify.sms.client import TwilioSmsClient
from dental_notify.utils.config import EnvVarMissingError

from .channels import ChannelAdapter
from .config import NotificationSettings, get_notification_settings
from .content import ContentBuilder
from .delivery_log import DeliveryLogStore, InMemoryDeliveryLogStore
from .directory import InMemoryRecipientDirectory, RecipientDirectory
from .dispatcher import FallbackDispatcher
from .retry import RetryPolicy, RetryQueue, RetryScheduler, ThreadingRetryQueue

logger = logging.getLogger(__name__)


@dataclass
class NotificationServices:
    """
    通知コアで共有するサービスの束。
    """

    settings: NotificationSettings
    directory: RecipientDirectory
    log_store: DeliveryLogStore
    content_builder: ContentBuilder
    dispatcher: FallbackDispatcher
    retry_scheduler: RetryScheduler
    line_client: Optional[LineClient] = None


def build_default_adapters(settings: NotificationSettings) -> List[ChannelAdapter]:
    """
    環境変数から利用可能なチャンネルアダプタを組み立てる。
    """
    adapters: List[ChannelAdapter] = []

    try:
        adapters.append(LineChannelAdapter(LineClient()))
    except EnvVarMissingError as exc:
        logger.warning("LINE channel disabled: %s", exc)

    try:
        adapters.append(EmailChannelAdapter(SmtpMailer()))
    except EnvVarMissingError as exc:
        logger.warning("Email channel disabled: %s", exc)

    if settings.sms_enabled:
        try:
            adapters.append(SmsChannelAdapter(TwilioSmsClient()))
        except EnvVarMissingError as exc:
            logger.warning("SMS channel disabled: %s", exc)
    else:
        logger.info("SMS channel disabled (ENABLE_SMS is off).")

    return adapters


def build_notification_services(
    settings: Optional[NotificationSettings] = None,
    *,
    adapters: Optional[Sequence[ChannelAdapter]] = None,
    directory: Optional[RecipientDirectory] = None,
    log_store: Optional[DeliveryLogStore] = None,
    retry_queue: Optional[RetryQueue] = None,
    line_client: Optional[LineClient] = None,
) -> NotificationServices:
    """
    サービス群を組み立てる。引数で渡したものはそのまま使う（テスト用の差し替え口）。
    """
    settings = settings or get_notification_settings()
    directory = directory if directory is not None else InMemoryRecipientDirectory()
    log_store = log_store if log_store is not None else InMemoryDeliveryLogStore()

    if adapters is None:
        adapters = build_default_adapters(settings)
    if line_client is None:
        line_client = _find_line_client(adapters)

    content_builder = ContentBuilder(settings)
    retry_scheduler = RetryScheduler(
        RetryPolicy.from_settings(settings),
        retry_queue if retry_queue is not None else ThreadingRetryQueue(),
        log_store,
    )
    dispatcher = FallbackDispatcher(adapters, log_store, content_builder, retry_scheduler)

    logger.info(
        "Notification services ready (channels=%s).",
        ", ".join(channel.value for channel in dispatcher.channels) or "none",
    )

    return NotificationServices(
        settings=settings,
        directory=directory,
        log_store=log_store,
        content_builder=content_builder,
        dispatcher=dispatcher,
        retry_scheduler=retry_scheduler,
        line_client=line_client,
    )


def _find_line_client(adapters: Sequence[ChannelAdapter]) -> Optional[LineClient]:
    for adapter in adapters:
        if isinstance(adapter, LineChannelAdapter):
            return adapter.client
    return None


@lru_cache()
def get_notification_services() -> NotificationServices:
    """
    アプリ全体で共有する NotificationServices を返す（初回呼び出し時に生成）。
    """
    return build_notification_services()
