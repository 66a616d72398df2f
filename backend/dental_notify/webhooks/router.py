# backend/dental_notify/webhooks/router.py

"""
Webhook 受信用の FastAPI ルーター定義。

- POST /webhooks/line
- POST /webhooks/twilio/status

署名検証のため、本文は必ず受信したままのバイト列で処理に渡す。
"""

import logging
from functools import lru_cache
from typing import Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from dental_notify.line.config import get_line_settings
from dental_notify.notifications.errors import WebhookPayloadError, WebhookSignatureError
from dental_notify.notifications.factory import get_notification_services
from dental_notify.sms.config import get_twilio_settings
from dental_notify.utils.config import EnvVarMissingError

from .processor import LineWebhookProcessor
from .schemas import ProcessingResult, SmsStatusResult
from .sms_status import TwilioStatusProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _not_configured(provider: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{provider} webhook is not configured.",
    )


@lru_cache()
def get_line_webhook_processor() -> LineWebhookProcessor:
    try:
        line_settings = get_line_settings()
    except EnvVarMissingError as exc:
        logger.warning("LINE webhook rejected: %s", exc)
        raise _not_configured("LINE") from exc

    services = get_notification_services()
    return LineWebhookProcessor(
        channel_secret=line_settings.channel_secret,
        directory=services.directory,
        log_store=services.log_store,
        settings=services.settings,
        messenger=services.line_client,
    )


@lru_cache()
def get_twilio_status_processor() -> TwilioStatusProcessor:
    try:
        settings = get_twilio_settings()
    except EnvVarMissingError as exc:
        logger.warning("Twilio status callback rejected: %s", exc)
        raise _not_configured("Twilio") from exc

    return TwilioStatusProcessor(
        auth_token=settings.auth_token,
        log_store=get_notification_services().log_store,
        callback_url=settings.status_callback_url,
    )


@router.post(
    "/line",
    response_model=ProcessingResult,
    summary="LINE Messaging API の Webhook を受信する",
)
async def line_webhook(
    request: Request,
    x_line_signature: Optional[str] = Header(None, alias="X-Line-Signature"),
    processor: LineWebhookProcessor = Depends(get_line_webhook_processor),
) -> ProcessingResult:
    """
    - 署名不一致は 401
    - 本文が JSON でない場合は 400
    - 個々のイベントの失敗は 200 のまま結果に含める（LINE の再送を誘発しない）
    """
    raw_body = await request.body()
    try:
        return await run_in_threadpool(processor.handle, raw_body, x_line_signature)
    except WebhookSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature.",
        ) from exc
    except WebhookPayloadError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc


@router.post(
    "/twilio/status",
    response_model=SmsStatusResult,
    summary="Twilio の SMS 配信ステータスを受信する",
)
async def twilio_status_webhook(
    request: Request,
    x_twilio_signature: Optional[str] = Header(None, alias="X-Twilio-Signature"),
    processor: TwilioStatusProcessor = Depends(get_twilio_status_processor),
) -> SmsStatusResult:
    raw_body = await request.body()
    params = dict(parse_qsl(raw_body.decode("utf-8", "replace"), keep_blank_values=True))
    # リバースプロキシ配下では request.url が公開 URL と一致しないため、設定値を優先する
    url = processor.callback_url or str(request.url)

    try:
        return processor.handle(url, params, x_twilio_signature)
    except WebhookSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature.",
        ) from exc
    except WebhookPayloadError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
