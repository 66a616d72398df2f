# backend/dental_notify/notifications/router.py

"""
通知送信用の FastAPI ルーター定義。

- POST /notifications/dispatch
- POST /notifications/deliver
- GET  /notifications/deliveries
- POST /notifications/recipients/{recipient_id}/line-link-code
"""

from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .factory import NotificationServices, get_notification_services
from .schemas import (
    CHANNEL_PRIORITY,
    Appointment,
    DeliverRequest,
    DeliveryAttempt,
    DeliveryListResponse,
    DispatchOutcome,
    DispatchRequest,
    LineLinkCode,
    Recipient,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _resolve_target(
    services: NotificationServices, body: DispatchRequest
) -> Tuple[Recipient, Optional[Appointment]]:
    recipient = services.directory.get_recipient(body.recipient_id)
    if recipient is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Recipient {body.recipient_id} not found.",
        )

    appointment = None
    if body.appointment_id:
        appointment = services.directory.get_appointment(body.appointment_id)
        if appointment is None or appointment.recipient_id != recipient.id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Appointment {body.appointment_id} not found.",
            )
    return recipient, appointment


@router.post(
    "/dispatch",
    response_model=DispatchOutcome,
    summary="LINE → Email → SMS の順で通知を送信する",
)
def dispatch_notification(
    body: DispatchRequest,
    services: NotificationServices = Depends(get_notification_services),
) -> DispatchOutcome:
    """
    患者 ID と通知種別を受け取り、フォールバック配信の結果を返す。

    - 患者・予約が見つからない場合は 404
    - 全チャンネル失敗・連絡先なしは 200 で success=false を返す
    """
    recipient, appointment = _resolve_target(services, body)

    try:
        return services.dispatcher.dispatch(
            recipient,
            body.notification_type,
            appointment=appointment,
            content=body.message,
        )
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Notification dispatch failed unexpectedly.",
        ) from exc


@router.post(
    "/deliver",
    response_model=DeliveryAttempt,
    status_code=status.HTTP_202_ACCEPTED,
    summary="指定チャンネルで通知を送信し、失敗時は再送・フォールバックを予約する",
)
def deliver_notification(
    body: DeliverRequest,
    services: NotificationServices = Depends(get_notification_services),
) -> DeliveryAttempt:
    """
    channel を省略した場合は、宛先が受信できる最優先チャンネルで送る。

    返すのは最初の配信ログ行。再送・フォールバックの経過は /deliveries で確認する。
    連絡先が 1 つも無い場合は 422。
    """
    recipient, appointment = _resolve_target(services, body)

    attempt = services.dispatcher.deliver_via(
        recipient,
        body.notification_type,
        body.channel or CHANNEL_PRIORITY[0],
        appointment=appointment,
        content=body.message,
    )
    if attempt is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="No contact method available for recipient.",
        )
    return attempt


@router.get(
    "/deliveries",
    response_model=DeliveryListResponse,
    summary="患者ごとの配信ログを取得する",
)
def list_deliveries(
    recipient_id: str = Query(..., description="患者 ID"),
    services: NotificationServices = Depends(get_notification_services),
) -> DeliveryListResponse:
    items = services.log_store.list_for_recipient(recipient_id)
    return DeliveryListResponse(items=items, count=len(items))


@router.post(
    "/recipients/{recipient_id}/line-link-code",
    response_model=LineLinkCode,
    summary="患者の LINE 連携コードを発行する",
)
def issue_line_link_code(
    recipient_id: str,
    services: NotificationServices = Depends(get_notification_services),
) -> LineLinkCode:
    """
    受付で患者に渡す 6 桁のコードを発行する。患者が LINE で「連携 <コード>」と送ると連携される。
    """
    link = services.directory.issue_line_link_code(recipient_id)
    if link is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Recipient {recipient_id} not found.",
        )
    return link
