# backend/dental_notify/main.py

"""
通知バックエンドの FastAPI アプリ。

uvicorn dental_notify.main:app で起動する。
"""

from typing import Any, Dict

from fastapi import Depends, FastAPI

from dental_notify.notifications.factory import NotificationServices, get_notification_services
from dental_notify.notifications.router import router as notifications_router
from dental_notify.webhooks.router import router as webhooks_router


def create_app() -> FastAPI:
    app = FastAPI(title="Dental Notify Backend")

    app.include_router(notifications_router)
    app.include_router(webhooks_router)

    @app.get("/health", tags=["health"])
    def health_check(
        services: NotificationServices = Depends(get_notification_services),
    ) -> Dict[str, Any]:
        """
        稼働確認用。登録済みの配信チャンネルも返す。
        """
        return {
            "status": "ok",
            "channels": [channel.value for channel in services.dispatcher.channels],
        }

    return app


app = create_app()
