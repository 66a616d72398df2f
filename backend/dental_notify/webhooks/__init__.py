# backend/dental_notify/webhooks/__init__.py

"""
受信 Webhook（LINE イベント / Twilio 配信ステータス）の処理。
"""
