# backend/dental_notify/line/__init__.py

"""
LINE Messaging API 連携（push / multicast / reply / プロフィール取得）。
"""
