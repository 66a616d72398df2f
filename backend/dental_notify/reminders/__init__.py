# backend/dental_notify/reminders/__init__.py

"""
予約リマインドの定期ジョブ。
"""
