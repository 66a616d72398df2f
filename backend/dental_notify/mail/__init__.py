# backend/dental_notify/mail/__init__.py

"""
SMTP によるメール送信。
"""
