# backend/dental_notify/sms/__init__.py

"""
Twilio による SMS 送信と、電話番号・本文の整形。
"""
