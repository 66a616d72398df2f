# backend/dental_notify/__init__.py
"""
Dental clinic notification backend package.

This package contains:
- main: FastAPI application entrypoint
- notifications: LINE → Email → SMS fallback delivery core
- line / mail / sms: channel integrations
- webhooks: inbound LINE events and Twilio status callbacks
- reminders: daily appointment reminder job
"""
