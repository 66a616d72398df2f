# backend/dental_notify/webhooks/signature.py

"""
LINE Webhook の署名検証。

X-Line-Signature = base64(HMAC-SHA256(channel_secret, 受信したままの本文バイト列))
JSON を解釈し直した本文では一致しないため、必ず生のバイト列を渡すこと。
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Optional


def compute_line_signature(body: bytes, channel_secret: str) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_line_signature(
    body: bytes,
    signature: Optional[str],
    channel_secret: Optional[str],
) -> bool:
    """
    署名が一致すれば True。署名・シークレットのどちらかが無ければ常に False。
    """
    if not signature or not channel_secret:
        return False
    try:
        received = signature.strip().encode("ascii")
    except UnicodeEncodeError:
        return False
    expected = compute_line_signature(body, channel_secret)
    return hmac.compare_digest(expected.encode("ascii"), received)
