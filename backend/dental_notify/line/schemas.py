# backend/dental_notify/line/schemas.py

"""
LINE 一斉送信（multicast）の結果スキーマ。
"""

from typing import List, Optional

from pydantic import BaseModel, Field

MULTICAST_BATCH_SIZE = 500


class LineMulticastBatchResult(BaseModel):
    """
    multicast 1 回分（最大 500 人）の送信結果。
    """

    batch_index: int = Field(..., ge=0, description="何番目のバッチか（0 始まり）")
    recipient_count: int = Field(..., ge=0, description="このバッチの宛先数")
    success: bool
    request_id: Optional[str] = Field(None, description="X-Line-Request-Id ヘッダの値")
    error: Optional[str] = None


class LineMulticastResult(BaseModel):
    """
    バッチ分割した multicast 全体の集計。
    """

    batches: List[LineMulticastBatchResult] = Field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(b.recipient_count for b in self.batches if b.success)

    @property
    def failed_count(self) -> int:
        return sum(b.recipient_count for b in self.batches if not b.success)

    @property
    def success(self) -> bool:
        return bool(self.batches) and all(b.success for b in self.batches)
