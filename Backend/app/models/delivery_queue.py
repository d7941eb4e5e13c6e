from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class QueueStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


# Forward-only lifecycle; used to refuse regressions.
_STATUS_ORDER = {
    QueueStatus.PENDING: 0,
    QueueStatus.IN_PROGRESS: 1,
    QueueStatus.COMPLETED: 2,
}


class QueuedPost(BaseModel):
    title: str
    url: str
    description: str = ""
    published_at: str = ""
    slug: str
    author: str = ""
    categories: List[str] = Field(default_factory=list)
    enclosure_url: str = ""


class QueueError(BaseModel):
    message: str
    batch: Optional[str] = None
    timestamp: datetime


class QueueStats(BaseModel):
    total: int
    sent: int
    failed: int
    remaining: int


class DeliveryQueue(BaseModel):
    """
    Persistent unit of work: send one post to a subscriber snapshot.

    `sent_to` is append-only; its length is the offset of the next batch and
    means "attempted", not "confirmed delivered".
    """

    post: QueuedPost
    subscribers: List[str] = Field(default_factory=list)
    sent_to: List[str] = Field(default_factory=list)
    failed_recipients: List[str] = Field(default_factory=list)
    status: QueueStatus = QueueStatus.PENDING
    next_send_at: Optional[datetime] = None
    batch_retry_count: int = 0
    last_error: Optional[QueueError] = None
    stats: Optional[QueueStats] = None
    created_at: datetime
    last_batch_sent_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return len(self.subscribers)

    @property
    def offset(self) -> int:
        return len(self.sent_to)

    def advance_status(self, status: QueueStatus) -> None:
        """Move the status forward; backward transitions are ignored."""
        if _STATUS_ORDER[status] > _STATUS_ORDER[self.status]:
            self.status = status

    def refresh_stats(self) -> QueueStats:
        total = self.total
        sent = min(self.offset, total)
        self.stats = QueueStats(
            total=total,
            sent=sent,
            failed=len(self.failed_recipients),
            remaining=total - sent,
        )
        return self.stats


class SentRecord(BaseModel):
    """Written twice per delivered post: by post id and by normalized URL."""

    url: str
    slug: str
    title: str
    published_at: str = ""
    sent_at: datetime
    recipient_count: int = 0
