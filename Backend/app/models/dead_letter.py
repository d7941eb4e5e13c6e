from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, Field


class DeadLetterError(BaseModel):
    message: str
    name: str


class DeadLetterEntry(BaseModel):
    """
    Operation parked after exhausting its retry budget.

    `item` stays opaque to the store; for delivery batches it carries the
    queue key and a snapshot of the queue.
    """

    item: Dict[str, Any] = Field(default_factory=dict)
    error: DeadLetterError
    enqueued_at: datetime
    retry_count: int = 0
