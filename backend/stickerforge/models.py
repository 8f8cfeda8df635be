# backend/stickerforge/models.py
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    # timezone-aware; the datetime columns reject naive values
    return datetime.now(timezone.utc)


class QueuedJob(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    queue: str = Field(index=True, nullable=False)
    status: str = Field(default="queued", index=True, nullable=False)  # queued | active | completed | failed
    priority: int = Field(default=1, nullable=False)                    # lower runs first
    payload: str = Field(nullable=False)                                 # JSON encoded JobPayload
    attempts: int = Field(default=0, nullable=False)                     # attempts started so far
    max_attempts: int = Field(default=3, nullable=False)
    progress: float = Field(default=0.0, nullable=False)                 # 0.0 - 100.0
    last_error: Optional[str] = Field(default=None)
    run_after: datetime = Field(default_factory=utc_now, nullable=False)
    heartbeat_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class QueueCounter(SQLModel, table=True):
    # completed jobs are purged, so their totals live here
    queue: str = Field(primary_key=True)
    completed: int = Field(default=0, nullable=False)
    failed: int = Field(default=0, nullable=False)
