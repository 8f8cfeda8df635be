# backend/stickerforge/jobs.py
import json
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

QUEUED = "queued"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class JobPayload:
    owner_id: int
    display_name: str
    chat_id: int
    image_url: str
    image_path: str
    # stable across redeliveries, names the published set
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:10])

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "JobPayload":
        data: Dict[str, Any] = json.loads(raw)
        return cls(**data)


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class JobHandle:
    """A queued job as seen by the handler and by the enqueuing caller."""

    def __init__(
        self,
        job_id: Union[int, str],
        payload: JobPayload,
        attempt: int = 1,
        max_attempts: int = 1,
        on_progress: Optional[Callable[["JobHandle", float], Awaitable[None]]] = None,
        progress: float = 0.0,
    ):
        self.id = job_id
        self.payload = payload
        self.attempt = attempt
        self.max_attempts = max_attempts
        self.state = QUEUED
        self._progress = float(progress)
        self._on_progress = on_progress

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    @property
    def current_progress(self) -> float:
        return self._progress

    async def progress(self, value: float) -> None:
        value = max(0.0, min(100.0, float(value)))
        # progress never moves backwards within a job's lifetime
        if value <= self._progress:
            return
        self._progress = value
        if self._on_progress is not None:
            await self._on_progress(self, value)

    def __repr__(self) -> str:
        return f"<JobHandle id={self.id} state={self.state} attempt={self.attempt}/{self.max_attempts}>"


Handler = Callable[[JobHandle], Awaitable[Any]]
# called when a job fails for good without its handler having seen the failure
FailureHook = Callable[[JobHandle, Exception], Awaitable[None]]
