# backend/stickerforge/errors.py
from typing import Optional


class StickerError(Exception):
    """Base class for every error raised by stickerforge."""


class ConfigError(StickerError):
    pass


class ValidationError(StickerError):
    """Source file is missing or unreadable."""


class PipelineError(StickerError):
    """Decode, compose or encode failure at any pipeline stage."""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        super().__init__(message)


# publish failure categories
FORBIDDEN = "forbidden"
INVALID_NAME = "invalid_name"
OTHER = "other"

# The distribution service only exposes error text, so categories come from
# case-sensitive tokens found in the message.
_CATEGORY_TOKENS = (
    ("Forbidden", FORBIDDEN),
    ("STICKERSET_INVALID", INVALID_NAME),
)


def classify_publish_error(error: BaseException) -> str:
    text = str(error)
    for token, category in _CATEGORY_TOKENS:
        if token in text:
            return category
    return OTHER


class PublishError(StickerError):
    """Distribution service rejected an upload or the set creation."""

    def __init__(self, message: str, category: Optional[str] = None):
        super().__init__(message)
        self.category = category or classify_publish_error(self)


class QueueBackendError(StickerError):
    """The durable queue store could not be reached."""


class QueueClosedError(QueueBackendError):
    pass


class JobStalledError(StickerError):
    """A job stopped renewing its heartbeat after its last allowed attempt."""
