# backend/stickerforge/config.py
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigError

# Uzbek greetings printed on the stickers, one sticker per greeting
GREETINGS = [
    "Assalomu alaykum",
    "Vaaalaykum assalom",
    "Rahmat",
    "Yaxshimisiz?",
    "Xayr",
    "Ha",
    "Yo'q",
    "Kechirasiz",
]

ANCHORS = ("top", "center", "bottom")

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def _default_storage_dir() -> str:
    return os.path.join(tempfile.gettempdir(), "stickerforge")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name, "").strip()
    return raw or default


@dataclass(frozen=True)
class Settings:
    max_concurrent_jobs: int = 3
    sticker_size: int = 512
    sticker_quality: int = 90
    font_size_max: int = 48
    font_size_min: int = 24
    font_size_step: int = 4
    text_padding: int = 20
    text_max_block_fraction: float = 0.5
    text_position: str = "bottom"
    font_path: Optional[str] = None
    text_fill_color: str = "#FFFFFF"
    text_stroke_color: str = "#000000"
    text_stroke_width: int = 4
    queue_database_url: Optional[str] = None
    queue_backoff_seconds: float = 2.0
    queue_poll_seconds: float = 1.0
    queue_stall_seconds: float = 30.0
    storage_dir: str = field(default_factory=_default_storage_dir)
    bot_token: str = ""
    bot_username: str = "bot"
    distribution_api_base: str = "https://api.telegram.org"
    greetings: List[str] = field(default_factory=lambda: list(GREETINGS))
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        for name in ("max_concurrent_jobs", "sticker_size", "font_size_max",
                     "font_size_min", "font_size_step"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if not 0 <= self.sticker_quality <= 100:
            raise ConfigError(f"sticker_quality must be within 0..100, got {self.sticker_quality}")
        if self.font_size_min > self.font_size_max:
            raise ConfigError("font_size_min must not exceed font_size_max")
        if self.text_padding < 0 or 2 * self.text_padding >= self.sticker_size:
            raise ConfigError("text_padding must leave room for text on the canvas")
        if not 0 < self.text_max_block_fraction <= 1:
            raise ConfigError("text_max_block_fraction must be within (0, 1]")
        for name in ("queue_backoff_seconds", "queue_poll_seconds", "queue_stall_seconds"):
            value = getattr(self, name)
            if not value > 0:
                raise ConfigError(f"{name} must be positive, got {value!r}")
        # 0 draws the text without an outline
        if not isinstance(self.text_stroke_width, int) or self.text_stroke_width < 0:
            raise ConfigError(f"text_stroke_width must be a non-negative integer, got {self.text_stroke_width!r}")
        if self.text_position not in ANCHORS:
            raise ConfigError(f"text_position must be one of {ANCHORS}, got {self.text_position!r}")
        if not self.greetings:
            raise ConfigError("at least one greeting is required")

    @property
    def use_durable_queue(self) -> bool:
        return bool(self.queue_database_url)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        load_dotenv(dotenv_path)
        return cls(
            max_concurrent_jobs=_env_int("MAX_CONCURRENT_JOBS", 3),
            sticker_size=_env_int("STICKER_SIZE", 512),
            sticker_quality=_env_int("STICKER_QUALITY", 90),
            font_size_max=_env_int("FONT_SIZE_MAX", 48),
            font_size_min=_env_int("FONT_SIZE_MIN", 24),
            font_size_step=_env_int("FONT_SIZE_STEP", 4),
            text_padding=_env_int("TEXT_PADDING", 20),
            text_max_block_fraction=_env_float("TEXT_MAX_BLOCK_FRACTION", 0.5),
            text_position=(_env_str("TEXT_POSITION", "bottom") or "bottom").lower(),
            font_path=_env_str("FONT_PATH"),
            text_fill_color=_env_str("TEXT_FILL_COLOR", "#FFFFFF"),
            text_stroke_color=_env_str("TEXT_STROKE_COLOR", "#000000"),
            text_stroke_width=_env_int("TEXT_STROKE_WIDTH", 4),
            queue_database_url=_env_str("QUEUE_DATABASE_URL"),
            queue_backoff_seconds=_env_float("QUEUE_BACKOFF_SECONDS", 2.0),
            queue_poll_seconds=_env_float("QUEUE_POLL_SECONDS", 1.0),
            queue_stall_seconds=_env_float("QUEUE_STALL_SECONDS", 30.0),
            storage_dir=_env_str("STORAGE_DIR") or _default_storage_dir(),
            bot_token=_env_str("BOT_TOKEN", ""),
            bot_username=_env_str("BOT_USERNAME", "bot"),
            distribution_api_base=_env_str("DISTRIBUTION_API_BASE", "https://api.telegram.org"),
            log_level=(_env_str("LOG_LEVEL", "INFO") or "INFO").upper(),
            log_file=_env_str("LOG_FILE"),
        )


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Set up console logging (plus a file handler when log_file is given)
    and return the package logger that components are built with."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    return logging.getLogger("stickerforge")
