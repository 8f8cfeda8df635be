# backend/stickerforge/worker.py
import asyncio
import logging
import os
from contextlib import ExitStack
from typing import Any, Awaitable, Callable, Dict, Optional

from .acquisition import fetch_source
from .config import Settings
from .distribution import Distributor, publish_sticker_set, sticker_set_name, sticker_set_title
from .errors import FORBIDDEN, INVALID_NAME, ValidationError, classify_publish_error
from .generator import CopyVariationGenerator, VariationGenerator
from .image_utils import CompositionPipeline, remove_files
from .jobs import JobHandle

# progress checkpoints
PROGRESS_STARTED = 10
PROGRESS_GENERATED = 50
PROGRESS_COMPOSED = 80
PROGRESS_PUBLISHED = 100

MSG_PREPARING = "🎨 Rasmlar tayyorlanmoqda... (1/3)"
MSG_WRITING = "✍️ Matnlar yozilmoqda... (2/3)"
MSG_PUBLISHING = "📦 Stikerlar to'plami yaratilmoqda... (3/3)"
MSG_READY = "✅ *Sizning stikerlar to'plamingiz tayyor!*\n\nShaxsiy stikerlaringizdan zavqlaning! 🎉"
MSG_FAILED = "❌ Kechirasiz, stikerlar to'plamini yaratishda xatolik yuz berdi."
FAILURE_HINTS = {
    FORBIDDEN: "Bot bloklangan yoki ruxsat yo'q.",
    INVALID_NAME: "Noto'g'ri nom.",
}
DEFAULT_FAILURE_HINT = "Iltimos, keyinroq qayta urinib ko'ring."

Fetcher = Callable[[str, str], Awaitable[str]]


def failure_message(error: BaseException) -> str:
    hint = FAILURE_HINTS.get(classify_publish_error(error), DEFAULT_FAILURE_HINT)
    return f"{MSG_FAILED}\n\n{hint}"


class StickerOrchestrator:
    """Queue handler: turns one uploaded photo into a published sticker set.

    Source, variations and finished stickers are deleted when the job ends,
    whichever way it ends. Safe to run again for the same payload: a set that
    was already created for the request is not published twice.
    """

    def __init__(
        self,
        settings: Settings,
        pipeline: CompositionPipeline,
        distributor: Distributor,
        generator: Optional[VariationGenerator] = None,
        fetcher: Fetcher = fetch_source,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.pipeline = pipeline
        self.distributor = distributor
        self.logger = logger or logging.getLogger(__name__)
        self.generator = generator or CopyVariationGenerator(pipeline.work_dir, logger=self.logger)
        self.fetcher = fetcher

    async def process_job(self, job: JobHandle) -> Dict[str, Any]:
        payload = job.payload
        labels = list(self.settings.greetings)
        set_name = sticker_set_name(payload.owner_id, payload.request_id, self.settings.bot_username)

        with ExitStack() as cleanup:
            cleanup.callback(remove_files, [payload.image_path], self.logger)
            try:
                await job.progress(PROGRESS_STARTED)
                await self.distributor.notify(payload.chat_id, MSG_PREPARING)

                if await self.distributor.artifact_set_exists(set_name):
                    self.logger.info("Sticker set %s already exists, skipping publish", set_name)
                    url = self.distributor.artifact_set_url(set_name)
                else:
                    source = await self._ensure_source(payload.image_path, payload.image_url)

                    variations = await asyncio.to_thread(
                        self.generator.generate_variations, source, len(labels))
                    cleanup.callback(remove_files, variations, self.logger)
                    await job.progress(PROGRESS_GENERATED)
                    await self.distributor.notify(payload.chat_id, MSG_WRITING)

                    artifacts = await asyncio.to_thread(self.pipeline.process_stickers, variations, labels)
                    cleanup.callback(remove_files, [a.path for a in artifacts], self.logger)
                    await job.progress(PROGRESS_COMPOSED)
                    await self.distributor.notify(payload.chat_id, MSG_PUBLISHING)

                    url = await publish_sticker_set(
                        self.distributor,
                        payload.owner_id,
                        set_name,
                        sticker_set_title(payload.display_name, payload.owner_id),
                        artifacts,
                        logger=self.logger,
                    )

                await job.progress(PROGRESS_PUBLISHED)
                await self.distributor.notify(
                    payload.chat_id,
                    MSG_READY,
                    parse_mode="Markdown",
                    buttons=[
                        [{"text": "📦 To'plamni qo'shish", "url": url}],
                        [{"text": "🔄 Yana yasash", "callback_data": "generate_again"}],
                    ],
                )
                return {"success": True, "sticker_set_name": set_name, "url": url}
            except Exception as e:
                self.logger.error("Error processing job %s for user %s: %s", job.id, payload.owner_id, e)
                if job.is_final_attempt:
                    await self._notify_failure(payload.chat_id, e)
                raise

    async def notify_failed(self, job: JobHandle, error: Exception) -> None:
        """Queue failure hook: the job died without its handler finishing."""
        self.logger.error("Job %s for user %s failed outside the handler: %s", job.id, job.payload.owner_id, error)
        remove_files([job.payload.image_path], self.logger)
        await self._notify_failure(job.payload.chat_id, error)

    async def _ensure_source(self, image_path: str, image_url: str) -> str:
        if os.path.isfile(image_path):
            return image_path
        if not image_url:
            raise ValidationError(f"source image is missing: {image_path}")
        # a redelivered job lost its local copy with the previous attempt
        self.logger.info("Source %s is missing, fetching it again", image_path)
        return await self.fetcher(image_url, image_path)

    async def _notify_failure(self, chat_id: int, error: BaseException) -> None:
        try:
            await self.distributor.notify(chat_id, failure_message(error))
        except Exception:
            self.logger.exception("Could not send failure message to chat %s", chat_id)
