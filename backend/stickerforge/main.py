# backend/stickerforge/main.py
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .acquisition import save_upload_file, source_path_for
from .config import Settings, configure_logging
from .distribution import Distributor, TelegramDistributor
from .errors import QueueBackendError, ValidationError
from .image_utils import CompositionPipeline
from .jobs import JobPayload
from .queues import JobQueue, create_queue
from .worker import StickerOrchestrator


class UrlJobRequest(BaseModel):
    owner_id: int
    display_name: str = ""
    chat_id: int
    image_url: str


def create_app(settings: Optional[Settings] = None, distributor: Optional[Distributor] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = configure_logging(settings.log_level, settings.log_file)
        os.makedirs(settings.storage_dir, exist_ok=True)

        dist = distributor or TelegramDistributor(
            settings.bot_token, settings.distribution_api_base, logger=logger.getChild("distribution"))
        queue = create_queue(settings, logger)
        pipeline = CompositionPipeline(settings, logger=logger.getChild("pipeline"))
        orchestrator = StickerOrchestrator(settings, pipeline, dist, logger=logger.getChild("worker"))
        queue.register_handler(settings.max_concurrent_jobs, orchestrator.process_job,
                               on_failed=orchestrator.notify_failed)

        app.state.settings = settings
        app.state.queue = queue
        app.state.logger = logger
        try:
            yield
        finally:
            logger.info("Shutting down gracefully...")
            await queue.close()
            if distributor is None:
                await dist.aclose()

    app = FastAPI(title="Sticker Set Generator", lifespan=lifespan)

    # --- CORS for development ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    async def _enqueue(request: Request, payload: JobPayload) -> dict:
        queue: JobQueue = request.app.state.queue
        try:
            job = await queue.enqueue(payload)
        except QueueBackendError as e:
            if os.path.exists(payload.image_path):
                os.remove(payload.image_path)
            raise HTTPException(status_code=503, detail=f"Queue unavailable: {e}")
        request.app.state.logger.info("Job %s added to queue for user %s", job.id, payload.owner_id)
        try:
            stats = await queue.stats()
        except QueueBackendError as e:
            # the job is stored; only its position is unknown
            request.app.state.logger.warning("Could not read queue stats after enqueue: %s", e)
            return {"job_id": job.id, "position": None, "active": None}
        return {"job_id": job.id, "position": stats.waiting, "active": stats.active}

    @app.post("/stickers")
    async def upload_photo(
        request: Request,
        file: UploadFile = File(...),
        owner_id: int = Form(...),
        chat_id: int = Form(...),
        display_name: str = Form(default=""),
    ):
        """
        Accept:
          - multipart field 'file' -> the photo
          - form fields 'owner_id', 'chat_id', optional 'display_name'
        Returns:
          - job_id and the current queue position
        """
        ext = os.path.splitext(file.filename or "")[1].lower() or ".jpg"
        image_path = source_path_for(settings.storage_dir, owner_id, ext)
        await save_upload_file(file, image_path)
        if os.path.getsize(image_path) == 0:
            os.remove(image_path)
            raise ValidationError("uploaded file is empty")
        payload = JobPayload(
            owner_id=owner_id,
            display_name=display_name or f"user{owner_id}",
            chat_id=chat_id,
            image_url="",
            image_path=image_path,
        )
        return await _enqueue(request, payload)

    @app.post("/stickers/from-url")
    async def photo_from_url(request: Request, body: UrlJobRequest):
        if not body.image_url.startswith(("http://", "https://")):
            raise ValidationError(f"unsupported image url: {body.image_url!r}")
        # nothing is stored yet, the worker downloads the photo when the job runs
        image_path = source_path_for(settings.storage_dir, body.owner_id)
        payload = JobPayload(
            owner_id=body.owner_id,
            display_name=body.display_name or f"user{body.owner_id}",
            chat_id=body.chat_id,
            image_url=body.image_url,
            image_path=image_path,
        )
        return await _enqueue(request, payload)

    @app.get("/queue/stats")
    async def queue_stats(request: Request):
        try:
            stats = await request.app.state.queue.stats()
        except QueueBackendError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return asdict(stats)

    @app.get("/health")
    def health():
        return {"ok": True}

    return app
