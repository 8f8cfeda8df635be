# backend/stickerforge/distribution.py
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from .errors import INVALID_NAME, PublishError
from .image_utils import StickerArtifact

# tag per sticker position, reused cyclically
EMOJI_TAGS = [
    "👋",  # Assalomu alaykum
    "🙏",  # Vaaalaykum assalom
    "🙏",  # Rahmat
    "😊",  # Yaxshimisiz?
    "👋",  # Xayr
    "✅",  # Ha
    "❌",  # Yo'q
    "🙏",  # Kechirasiz
]


def tag_for_index(index: int) -> str:
    return EMOJI_TAGS[index % len(EMOJI_TAGS)]


def sticker_set_name(owner_id: int, key: Any, bot_username: str) -> str:
    # names may only hold letters, digits and underscores and must end with _by_<bot>
    safe_key = "".join(ch if ch.isalnum() else "_" for ch in str(key))
    return f"ai_stickers_{owner_id}_{safe_key}_by_{bot_username}"


def sticker_set_title(display_name: str, owner_id: int) -> str:
    return f"AI Stickers by @{display_name or owner_id}"


@dataclass
class SetItem:
    ref: str
    tag: str


class Distributor(Protocol):
    async def upload_artifact(self, owner_id: int, path: str) -> str:
        ...

    async def create_artifact_set(self, owner_id: int, name: str, title: str, items: Sequence[SetItem]) -> None:
        ...

    async def artifact_set_exists(self, name: str) -> bool:
        ...

    async def notify(self, chat_id: int, text: str, **options: Any) -> None:
        ...

    def artifact_set_url(self, name: str) -> str:
        ...


async def publish_sticker_set(
    distributor: Distributor,
    owner_id: int,
    name: str,
    title: str,
    artifacts: Sequence[StickerArtifact],
    logger: Optional[logging.Logger] = None,
) -> str:
    """Upload every sticker, then create the set. Returns the set's public URL.

    Any upload failure aborts before the set is created, so a partial set is
    never published.
    """
    log = logger or logging.getLogger(__name__)
    log.info("Creating sticker set: %s", name)
    items: List[SetItem] = []
    for i, artifact in enumerate(artifacts):
        artifact.tag = tag_for_index(i)
        log.debug("Uploading sticker %d/%d...", i + 1, len(artifacts))
        try:
            ref = await distributor.upload_artifact(owner_id, artifact.path)
        except PublishError:
            log.error("Failed to upload sticker %d", i + 1)
            raise
        except Exception as e:
            raise PublishError(f"upload of sticker {i + 1} failed: {e}") from e
        items.append(SetItem(ref=ref, tag=artifact.tag))

    log.info("Creating set %s with %d stickers", name, len(items))
    try:
        await distributor.create_artifact_set(owner_id, name, title, items)
    except PublishError:
        raise
    except Exception as e:
        raise PublishError(f"sticker set creation failed: {e}") from e
    log.info("Successfully created sticker set: %s", name)
    return distributor.artifact_set_url(name)


class TelegramDistributor:
    """Sticker sets published through the Telegram Bot API."""

    def __init__(self, token: str, api_base: str = "https://api.telegram.org",
                 client: Optional[httpx.AsyncClient] = None, logger: Optional[logging.Logger] = None):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=60)
        self.logger = logger or logging.getLogger(__name__)

    def _url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.token}/{method}"

    async def _call(self, method: str, data: Optional[Dict[str, Any]] = None,
                    files: Optional[Dict[str, Any]] = None, json_body: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self.client.post(self._url(method), data=data, files=files, json=json_body)
        except httpx.HTTPError as e:
            raise PublishError(f"{method} request failed: {e}") from e
        try:
            body = response.json()
        except ValueError:
            raise PublishError(f"{method} failed with status {response.status_code}: {response.text}")
        if not body.get("ok"):
            raise PublishError(f"{method} failed: {body.get('error_code')} {body.get('description')}")
        return body.get("result")

    async def upload_artifact(self, owner_id: int, path: str) -> str:
        if not os.path.isfile(path):
            raise PublishError(f"sticker file not found: {path}")
        with open(path, "rb") as fh:
            result = await self._call(
                "uploadStickerFile",
                data={"user_id": str(owner_id), "sticker_format": "static"},
                files={"sticker": (os.path.basename(path), fh, "image/webp")},
            )
        return result["file_id"]

    async def create_artifact_set(self, owner_id: int, name: str, title: str, items: Sequence[SetItem]) -> None:
        await self._call("createNewStickerSet", json_body={
            "user_id": owner_id,
            "name": name,
            "title": title,
            "sticker_format": "static",
            "stickers": [
                {"sticker": item.ref, "format": "static", "emoji_list": [item.tag]}
                for item in items
            ],
        })

    async def artifact_set_exists(self, name: str) -> bool:
        try:
            await self._call("getStickerSet", json_body={"name": name})
        except PublishError as e:
            if e.category == INVALID_NAME:
                return False
            raise
        return True

    async def notify(self, chat_id: int, text: str, **options: Any) -> None:
        body: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if options.get("parse_mode"):
            body["parse_mode"] = options["parse_mode"]
        if options.get("buttons"):
            body["reply_markup"] = {"inline_keyboard": options["buttons"]}
        await self._call("sendMessage", json_body=body)

    def artifact_set_url(self, name: str) -> str:
        return f"https://t.me/addstickers/{name}"

    async def aclose(self) -> None:
        await self.client.aclose()
