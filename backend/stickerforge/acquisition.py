# backend/stickerforge/acquisition.py
import os
import uuid
from typing import Optional

import aiofiles
import httpx
from fastapi import UploadFile

CHUNK_SIZE = 1024 * 1024


def source_path_for(dest_dir: str, owner_id: int, ext: str = ".jpg") -> str:
    return os.path.join(dest_dir, f"input_{owner_id}_{uuid.uuid4().hex[:12]}{ext}")


async def save_upload_file(upload_file: UploadFile, destination: str) -> None:
    """Save an uploaded file in chunks."""
    async with aiofiles.open(destination, "wb") as out_file:
        while True:
            chunk = await upload_file.read(CHUNK_SIZE)
            if not chunk:
                break
            await out_file.write(chunk)
    await upload_file.close()


async def fetch_source(url: str, destination: str, client: Optional[httpx.AsyncClient] = None) -> str:
    """Download the image at url to destination.

    Raises httpx.HTTPError or OSError; a partially written file is removed.
    """
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=60, follow_redirects=True)
    try:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            async with aiofiles.open(destination, "wb") as out_file:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    await out_file.write(chunk)
    except BaseException:
        if os.path.exists(destination):
            os.remove(destination)
        raise
    finally:
        if owns_client:
            await client.aclose()
    return destination
