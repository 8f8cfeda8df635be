import asyncio
import os
import time

import pytest
from PIL import Image

from stickerforge.config import Settings
from stickerforge.errors import PublishError


def make_image(path, size=(640, 480), color=(120, 120, 120), fmt="PNG"):
    Image.new("RGB", size, color).save(path, format=fmt)
    return str(path)


async def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met in time")


def list_files(directory):
    if not os.path.isdir(directory):
        return []
    return sorted(os.listdir(directory))


class FakeDistributor:
    def __init__(self, fail_upload_at=None, upload_error="Bad Request: file is too big",
                 create_error=None, existing=()):
        self.fail_upload_at = fail_upload_at
        self.upload_error = upload_error
        self.create_error = create_error
        self.existing = set(existing)
        self.uploads = []
        self.sets = {}
        self.messages = []

    async def upload_artifact(self, owner_id, path):
        index = len(self.uploads) + 1
        if self.fail_upload_at == index:
            raise PublishError(self.upload_error)
        assert os.path.isfile(path)
        self.uploads.append(path)
        return f"file-{index}"

    async def create_artifact_set(self, owner_id, name, title, items):
        if self.create_error:
            raise PublishError(self.create_error)
        self.sets[name] = {"owner_id": owner_id, "title": title, "items": list(items)}
        self.existing.add(name)

    async def artifact_set_exists(self, name):
        return name in self.existing

    async def notify(self, chat_id, text, **options):
        self.messages.append((chat_id, text, options))

    def artifact_set_url(self, name):
        return f"https://t.me/addstickers/{name}"


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return str(path)


@pytest.fixture
def settings(work_dir):
    return Settings(storage_dir=work_dir, bot_username="testbot")


@pytest.fixture
def distributor():
    return FakeDistributor()
