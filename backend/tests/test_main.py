import io
import os
import time

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from stickerforge.config import Settings
from stickerforge.errors import QueueBackendError
from stickerforge.main import create_app

from conftest import FakeDistributor, list_files


def jpeg_bytes(size=(640, 480)):
    buf = io.BytesIO()
    Image.new("RGB", size, (90, 140, 200)).save(buf, format="JPEG")
    return buf.getvalue()


def poll_stats(client, predicate, timeout=30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        stats = client.get("/queue/stats").json()
        if predicate(stats):
            return stats
        time.sleep(0.05)
    raise AssertionError("queue did not settle in time")


@pytest.fixture
def app_settings(work_dir):
    return Settings(storage_dir=work_dir, bot_username="testbot", max_concurrent_jobs=2)


def test_health(app_settings):
    with TestClient(create_app(app_settings, distributor=FakeDistributor())) as client:
        assert client.get("/health").json() == {"ok": True}


def test_uploaded_photo_becomes_a_sticker_set(app_settings, work_dir):
    distributor = FakeDistributor()
    with TestClient(create_app(app_settings, distributor=distributor)) as client:
        response = client.post(
            "/stickers",
            files={"file": ("me.jpg", jpeg_bytes(), "image/jpeg")},
            data={"owner_id": "77", "chat_id": "770", "display_name": "ali"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["job_id"] == 1
        assert set(body) == {"job_id", "position", "active"}

        stats = poll_stats(client, lambda s: s["completed"] + s["failed"] >= 1)

    assert stats == {"waiting": 0, "active": 0, "completed": 1, "failed": 0}
    [(name, created)] = distributor.sets.items()
    assert name.startswith("ai_stickers_77_") and name.endswith("_by_testbot")
    assert created["title"] == "AI Stickers by @ali"
    assert len(created["items"]) == 8
    assert {chat for chat, _, _ in distributor.messages} == {770}
    assert list_files(work_dir) == []


def test_upload_requires_owner_and_chat(app_settings):
    with TestClient(create_app(app_settings, distributor=FakeDistributor())) as client:
        response = client.post("/stickers", files={"file": ("me.jpg", jpeg_bytes(), "image/jpeg")})
    assert response.status_code == 422


def test_empty_upload_is_a_bad_request(app_settings, work_dir):
    with TestClient(create_app(app_settings, distributor=FakeDistributor())) as client:
        response = client.post(
            "/stickers",
            files={"file": ("me.jpg", b"", "image/jpeg")},
            data={"owner_id": "1", "chat_id": "10"},
        )
    assert response.status_code == 400
    assert list_files(work_dir) == []


def test_non_http_image_url_is_a_bad_request(app_settings):
    with TestClient(create_app(app_settings, distributor=FakeDistributor())) as client:
        response = client.post("/stickers/from-url", json={
            "owner_id": 5, "chat_id": 50, "image_url": "file:///etc/passwd",
        })
    assert response.status_code == 400


def test_unreachable_image_url_fails_the_job(app_settings, work_dir):
    distributor = FakeDistributor()
    with TestClient(create_app(app_settings, distributor=distributor)) as client:
        response = client.post("/stickers/from-url", json={
            "owner_id": 5, "chat_id": 50, "image_url": "http://127.0.0.1:9/missing.jpg",
        })
        assert response.status_code == 200
        stats = poll_stats(client, lambda s: s["completed"] + s["failed"] >= 1)

    assert stats["failed"] == 1
    assert distributor.sets == {}
    assert distributor.messages[-1][0] == 50
    assert distributor.messages[-1][1].startswith("❌")
    assert list_files(work_dir) == []


def test_durable_backend_serves_the_same_api(work_dir, tmp_path):
    settings = Settings(storage_dir=work_dir, bot_username="testbot",
                        queue_database_url=f"sqlite:///{tmp_path / 'queue.db'}",
                        queue_poll_seconds=0.05)
    distributor = FakeDistributor()
    with TestClient(create_app(settings, distributor=distributor)) as client:
        response = client.post(
            "/stickers",
            files={"file": ("me.png", jpeg_bytes((300, 300)), "image/jpeg")},
            data={"owner_id": "8", "chat_id": "80"},
        )
        assert response.status_code == 200
        stats = poll_stats(client, lambda s: s["completed"] + s["failed"] >= 1)

    assert stats["completed"] == 1
    assert len(distributor.sets) == 1
    assert os.path.exists(tmp_path / "queue.db")
    assert list_files(work_dir) == []


def test_enqueue_succeeds_when_stats_are_unavailable(app_settings):
    distributor = FakeDistributor()
    with TestClient(create_app(app_settings, distributor=distributor)) as client:
        async def broken_stats():
            raise QueueBackendError("store went away")

        client.app.state.queue.stats = broken_stats
        response = client.post(
            "/stickers",
            files={"file": ("me.jpg", jpeg_bytes(), "image/jpeg")},
            data={"owner_id": "3", "chat_id": "30"},
        )
        assert response.status_code == 200
        assert response.json() == {"job_id": 1, "position": None, "active": None}
        assert client.get("/queue/stats").status_code == 503

        deadline = time.monotonic() + 30
        while not distributor.sets and time.monotonic() < deadline:
            time.sleep(0.05)
    assert len(distributor.sets) == 1
