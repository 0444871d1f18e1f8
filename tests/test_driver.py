import asyncio
import os
import threading
import time
from functools import partial

import pytest
from PIL import Image

from backend.core.errors import PollTimeout, RemoteProtocolError, TransformFailed, UploadCancelled
from backend.core.models import MediaKind, UploadStatus
from backend.services.media import compress_image
from tests.conftest import TOKEN


@pytest.mark.asyncio
async def test_ready_url_from_file_create_skips_polling(make_driver, staged_file, tracker, fake_shopify, sleeper):
    fake_shopify.created_file = {
        "id": "gid://shopify/MediaImage/9",
        "fileStatus": "READY",
        "image": {"url": "https://cdn.shopify.com/s/files/photo.png"},
    }
    job_id, src = staged_file(kind="image", filename="photo.png", content=b"\x89PNG fake")
    driver = make_driver()

    url = await driver.run(job_id, src, "photo.png", "image/png")

    assert url == "https://cdn.shopify.com/s/files/photo.png"
    assert fake_shopify.ops("node") == []
    assert sleeper.delays == []
    job = tracker.get(job_id)
    assert job.status is UploadStatus.completed
    assert job.progress == 100
    assert job.url == url
    assert not src.exists()


@pytest.mark.asyncio
async def test_polls_until_ready_on_third_attempt(make_driver, staged_file, tracker, fake_shopify, sleeper):
    fake_shopify.nodes = [
        {"id": "gid://shopify/GenericFile/1", "fileStatus": "UPLOADED", "url": None},
        {"id": "gid://shopify/GenericFile/1", "fileStatus": "PROCESSING", "url": None},
        {"id": "gid://shopify/GenericFile/1", "fileStatus": "READY", "url": "https://cdn.shopify.com/f/doc.pdf"},
    ]
    job_id, src = staged_file()
    driver = make_driver()

    url = await driver.run(job_id, src, "doc.pdf", "application/pdf")

    assert url == "https://cdn.shopify.com/f/doc.pdf"
    assert len(fake_shopify.ops("node")) == 3
    assert sleeper.delays == [5.0, 5.0]
    assert tracker.get(job_id).status is UploadStatus.completed


@pytest.mark.asyncio
async def test_protocol_requests_carry_expected_shapes(make_driver, staged_file, fake_shopify):
    job_id, src = staged_file(kind="video", filename="clip.mp4", content=b"\x00\x00\x00\x18ftypmp42")
    fake_shopify.created_file = {"id": "gid://shopify/Video/3", "fileStatus": "UPLOADED", "sources": []}
    fake_shopify.nodes = [{"id": "gid://shopify/Video/3", "fileStatus": "READY",
                           "sources": [{"url": "https://cdn.shopify.com/v/clip.mp4"}, {"url": "https://cdn/other.m3u8"}]}]
    driver = make_driver()

    url = await driver.run(job_id, src, "clip.mp4", "video/mp4")

    assert url == "https://cdn.shopify.com/v/clip.mp4"
    staged = fake_shopify.ops("staged")[0]
    assert staged["headers"]["x-shopify-access-token"] == TOKEN
    inp = staged["variables"]["input"][0]
    assert inp["resource"] == "VIDEO"
    assert inp["mimeType"] == "video/mp4"
    assert inp["fileSize"] == str(len(b"\x00\x00\x00\x18ftypmp42"))
    assert inp["httpMethod"] == "POST"

    blob = fake_shopify.ops("blob")[0]
    assert b'name="key"' in blob["body"] and b"tmp/123/file" in blob["body"]
    assert b"ftypmp42" in blob["body"]
    # the token never goes to blob storage
    assert TOKEN not in str(blob["headers"])

    created = fake_shopify.ops("fileCreate")[0]["variables"]["files"][0]
    assert created["contentType"] == "VIDEO"
    assert created["originalSource"].endswith("/tmp/123/file")


@pytest.mark.asyncio
async def test_poll_exhaustion_ends_in_error(make_driver, staged_file, tracker, fake_shopify, sleeper):
    fake_shopify.nodes = [{"id": "gid://shopify/GenericFile/1", "fileStatus": "PROCESSING", "url": None}]
    job_id, src = staged_file()
    driver = make_driver()

    with pytest.raises(PollTimeout):
        await driver.run(job_id, src, "doc.pdf", "application/pdf")

    assert len(fake_shopify.ops("node")) == 4
    job = tracker.get(job_id)
    assert job.status is UploadStatus.error
    assert "allotted time" in job.error
    assert not src.exists()


@pytest.mark.asyncio
async def test_failed_file_status_stops_polling(make_driver, staged_file, tracker, fake_shopify):
    fake_shopify.nodes = [{"id": "gid://shopify/GenericFile/1", "fileStatus": "FAILED", "url": None}]
    job_id, src = staged_file()

    with pytest.raises(RemoteProtocolError):
        await make_driver().run(job_id, src, "doc.pdf", "application/pdf")

    assert len(fake_shopify.ops("node")) == 1
    assert tracker.get(job_id).status is UploadStatus.error


@pytest.mark.asyncio
async def test_staged_user_errors_fail_before_blob_upload(make_driver, staged_file, tracker, fake_shopify):
    fake_shopify.staged_user_errors = [{"field": ["input", "0", "fileSize"], "message": "too big"}]
    job_id, src = staged_file()

    with pytest.raises(RemoteProtocolError):
        await make_driver().run(job_id, src, "doc.pdf", "application/pdf")

    assert fake_shopify.ops("blob") == []
    job = tracker.get(job_id)
    assert job.status is UploadStatus.error
    assert job.error == "Failed to get upload URL"


@pytest.mark.asyncio
async def test_blob_storage_rejection_is_an_error(make_driver, staged_file, tracker, fake_shopify):
    fake_shopify.blob_status = 403
    job_id, src = staged_file()

    with pytest.raises(RemoteProtocolError):
        await make_driver().run(job_id, src, "doc.pdf", "application/pdf")

    assert fake_shopify.ops("fileCreate") == []
    assert tracker.get(job_id).error == "Storage upload failed"


@pytest.mark.asyncio
async def test_file_create_without_id_is_an_error(make_driver, staged_file, tracker, fake_shopify):
    fake_shopify.file_create_user_errors = [{"field": ["files"], "message": "bad source"}]
    job_id, src = staged_file()

    with pytest.raises(RemoteProtocolError):
        await make_driver().run(job_id, src, "doc.pdf", "application/pdf")

    assert tracker.get(job_id).error == "Failed to create file in Shopify"


@pytest.mark.asyncio
async def test_transform_failure_falls_back_to_original(make_driver, staged_file, tracker, fake_shopify):
    async def broken_transform(src, out, token):
        raise TransformFailed("encoder crashed")

    job_id, src = staged_file(kind="image", filename="photo.jpg", content=b"original-bytes")
    driver = make_driver(transformers={MediaKind.image: broken_transform})

    await driver.run(job_id, src, "photo.jpg", "image/jpeg")

    assert b"original-bytes" in fake_shopify.ops("blob")[0]["body"]
    assert tracker.get(job_id).status is UploadStatus.completed


@pytest.mark.asyncio
async def test_transformed_bytes_are_uploaded(make_driver, staged_file, fake_shopify):
    async def shrink(src, out, token):
        out.write_bytes(b"small")
        return out

    job_id, src = staged_file(kind="image", filename="photo.jpg", content=b"a much larger original")
    driver = make_driver(transformers={MediaKind.image: shrink})

    await driver.run(job_id, src, "photo.jpg", "image/jpeg")

    body = fake_shopify.ops("blob")[0]["body"]
    assert b"small" in body and b"a much larger original" not in body
    assert fake_shopify.ops("staged")[0]["variables"]["input"][0]["fileSize"] == "5"


@pytest.mark.asyncio
async def test_cancel_during_transform_aborts(make_driver, staged_file, tracker, fake_shopify):
    entered = asyncio.Event()

    async def stuck_transform(src, out, token):
        out.write_bytes(b"partial")
        entered.set()
        await token.guard(asyncio.Event().wait())

    job_id, src = staged_file(kind="video", filename="clip.mov", content=b"movie")
    driver = make_driver(transformers={MediaKind.video: stuck_transform})

    task = asyncio.create_task(driver.run(job_id, src, "clip.mov", "video/quicktime"))
    await entered.wait()
    tracker.cancel(job_id)

    with pytest.raises(UploadCancelled):
        await task
    assert fake_shopify.calls == []
    assert not src.exists()
    assert not any(src.parent.glob(f"{job_id}.*"))


@pytest.mark.asyncio
async def test_cancel_interrupts_blob_upload_in_flight(make_driver, staged_file, tracker, fake_shopify):
    in_flight = asyncio.Event()

    async def hang():
        in_flight.set()
        await asyncio.Event().wait()

    fake_shopify.blob_hook = hang
    job_id, src = staged_file()

    task = asyncio.create_task(make_driver().run(job_id, src, "doc.pdf", "application/pdf"))
    await in_flight.wait()
    tracker.cancel(job_id)

    with pytest.raises(UploadCancelled):
        await asyncio.wait_for(task, timeout=2)
    assert fake_shopify.ops("fileCreate") == []
    job = tracker.get(job_id)
    assert job.status is UploadStatus.cancelled
    assert not src.exists()


@pytest.mark.asyncio
async def test_cancel_while_waiting_between_polls(make_driver, staged_file, tracker, fake_shopify):
    waiting = asyncio.Event()

    async def long_sleep(delay):
        waiting.set()
        await asyncio.Event().wait()

    fake_shopify.nodes = [{"id": "gid://shopify/GenericFile/1", "fileStatus": "PROCESSING", "url": None}]
    job_id, src = staged_file()

    task = asyncio.create_task(make_driver(sleep=long_sleep).run(job_id, src, "doc.pdf", "application/pdf"))
    await waiting.wait()
    tracker.cancel(job_id)

    with pytest.raises(UploadCancelled):
        await asyncio.wait_for(task, timeout=2)
    assert len(fake_shopify.ops("node")) == 1
    assert tracker.get(job_id).status is UploadStatus.cancelled


@pytest.mark.asyncio
async def test_progress_never_decreases(make_driver, staged_file, tracker, fake_shopify):
    seen = []
    fake_shopify.nodes = [
        {"id": "gid://shopify/GenericFile/1", "fileStatus": "PROCESSING", "url": None},
        {"id": "gid://shopify/GenericFile/1", "fileStatus": "READY", "url": "https://cdn/doc.pdf"},
    ]
    job_id, src = staged_file()

    async def watching_sleep(delay):
        job = tracker.get(job_id)
        seen.append((job.status, job.progress))

    await make_driver(sleep=watching_sleep).run(job_id, src, "doc.pdf", "application/pdf")

    job = tracker.get(job_id)
    seen.append((job.status, job.progress))
    progresses = [p for _, p in seen]
    assert progresses == sorted(progresses)
    assert seen[0][0] is UploadStatus.uploading
    assert seen[-1] == (UploadStatus.completed, 100)


@pytest.mark.asyncio
async def test_outer_task_cancel_releases_job(make_driver, staged_file, tracker, fake_shopify):
    in_flight = asyncio.Event()

    async def hang():
        in_flight.set()
        await asyncio.Event().wait()

    fake_shopify.blob_hook = hang
    job_id, src = staged_file()

    task = asyncio.create_task(make_driver().run(job_id, src, "doc.pdf", "application/pdf"))
    await in_flight.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    job = tracker.get(job_id)
    assert job.status is UploadStatus.cancelled
    assert job.cancel_token.cancelled
    assert not src.exists()


@pytest.mark.asyncio
async def test_cancel_during_real_image_recompress_leaves_no_files(
    make_driver, staged_file, tracker, fake_shopify, tmp_path, monkeypatch,
):
    src_img = tmp_path / "noise.jpg"
    Image.frombytes("RGB", (800, 600), os.urandom(800 * 600 * 3)).save(src_img, format="JPEG", quality=100)
    saving = threading.Event()
    real_save = Image.Image.save

    def slow_save(self, *args, **kwargs):
        saving.set()
        time.sleep(0.5)
        return real_save(self, *args, **kwargs)

    job_id, src = staged_file(kind="image", filename="photo.jpg", content=src_img.read_bytes())
    monkeypatch.setattr(Image.Image, "save", slow_save)
    driver = make_driver(transformers={MediaKind.image: partial(compress_image, max_dimension=200, quality=60)})

    task = asyncio.create_task(driver.run(job_id, src, "photo.jpg", "image/jpeg"))
    assert await asyncio.to_thread(saving.wait, 5)
    tracker.cancel(job_id)

    with pytest.raises(UploadCancelled):
        await asyncio.wait_for(task, timeout=5)
    assert fake_shopify.calls == []
    assert tracker.get(job_id).status is UploadStatus.cancelled
    assert not any(src.parent.glob(f"{job_id}.*"))
