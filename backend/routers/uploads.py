# backend/routers/uploads.py
from __future__ import annotations
from typing import Optional
import asyncio
import logging

from fastapi import APIRouter, File, Form, Request, UploadFile
from pydantic import BaseModel

from backend.core.errors import InvalidUpload, UploadCancelled, UploadError, UploadNotFound
from backend.core.models import MediaKind, UploadStatus
from backend.core.registry import UploadJobTracker
from backend.services.driver import StagedUploadDriver
from backend.services.profiles import guess_mime, resolve_kind
from backend.services.storage import safe_name, temp_path_for, write_upload_stream

logger = logging.getLogger("shop_relay.uploads")

router = APIRouter(prefix="/api", tags=["uploads"])


def get_tracker(request: Request) -> UploadJobTracker:
    return request.app.state.tracker


def get_driver(request: Request) -> StagedUploadDriver:
    return request.app.state.driver


# ---------- Models ----------
class InitUploadRequest(BaseModel):
    filename: Optional[str] = None
    fileType: Optional[str] = None


class InitUploadResponse(BaseModel):
    uploadId: str


class UploadResponse(BaseModel):
    url: str


# ---------- Routes ----------
@router.post("/init-upload", response_model=InitUploadResponse)
async def init_upload(body: InitUploadRequest, request: Request):
    if not (body.filename or "").strip() or not (body.fileType or "").strip():
        raise InvalidUpload("init-upload missing fields", public_message="Missing filename or fileType")
    kind = resolve_kind(body.fileType, body.filename)
    if kind is None:
        raise InvalidUpload(f"unknown fileType {body.fileType!r}", public_message="Unsupported fileType")
    upload_id = get_tracker(request).register(body.filename, kind)
    return {"uploadId": upload_id}


@router.post("/upload-file", response_model=UploadResponse)
async def upload_file(
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    fileType: Optional[str] = Form(default=None),
    uploadId: Optional[str] = Form(default=None),
):
    url = await _relay_upload(request, file, file_type=fileType, upload_id=uploadId)
    return {"url": url}


@router.post("/upload-image", response_model=UploadResponse)
async def upload_image(request: Request, image: Optional[UploadFile] = File(default=None)):
    """Single-shot image upload kept for older clients (multipart field ``image``)."""
    url = await _relay_upload(request, image, file_type=MediaKind.image.value)
    return {"url": url}


@router.get("/upload-status/{upload_id}")
async def upload_status(upload_id: str, request: Request):
    job = get_tracker(request).get(upload_id)
    if job is None:
        raise UploadNotFound(upload_id)
    return job.to_api()


@router.delete("/cancel-upload/{upload_id}")
async def cancel_upload(upload_id: str, request: Request):
    if not get_tracker(request).cancel(upload_id):
        raise UploadNotFound(upload_id)
    return {"success": True}


# ---------- Helpers ----------
async def _relay_upload(
    request: Request,
    up: Optional[UploadFile],
    file_type: Optional[str] = None,
    upload_id: Optional[str] = None,
) -> str:
    if up is None or not up.filename:
        raise InvalidUpload("no file part", public_message="The file was not uploaded")

    tracker = get_tracker(request)
    driver = get_driver(request)
    filename = safe_name(up.filename)
    mime = guess_mime(filename, up.content_type)

    if upload_id:
        job_id = upload_id
    else:
        kind = resolve_kind(file_type, filename, mime)
        if kind is None:
            raise InvalidUpload(f"unknown fileType {file_type!r}", public_message="Unsupported fileType")
        job_id = tracker.register(filename, kind)

    # one request per job; a second submission for the same id loses here
    if not tracker.claim(job_id):
        job = tracker.get(job_id)
        if job is None:
            raise UploadNotFound(job_id)
        if job.status is UploadStatus.cancelled:
            raise UploadCancelled(f"{job_id} was cancelled before its bytes arrived")
        raise InvalidUpload(f"{job_id} is {job.status.value}", public_message="Upload already in progress")
    job = tracker.get(job_id)
    if job is None:
        raise UploadNotFound(job_id)

    profile = driver.profile_for(job.kind)
    dest = temp_path_for(driver.tmp_dir, job_id, filename)
    try:
        if up.size is not None:
            profile.check_size(up.size)
        tracker.add_temp_resource(job_id, dest)
        await write_upload_stream(dest, up, profile.max_bytes)
    except UploadError as e:
        tracker.advance(job_id, UploadStatus.error, 0, error=e.public_message)
        raise
    except asyncio.CancelledError:
        # client went away mid-receive
        tracker.cancel(job_id)
        raise

    if job.cancel_token.cancelled:
        # cancel landed while we were still receiving; its cleanup ran before the file existed
        dest.unlink(missing_ok=True)
        raise UploadCancelled(f"{job_id} cancelled during receive")

    logger.info("job=%s received %s (%s, %d bytes)", job_id, filename, mime, dest.stat().st_size)
    return await driver.run(job_id, dest, filename, mime)
