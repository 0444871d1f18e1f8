# backend/services/driver.py
from __future__ import annotations
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging

from backend.config import Settings
from backend.core.cancel import CancelToken
from backend.core.errors import (
    PollTimeout,
    RemoteProtocolError,
    UploadCancelled,
    UploadError,
    UploadNotFound,
)
from backend.core.models import MediaKind, UploadStatus
from backend.core.registry import UploadJobTracker
from backend.services.media import compress_image, transcode_video
from backend.services.profiles import ResourceProfile, any_url, build_profiles
from backend.services.shopify import ShopifyAdminClient
from backend.services.storage import temp_path_for

logger = logging.getLogger("shop_relay.driver")

Transformer = Callable[[Path, Path, CancelToken], Awaitable[Optional[Path]]]

# progress milestones reported to the tracker
P_COMPRESSING = 10
P_STAGED = 30
P_PUSHING = 60
P_PUSHED = 70
P_CREATED = 80
P_POLL_CEILING = 95


@dataclass
class Prepared:
    path: Path
    filename: str
    mime_type: str


class StagedUploadDriver:
    """
    Takes one registered job from its uploaded bytes to a Shopify file URL:
      compress/transcode -> stagedUploadsCreate -> POST to the staged target
      -> fileCreate -> poll node(fileStatus) until READY.
    Every remote call and the transform step are bound to the job's cancel
    token, so a concurrent cancel interrupts whatever is in flight.
    """

    def __init__(
        self,
        tracker: UploadJobTracker,
        shopify: ShopifyAdminClient,
        settings: Settings,
        profiles: Dict[MediaKind, ResourceProfile] | None = None,
        transformers: Dict[MediaKind, Transformer] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tracker = tracker
        self.shopify = shopify
        self.tmp_dir = Path(settings.TMP_DIR)
        self.poll_interval = settings.POLL_INTERVAL_SECONDS
        self.poll_max_attempts = settings.POLL_MAX_ATTEMPTS
        self.profiles = profiles or build_profiles(settings)
        self._sleep = sleep
        if transformers is None:
            transformers = {
                MediaKind.image: partial(
                    compress_image,
                    max_dimension=settings.IMAGE_MAX_DIMENSION,
                    quality=settings.IMAGE_QUALITY,
                ),
                MediaKind.video: partial(
                    transcode_video,
                    max_height=settings.VIDEO_MAX_HEIGHT,
                    crf=settings.VIDEO_CRF,
                    timeout=settings.TRANSCODE_TIMEOUT_SECONDS,
                    ffmpeg_bin=settings.FFMPEG_BIN,
                ),
            }
        self.transformers = transformers

    def profile_for(self, kind: MediaKind) -> ResourceProfile:
        return self.profiles[MediaKind(kind)]

    async def run(self, job_id: str, source: Path, filename: str, mime_type: str) -> str:
        """Drive ``job_id`` to completion and return the resolved file URL."""
        job = self.tracker.get(job_id)
        if job is None:
            raise UploadNotFound(f"job {job_id} vanished before upload")
        token = job.cancel_token
        profile = self.profile_for(job.kind)

        try:
            token.raise_if_cancelled()
            prepared = await self._prepare(job_id, profile, Prepared(Path(source), filename, mime_type), token)
            url = await self._ingest(job_id, profile, prepared, token)
        except UploadCancelled:
            self.tracker.cancel(job_id)
            logger.info("job=%s cancelled mid-flight", job_id)
            raise
        except asyncio.CancelledError:
            # request task torn down (disconnect, shutdown): release the job now
            self.tracker.cancel(job_id)
            logger.info("job=%s aborted with its request task", job_id)
            raise
        except UploadError as e:
            logger.error("job=%s failed: %s", job_id, e)
            self.tracker.advance(job_id, UploadStatus.error, 0, error=e.public_message)
            raise
        except Exception as e:
            logger.exception("job=%s failed unexpectedly", job_id)
            self.tracker.fail(job_id, "Upload failed")
            raise UploadError(f"unexpected: {e!r}") from e

        if not self.tracker.advance(job_id, UploadStatus.completed, 100, url=url):
            # cancelled between the last await and here
            raise UploadCancelled("job finished after cancellation")
        logger.info("job=%s completed url=%s", job_id, url)
        return url

    # ---------- step 1: local transform ----------
    async def _prepare(self, job_id: str, profile: ResourceProfile, original: Prepared, token: CancelToken) -> Prepared:
        self._step(job_id, UploadStatus.compressing, P_COMPRESSING, token)
        transform = self.transformers.get(profile.kind)
        if transform is None:
            return original

        to_mp4 = profile.kind is MediaKind.video
        out_name = Path(original.filename).with_suffix(".mp4").name if to_mp4 else original.filename
        out = temp_path_for(self.tmp_dir, job_id, out_name, tag="compressed")
        if not self.tracker.add_temp_resource(job_id, out):
            raise UploadCancelled("job ended before transform")

        try:
            result = await transform(original.path, out, token)
        except UploadCancelled:
            raise
        except Exception as e:
            # best effort: ship the untouched original instead
            logger.warning("job=%s transform failed, using original: %s", job_id, e)
            return original

        token.raise_if_cancelled()
        if result is None:
            return original
        return Prepared(
            path=result,
            filename=out_name,
            mime_type="video/mp4" if to_mp4 else original.mime_type,
        )

    # ---------- steps 2-5: staged upload protocol ----------
    async def _ingest(self, job_id: str, profile: ResourceProfile, prepared: Prepared, token: CancelToken) -> str:
        self._step(job_id, UploadStatus.uploading, P_STAGED, token)
        size = prepared.path.stat().st_size
        target = await token.guard(self.shopify.staged_upload_target(
            prepared.filename, prepared.mime_type, profile.staged_resource, size,
        ))

        self._step(job_id, UploadStatus.uploading, P_PUSHING, token)
        await token.guard(self.shopify.push_to_target(target, prepared.path, prepared.filename, prepared.mime_type))
        self._step(job_id, UploadStatus.uploading, P_PUSHED, token)

        created = await token.guard(self.shopify.create_file(
            target.resource_url, profile.content_type, alt=prepared.filename,
        ))
        self._step(job_id, UploadStatus.uploading, P_CREATED, token)

        url = profile.extract_url(created) or any_url(created)
        if url:
            logger.info("job=%s fileCreate returned a ready URL, skipping poll", job_id)
            return url
        return await self.wait_until_ready(job_id, created["id"], profile, token)

    async def wait_until_ready(self, job_id: str, file_id: str, profile: ResourceProfile, token: CancelToken) -> str:
        for attempt in range(1, self.poll_max_attempts + 1):
            token.raise_if_cancelled()
            node = await token.guard(self.shopify.file_node(file_id))
            if not node:
                raise RemoteProtocolError(f"node({file_id}) is null", public_message="File not found")

            status = node.get("fileStatus")
            if status == "READY":
                url = profile.extract_url(node) or any_url(node)
                if not url:
                    raise RemoteProtocolError(f"{file_id} READY without a URL", public_message="Shopify returned no file URL")
                logger.info("job=%s file ready after %d poll(s)", job_id, attempt)
                return url
            if status == "FAILED":
                raise RemoteProtocolError(f"{file_id} processing FAILED", public_message="Shopify failed to process the file")

            logger.debug("job=%s poll %d/%d status=%s", job_id, attempt, self.poll_max_attempts, status)
            self._step(job_id, UploadStatus.uploading, min(P_POLL_CEILING, P_CREATED + attempt), token)
            if attempt < self.poll_max_attempts:
                await token.sleep(self.poll_interval, self._sleep)

        raise PollTimeout(f"{file_id} not ready after {self.poll_max_attempts} polls")

    def _step(self, job_id: str, status: UploadStatus, progress: int, token: CancelToken) -> None:
        token.raise_if_cancelled()
        self.tracker.advance(job_id, status, progress)

