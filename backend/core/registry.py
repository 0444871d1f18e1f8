from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from .errors import InvalidUpload
from .models import MediaKind, UploadJob, UploadStatus

logger = logging.getLogger("shop_relay.jobs")

CANCELLED_MESSAGE = "Upload cancelled by user"
RETENTION_SECONDS = 60 * 60


def _delete_paths(job_id: str, paths: Iterable[Path]) -> None:
    for p in paths:
        try:
            Path(p).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("job=%s could not delete temp file %s: %s", job_id, p, e)


class UploadJobTracker:
    """In-memory table of upload jobs.

    All reads return snapshots and all writes happen under one lock, so a
    reader never sees a status/progress pair that was not stored together.
    Temp files are detached from the job under the lock and deleted outside
    it, which makes cleanup happen once per job no matter who triggers it.
    """

    def __init__(self, retention_seconds: float = RETENTION_SECONDS, clock: Callable[[], float] = time.time):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._jobs: Dict[str, UploadJob] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def register(self, filename: Optional[str], kind) -> str:
        name = (filename or "").strip()
        if not name:
            raise InvalidUpload("filename missing", public_message="Missing filename")
        try:
            media_kind = MediaKind(kind)
        except ValueError:
            raise InvalidUpload(f"unknown kind {kind!r}", public_message="Missing or invalid fileType")

        job = UploadJob(original_filename=name, kind=media_kind, created_at=self._clock())
        with self._lock:
            while job.id in self._jobs:
                job = UploadJob(original_filename=name, kind=media_kind, created_at=self._clock())
            self._jobs[job.id] = job
        logger.info("job=%s registered kind=%s filename=%r", job.id, media_kind.value, name)
        return job.id

    def get(self, job_id: str) -> Optional[UploadJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def list_jobs(self) -> list[UploadJob]:
        with self._lock:
            return [j.snapshot() for j in self._jobs.values()]

    def advance(
        self,
        job_id: str,
        status: UploadStatus,
        progress: int,
        *,
        url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move a job forward. Returns False when the transition is rejected."""
        status = UploadStatus(status)
        released: list[Path] = []
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.status.terminal:
                logger.debug("job=%s ignoring %s, already %s", job_id, status.value, job.status.value)
                return False
            if not job.status.can_move_to(status):
                logger.warning("job=%s refusing move %s -> %s", job_id, job.status.value, status.value)
                return False

            job.status = status
            job.progress = max(job.progress, min(100, max(0, int(progress))))
            if status is UploadStatus.completed:
                job.progress = 100
                job.url = url
            elif status in (UploadStatus.error, UploadStatus.cancelled):
                job.error = error or ("Upload failed" if status is UploadStatus.error else CANCELLED_MESSAGE)
            if status.terminal:
                released = list(job.temp_resources)
                job.temp_resources.clear()

        if status.terminal:
            logger.info("job=%s -> %s", job_id, status.value)
            _delete_paths(job_id, released)
        return True

    def claim(self, job_id: str) -> bool:
        """Take a ``waiting`` job for processing (waiting -> compressing).

        Only one caller wins; everyone else gets False, whatever state the
        job is in.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not UploadStatus.waiting:
                return False
            job.status = UploadStatus.compressing
        logger.info("job=%s claimed", job_id)
        return True

    def fail(self, job_id: str, message: str) -> bool:
        return self.advance(job_id, UploadStatus.error, 0, error=message)

    def add_temp_resource(self, job_id: str, path: Path) -> bool:
        """Attach a temp file to a job. A job that is gone or finished gets it deleted right away."""
        path = Path(path)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and not job.status.terminal:
                job.temp_resources[path] = None
                return True
        _delete_paths(job_id, [path])
        return False

    def cancel(self, job_id: str) -> bool:
        """Cancel a job. Returns False only when the id is unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.status.terminal:
                return True
            job.status = UploadStatus.cancelled
            job.error = CANCELLED_MESSAGE
            token = job.cancel_token
            released = list(job.temp_resources)
            job.temp_resources.clear()

        token.cancel()
        logger.info("job=%s cancelled, releasing %d temp file(s)", job_id, len(released))
        _delete_paths(job_id, released)
        return True

    def sweep(self) -> int:
        """Evict jobs older than the retention window and delete their temp files."""
        cutoff = self._clock() - self.retention_seconds
        evicted: list[UploadJob] = []
        with self._lock:
            for job_id in [j.id for j in self._jobs.values() if j.created_at < cutoff]:
                evicted.append(self._jobs.pop(job_id))

        for job in evicted:
            if not job.status.terminal:
                # still running past retention; stop it so it cannot re-attach files
                job.cancel_token.cancel()
            _delete_paths(job.id, list(job.temp_resources))
            job.temp_resources.clear()
        if evicted:
            logger.info("sweep evicted %d job(s)", len(evicted))
        return len(evicted)
