from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional
import uuid, time

from .cancel import CancelToken


class UploadStatus(str, Enum):
    waiting = "waiting"
    compressing = "compressing"
    uploading = "uploading"
    completed = "completed"
    error = "error"
    cancelled = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_move_to(self, other: "UploadStatus") -> bool:
        return other in _SUCCESSORS.get(self, frozenset())


TERMINAL_STATUSES = frozenset({UploadStatus.completed, UploadStatus.error, UploadStatus.cancelled})

# staying put is allowed so progress can move within a step
_SUCCESSORS = {
    UploadStatus.waiting: frozenset({
        UploadStatus.waiting, UploadStatus.compressing, UploadStatus.error, UploadStatus.cancelled,
    }),
    UploadStatus.compressing: frozenset({
        UploadStatus.compressing, UploadStatus.uploading, UploadStatus.error, UploadStatus.cancelled,
    }),
    UploadStatus.uploading: frozenset({
        UploadStatus.uploading, UploadStatus.completed, UploadStatus.error, UploadStatus.cancelled,
    }),
}


class MediaKind(str, Enum):
    image = "image"
    video = "video"
    generic = "generic"


@dataclass
class UploadJob:
    original_filename: str
    kind: MediaKind
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    status: UploadStatus = UploadStatus.waiting
    progress: int = 0
    error: Optional[str] = None
    url: Optional[str] = None
    cancel_token: CancelToken = field(default_factory=CancelToken, repr=False, compare=False)
    # insertion-ordered set of temp artifacts owned by the job
    temp_resources: dict[Path, None] = field(default_factory=dict, repr=False)

    def snapshot(self) -> "UploadJob":
        """Copy of the record for readers outside the tracker lock.

        ``cancel_token`` is shared by reference, not copied: whoever holds a
        snapshot must see and be able to fire the job's one live token.
        """
        return replace(self, temp_resources=dict(self.temp_resources), cancel_token=self.cancel_token)

    def to_api(self) -> dict:
        d = {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "kind": self.kind.value,
            "originalFilename": self.original_filename,
            "createdAt": self.created_at,
        }
        if self.error is not None:
            d["error"] = self.error
        if self.url is not None:
            d["url"] = self.url
        return d
