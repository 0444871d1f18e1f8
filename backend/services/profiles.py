# backend/services/profiles.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import mimetypes

from backend.config import Settings
from backend.core.errors import FileTooLarge
from backend.core.models import MediaKind

UrlExtractor = Callable[[Dict[str, Any]], Optional[str]]


def _image_url(node: Dict[str, Any]) -> Optional[str]:
    return ((node.get("image") or {}).get("url")) or None


def _video_url(node: Dict[str, Any]) -> Optional[str]:
    sources = node.get("sources") or []
    for s in sources:
        if s and s.get("url"):
            return s["url"]
    return None


def _generic_url(node: Dict[str, Any]) -> Optional[str]:
    return node.get("url") or None


def any_url(node: Dict[str, Any]) -> Optional[str]:
    """Whatever shape the node came back in, pull a delivery URL out of it."""
    return _image_url(node) or _video_url(node) or _generic_url(node)


@dataclass(frozen=True)
class ResourceProfile:
    kind: MediaKind
    staged_resource: str       # stagedUploadsCreate input.resource
    content_type: str          # fileCreate files[].contentType
    max_bytes: int
    extract_url: UrlExtractor

    @property
    def max_mb(self) -> int:
        return self.max_bytes // (1024 * 1024)

    def check_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise FileTooLarge(
                f"{self.kind.value} of {size} bytes exceeds {self.max_bytes}",
                public_message=f"File too large (> {self.max_mb} MB)",
            )


def build_profiles(settings: Settings) -> Dict[MediaKind, ResourceProfile]:
    mb = 1024 * 1024
    return {
        MediaKind.image: ResourceProfile(
            kind=MediaKind.image,
            staged_resource="IMAGE",
            content_type="IMAGE",
            max_bytes=settings.MAX_IMAGE_MB * mb,
            extract_url=_image_url,
        ),
        MediaKind.video: ResourceProfile(
            kind=MediaKind.video,
            staged_resource="VIDEO",
            content_type="VIDEO",
            max_bytes=settings.MAX_VIDEO_MB * mb,
            extract_url=_video_url,
        ),
        MediaKind.generic: ResourceProfile(
            kind=MediaKind.generic,
            staged_resource="FILE",
            content_type="FILE",
            max_bytes=settings.MAX_FILE_MB * mb,
            extract_url=_generic_url,
        ),
    }


# what browsers send as fileType -> our kinds
_FILE_TYPE_ALIASES = {
    "image": MediaKind.image,
    "img": MediaKind.image,
    "photo": MediaKind.image,
    "video": MediaKind.video,
    "file": MediaKind.generic,
    "generic": MediaKind.generic,
    "document": MediaKind.generic,
}


def resolve_kind(file_type: Optional[str], filename: str | None = None, mime: str | None = None) -> Optional[MediaKind]:
    """Map a client ``fileType`` (or, failing that, the MIME type) to a kind.

    Accepts short names ("image", "video", "file") as well as full MIME types
    such as "image/png". Returns None when nothing usable was given.
    """
    ft = (file_type or "").strip().lower()
    if ft in _FILE_TYPE_ALIASES:
        return _FILE_TYPE_ALIASES[ft]
    if "/" in ft:
        return _kind_from_mime(ft)
    if ft:
        return None
    if not mime and filename:
        mime, _ = mimetypes.guess_type(filename)
    return _kind_from_mime(mime) if mime else None


def _kind_from_mime(mime: str) -> MediaKind:
    major = mime.split("/", 1)[0].lower()
    if major == "image":
        return MediaKind.image
    if major == "video":
        return MediaKind.video
    return MediaKind.generic


def guess_mime(filename: str, declared: str | None = None) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    mime, _ = mimetypes.guess_type(filename)
    return mime or declared or "application/octet-stream"
