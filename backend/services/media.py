# backend/services/media.py
from __future__ import annotations
from pathlib import Path
from typing import Callable, List, Optional
import asyncio
import logging

import ffmpeg
from PIL import Image, ImageOps, UnidentifiedImageError

from backend.core.cancel import CancelToken
from backend.core.errors import TransformFailed, UploadCancelled

logger = logging.getLogger("shop_relay.media")

# formats re-encoded with a quality setting
_LOSSY = {"JPEG", "MPO", "WEBP"}


def _keep_smaller(src: Path, out: Path) -> Optional[Path]:
    """Return ``out`` if it beat the original on size, else drop it."""
    if not out.exists():
        return None
    if out.stat().st_size >= src.stat().st_size:
        out.unlink(missing_ok=True)
        return None
    return out


# ---------- images ----------
def recompress_image(
    src: Path,
    out: Path,
    max_dimension: int = 2048,
    quality: int = 85,
    cancelled: Callable[[], bool] = lambda: False,
) -> Optional[Path]:
    """
    Downscale to fit ``max_dimension`` and re-encode in the same format.
    Returns the new file, or None when the original should be uploaded as is
    (animated, unsupported format, or the result was not smaller).
    """
    try:
        with Image.open(src) as im:
            fmt = (im.format or "").upper()
            if getattr(im, "is_animated", False) or fmt not in _LOSSY | {"PNG"}:
                return None

            im = ImageOps.exif_transpose(im)
            im.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

            if fmt in ("JPEG", "MPO"):
                fmt = "JPEG"
                if im.mode not in ("RGB", "L"):
                    im = im.convert("RGB")
                kwargs = {"quality": quality, "optimize": True, "progressive": True}
            elif fmt == "WEBP":
                kwargs = {"quality": quality, "method": 6}
            else:
                kwargs = {"optimize": True}

            # worker threads cannot be interrupted; last chance to bail out
            if cancelled():
                return None
            im.save(out, format=fmt, **kwargs)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        out.unlink(missing_ok=True)
        raise TransformFailed(f"image recompress failed: {e}") from e

    return _keep_smaller(src, out)


async def compress_image(
    src: Path,
    out: Path,
    token: CancelToken,
    max_dimension: int = 2048,
    quality: int = 85,
) -> Optional[Path]:
    work = asyncio.ensure_future(asyncio.to_thread(
        recompress_image, src, out, max_dimension, quality, lambda: token.cancelled,
    ))
    try:
        return await token.guard(asyncio.shield(work))
    except (UploadCancelled, asyncio.CancelledError):
        # the worker thread cannot be stopped; let it finish, then drop what it wrote
        await asyncio.gather(work, return_exceptions=True)
        out.unlink(missing_ok=True)
        raise


# ---------- videos ----------
def transcode_args(src: Path, out: Path, max_height: int = 1080, crf: int = 28, ffmpeg_bin: str = "ffmpeg") -> List[str]:
    stream = (
        ffmpeg
        .input(str(src))
        .output(
            str(out),
            vcodec="libx264",
            preset="veryfast",
            crf=crf,
            pix_fmt="yuv420p",
            vf=f"scale=-2:'min({max_height},ih)'",
            acodec="aac",
            movflags="+faststart",
            loglevel="error",
        )
        .overwrite_output()
    )
    return ffmpeg.compile(stream, cmd=ffmpeg_bin)


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def transcode_video(
    src: Path,
    out: Path,
    token: CancelToken,
    max_height: int = 1080,
    crf: int = 28,
    timeout: float = 600.0,
    ffmpeg_bin: str = "ffmpeg",
) -> Optional[Path]:
    """Re-encode to H.264/AAC mp4. The ffmpeg process is killed on cancel or timeout."""
    args = transcode_args(src, out, max_height=max_height, crf=crf, ffmpeg_bin=ffmpeg_bin)
    token.raise_if_cancelled()
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TransformFailed(f"could not start {ffmpeg_bin}: {e}") from e

    try:
        _, stderr = await token.guard(asyncio.wait_for(proc.communicate(), timeout))
    except asyncio.TimeoutError as e:
        _kill(proc)
        await proc.wait()
        out.unlink(missing_ok=True)
        raise TransformFailed(f"{ffmpeg_bin} timed out after {timeout}s") from e
    except (UploadCancelled, asyncio.CancelledError):
        _kill(proc)
        await proc.wait()
        logger.info("transcode of %s aborted", src.name)
        raise

    if proc.returncode != 0:
        tail = (stderr or b"").decode(errors="replace")[-400:]
        out.unlink(missing_ok=True)
        raise TransformFailed(f"{ffmpeg_bin} exited {proc.returncode}: {tail}")

    return _keep_smaller(src, out)
