# backend/services/storage.py
from __future__ import annotations
from pathlib import Path
import os

from fastapi import UploadFile

from backend.core.errors import FileTooLarge

CHUNK_SIZE = 1024 * 1024  # 1MB


def safe_name(name: str) -> str:
    base = os.path.basename(name or "")
    return "".join(c for c in base if c.isalnum() or c in ("-", "_", ".", " ")).strip() or "file"


def temp_path_for(tmp_dir: Path, job_id: str, filename: str, tag: str = "original") -> Path:
    """Temp files are named after the job so a stray file can be traced back to it."""
    suffix = Path(safe_name(filename)).suffix.lower()
    return tmp_dir / f"{job_id}.{tag}{suffix}"


async def write_upload_stream(dest_path: Path, up: UploadFile, max_bytes: int) -> int:
    """Stream an upload to disk, stopping as soon as it passes ``max_bytes``."""
    written = 0
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with dest_path.open("wb") as buf:
            while True:
                chunk = await up.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise FileTooLarge(
                        f"upload passed {max_bytes} bytes",
                        public_message=f"File too large (> {max_bytes // (1024 * 1024)} MB)",
                    )
                buf.write(chunk)
    except BaseException:
        dest_path.unlink(missing_ok=True)
        raise
    return written
