# backend/config.py
from functools import lru_cache
from pathlib import Path
from typing import Optional
import os
from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]

# Load in ascending precedence; later overrides earlier
load_dotenv(ROOT / ".env")
load_dotenv(ROOT / ".env.local", override=True)
load_dotenv(ROOT / "backend" / ".env", override=True)
load_dotenv(ROOT / "backend" / ".env.local", override=True)


def _origins() -> list[str]:
    raw = os.getenv("ALLOWED_ORIGINS") or os.getenv("CLIENT_URL") or "http://localhost:5173"
    return [s.strip() for s in raw.split(",") if s.strip()]


class Settings:
    def __init__(self):
        # Server
        self.PORT: int = int(os.getenv("PORT", "3001"))
        self.DATA_DIR: Path = Path(os.getenv("DATA_DIR", str(ROOT / "data")))
        self.TMP_DIR: Path = Path(os.getenv("TMP_DIR", str(self.DATA_DIR / "tmp" / "uploads")))
        self.MAX_BODY_MB: int = int(os.getenv("MAX_BODY_MB", "500"))

        # CORS
        self.ALLOWED_ORIGINS: list[str] = _origins()

        # Shopify Admin API
        self.SHOPIFY_STORE_DOMAIN: Optional[str] = (os.getenv("SHOPIFY_STORE_DOMAIN") or "").strip() or None
        self.SHOPIFY_ADMIN_API_TOKEN: Optional[str] = (os.getenv("SHOPIFY_ADMIN_API_TOKEN") or "").strip() or None
        self.SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2025-04")
        self.SHOPIFY_HTTP_TIMEOUT: float = float(os.getenv("SHOPIFY_HTTP_TIMEOUT", "60"))

        # Size limits per resource kind
        self.MAX_IMAGE_MB: int = int(os.getenv("MAX_IMAGE_MB", "10"))
        self.MAX_VIDEO_MB: int = int(os.getenv("MAX_VIDEO_MB", "100"))
        self.MAX_FILE_MB: int = int(os.getenv("MAX_FILE_MB", "20"))

        # Ready polling
        self.POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
        self.POLL_MAX_ATTEMPTS: int = int(os.getenv("POLL_MAX_ATTEMPTS", "30"))

        # Job retention
        self.JOB_RETENTION_SECONDS: float = float(os.getenv("JOB_RETENTION_SECONDS", "3600"))
        self.SWEEP_INTERVAL_SECONDS: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))

        # Media transforms
        self.IMAGE_MAX_DIMENSION: int = int(os.getenv("IMAGE_MAX_DIMENSION", "2048"))
        self.IMAGE_QUALITY: int = int(os.getenv("IMAGE_QUALITY", "85"))
        self.VIDEO_MAX_HEIGHT: int = int(os.getenv("VIDEO_MAX_HEIGHT", "1080"))
        self.VIDEO_CRF: int = int(os.getenv("VIDEO_CRF", "28"))
        self.TRANSCODE_TIMEOUT_SECONDS: float = float(os.getenv("TRANSCODE_TIMEOUT_SECONDS", "600"))
        self.FFMPEG_BIN: str = os.getenv("FFMPEG_BIN", "ffmpeg")

    @property
    def shopify_configured(self) -> bool:
        return bool(self.SHOPIFY_STORE_DOMAIN and self.SHOPIFY_ADMIN_API_TOKEN)


@lru_cache
def get_settings() -> Settings:
    return Settings()
