# backend/routers/health.py
from collections import Counter
from fastapi import APIRouter, Request

from backend.config import Settings

router = APIRouter()


@router.get("/health")
def health_check(request: Request):
    s: Settings = request.app.state.settings
    jobs = request.app.state.tracker.list_jobs()
    return {
        "status": "ok",
        "version": request.app.version,
        "shopify_configured": s.shopify_configured,
        "jobs": dict(Counter(j.status.value for j in jobs)),
        "sweeper_running": request.app.state.sweeper.running,
    }


@router.get("/health/env")
def env_preview(request: Request):
    s: Settings = request.app.state.settings
    return {
        "status": "ok",
        # server
        "PORT": s.PORT,
        "DATA_DIR": str(s.DATA_DIR.resolve()),
        "TMP_DIR": str(s.TMP_DIR.resolve()),
        "ALLOWED_ORIGINS": s.ALLOWED_ORIGINS,
        # Shopify (no secrets)
        "SHOPIFY": {
            "store_domain": s.SHOPIFY_STORE_DOMAIN,
            "api_version": s.SHOPIFY_API_VERSION,
            "token_set": bool(s.SHOPIFY_ADMIN_API_TOKEN),
        },
        "LIMITS_MB": {
            "image": s.MAX_IMAGE_MB,
            "video": s.MAX_VIDEO_MB,
            "file": s.MAX_FILE_MB,
            "body": s.MAX_BODY_MB,
        },
        "POLL": {
            "interval_s": s.POLL_INTERVAL_SECONDS,
            "max_attempts": s.POLL_MAX_ATTEMPTS,
        },
        "RETENTION": {
            "job_retention_s": s.JOB_RETENTION_SECONDS,
            "sweep_interval_s": s.SWEEP_INTERVAL_SECONDS,
        },
    }
