from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional
import asyncio
import logging

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import Settings, get_settings
from backend.core.registry import UploadJobTracker
from backend.core.scheduler import RecurringTask
from backend.services.driver import StagedUploadDriver
from backend.services.shopify import ShopifyAdminClient

from .middleware_logging import register_request_logging
from .error_handlers import register_error_handlers

from backend.routers.uploads import router as uploads_router
from backend.routers.proxy import router as proxy_router
from backend.routers.health import router as health_router

logger = logging.getLogger("shop_relay.app")

VERSION = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    tracker: Optional[UploadJobTracker] = None,
) -> FastAPI:
    """
    Build the relay app. Everything stateful (job table, HTTP client, clock)
    can be injected so tests run against a mock transport without waiting;
    ``sleep`` only paces ready polling, the sweeper keeps real time.
    """
    settings = settings or get_settings()

    # =========================
    # ---- Dirs / State ----
    # =========================
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    settings.TMP_DIR.mkdir(parents=True, exist_ok=True)

    http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.SHOPIFY_HTTP_TIMEOUT, connect=10.0))
    if tracker is None:
        tracker = UploadJobTracker(retention_seconds=settings.JOB_RETENTION_SECONDS)
    shopify = ShopifyAdminClient(
        http,
        settings.SHOPIFY_STORE_DOMAIN,
        settings.SHOPIFY_ADMIN_API_TOKEN,
        api_version=settings.SHOPIFY_API_VERSION,
    )
    driver = StagedUploadDriver(tracker, shopify, settings, sleep=sleep)
    sweeper = RecurringTask("job-sweep", tracker.sweep, settings.SWEEP_INTERVAL_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.shopify_configured:
            logger.warning("SHOPIFY_STORE_DOMAIN / SHOPIFY_ADMIN_API_TOKEN not set; uploads will fail")
        sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            await http.aclose()

    # =========================
    # ---- App Init ----
    # =========================
    app = FastAPI(title="Shop Media Relay", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.tracker = tracker
    app.state.shopify = shopify
    app.state.driver = driver
    app.state.sweeper = sweeper

    register_request_logging(app, max_body_mb=settings.MAX_BODY_MB)
    register_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type"],
    )

    @app.get("/")
    def root():
        return {"message": "Shop media relay is running"}

    app.include_router(uploads_router)
    app.include_router(proxy_router)
    app.include_router(health_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().PORT)
