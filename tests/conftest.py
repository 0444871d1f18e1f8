import asyncio
import json
from pathlib import Path

import httpx
import pytest

from backend.config import Settings
from backend.core.registry import UploadJobTracker
from backend.services.driver import StagedUploadDriver
from backend.services.shopify import ShopifyAdminClient

STORE = "test-shop.myshopify.com"
TOKEN = "shpat_test_secret"
BLOB_HOST = "uploads.example.com"


class FakeShopify:
    """Scriptable stand-in for the Admin GraphQL endpoint and the staged blob store."""

    def __init__(self):
        self.calls = []
        self.staged_user_errors = []
        self.created_file = {"id": "gid://shopify/GenericFile/1", "fileStatus": "UPLOADED", "url": None}
        self.file_create_user_errors = []
        self.nodes = [{"id": "gid://shopify/GenericFile/1", "fileStatus": "READY", "url": "https://cdn.shopify.com/f/doc.pdf"}]
        self.blob_status = 201
        self.blob_hook = None
        self.proxy_status = 200

    def ops(self, name):
        return [c for c in self.calls if c["op"] == name]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        if request.url.host == BLOB_HOST:
            self.calls.append({"op": "blob", "body": request.content, "headers": dict(request.headers)})
            if self.blob_hook is not None:
                await self.blob_hook()
            if self.blob_status >= 300:
                return httpx.Response(self.blob_status, text="<Error><Code>AccessDenied</Code></Error>")
            return httpx.Response(self.blob_status)

        body = json.loads(request.content or b"{}")
        query = body.get("query", "")
        call = {"headers": dict(request.headers), "variables": body.get("variables"), "body": body}

        if "stagedUploadsCreate" in query:
            self.calls.append({"op": "staged", **call})
            targets = [] if self.staged_user_errors else [{
                "url": f"https://{BLOB_HOST}/bucket",
                "resourceUrl": f"https://{BLOB_HOST}/bucket/tmp/123/file",
                "parameters": [
                    {"name": "key", "value": "tmp/123/file"},
                    {"name": "policy", "value": "abc"},
                ],
            }]
            return httpx.Response(200, json={"data": {"stagedUploadsCreate": {
                "stagedTargets": targets, "userErrors": self.staged_user_errors,
            }}})

        if "fileCreate" in query:
            self.calls.append({"op": "fileCreate", **call})
            files = [] if self.file_create_user_errors else [self.created_file]
            return httpx.Response(200, json={"data": {"fileCreate": {
                "files": files, "userErrors": self.file_create_user_errors,
            }}})

        if "getFile" in query:
            n = len(self.ops("node"))
            self.calls.append({"op": "node", **call})
            node = self.nodes[min(n, len(self.nodes) - 1)]
            return httpx.Response(200, json={"data": {"node": node}})

        self.calls.append({"op": "proxy", **call})
        if self.proxy_status != 200:
            return httpx.Response(self.proxy_status, text="upstream broke")
        return httpx.Response(200, json={"data": {"shop": {"name": "Test Shop"}}, "extensions": {"cost": 1}})


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("TMP_DIR", str(tmp_path / "tmp"))
    monkeypatch.setenv("SHOPIFY_STORE_DOMAIN", STORE)
    monkeypatch.setenv("SHOPIFY_ADMIN_API_TOKEN", TOKEN)
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("POLL_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("MAX_IMAGE_MB", "10")
    s = Settings()
    s.TMP_DIR.mkdir(parents=True, exist_ok=True)
    return s


@pytest.fixture
def fake_shopify():
    return FakeShopify()


@pytest.fixture
def http_client(fake_shopify):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_shopify.handler))


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def tracker():
    return UploadJobTracker()


@pytest.fixture
def make_driver(settings, tracker, http_client, sleeper):
    def _make(**kwargs):
        kwargs.setdefault("transformers", {})
        kwargs.setdefault("sleep", sleeper)
        shopify = ShopifyAdminClient(http_client, STORE, TOKEN, api_version=settings.SHOPIFY_API_VERSION)
        return StagedUploadDriver(tracker, shopify, settings, **kwargs)
    return _make


@pytest.fixture
def staged_file(settings, tracker):
    """Register a job and drop its 'received' bytes in the temp dir, the way the router does."""
    def _stage(kind="generic", filename="doc.pdf", content=b"%PDF-1.4 fake"):
        job_id = tracker.register(filename, kind)
        path = Path(settings.TMP_DIR) / f"{job_id}.original{Path(filename).suffix}"
        path.write_bytes(content)
        tracker.add_temp_resource(job_id, path)
        return job_id, path
    return _stage
