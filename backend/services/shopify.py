# backend/services/shopify.py
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import json
import logging

import httpx

from backend.core.errors import RemoteProtocolError

logger = logging.getLogger("shop_relay.shopify")


STAGED_UPLOADS_CREATE = """
mutation stagedUploadsCreate($input: [StagedUploadInput!]!) {
  stagedUploadsCreate(input: $input) {
    stagedTargets {
      url
      resourceUrl
      parameters {
        name
        value
      }
    }
    userErrors {
      field
      message
    }
  }
}
"""

FILE_CREATE = """
mutation fileCreate($files: [FileCreateInput!]!) {
  fileCreate(files: $files) {
    files {
      id
      fileStatus
      ... on MediaImage {
        image {
          url
        }
      }
      ... on Video {
        sources {
          url
        }
      }
      ... on GenericFile {
        url
      }
    }
    userErrors {
      field
      message
    }
  }
}
"""

FILE_STATUS = """
query getFile($id: ID!) {
  node(id: $id) {
    ... on MediaImage {
      id
      fileStatus
      image {
        url
      }
    }
    ... on Video {
      id
      fileStatus
      sources {
        url
      }
    }
    ... on GenericFile {
      id
      fileStatus
      url
    }
  }
}
"""


@dataclass
class StagedTarget:
    url: str
    resource_url: str
    parameters: List[Tuple[str, str]] = field(default_factory=list)


class ShopifyAdminClient:
    """Thin async wrapper over the Admin GraphQL endpoint and staged-upload targets.

    The access token only ever travels in the ``X-Shopify-Access-Token``
    header of outbound requests; it is masked in anything we log.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        store_domain: Optional[str],
        access_token: Optional[str],
        api_version: str = "2025-04",
    ):
        self.http = http
        self.store_domain = store_domain
        self.access_token = access_token
        self.api_version = api_version

    @property
    def configured(self) -> bool:
        return bool(self.store_domain and self.access_token)

    @property
    def endpoint(self) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"

    def _headers(self) -> Dict[str, str]:
        if not self.configured:
            raise RemoteProtocolError("SHOPIFY_STORE_DOMAIN / SHOPIFY_ADMIN_API_TOKEN missing")
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self.access_token or "",
        }

    def mask(self, text: str, limit: int = 500) -> str:
        snippet = text[:limit]
        if self.access_token:
            snippet = snippet.replace(self.access_token, "***")
        return snippet

    # ---------- raw transport ----------
    async def forward(self, body: bytes) -> httpx.Response:
        """POST an already-encoded GraphQL body as-is (used by the admin proxy)."""
        return await self.http.post(self.endpoint, content=body, headers=self._headers())

    async def graphql(self, query: str, variables: Dict[str, Any] | None = None) -> Dict[str, Any]:
        try:
            r = await self.http.post(
                self.endpoint,
                json={"query": query, "variables": variables or {}},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise RemoteProtocolError(f"Shopify transport error: {e!r}") from e

        if r.status_code != 200:
            logger.error("graphql status=%s body=%s", r.status_code, self.mask(r.text))
            raise RemoteProtocolError(f"Shopify responded {r.status_code}")
        try:
            payload = r.json()
        except json.JSONDecodeError as e:
            raise RemoteProtocolError("Shopify returned non-JSON body") from e

        if payload.get("errors"):
            logger.error("graphql errors=%s", self.mask(json.dumps(payload["errors"])))
            raise RemoteProtocolError("Shopify returned GraphQL errors")
        return payload.get("data") or {}

    # ---------- staged upload protocol ----------
    async def staged_upload_target(self, filename: str, mime_type: str, resource: str, file_size: int) -> StagedTarget:
        data = await self.graphql(STAGED_UPLOADS_CREATE, {
            "input": [{
                "filename": filename,
                "mimeType": mime_type,
                "resource": resource,
                "fileSize": str(file_size),
                "httpMethod": "POST",
            }]
        })
        result = data.get("stagedUploadsCreate") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            logger.error("stagedUploadsCreate userErrors=%s", user_errors)
            raise RemoteProtocolError(
                f"stagedUploadsCreate userErrors: {user_errors}",
                public_message="Failed to get upload URL",
            )
        targets = result.get("stagedTargets") or []
        target = targets[0] if targets else None
        if not target or not target.get("url") or not target.get("resourceUrl"):
            logger.error("stagedUploadsCreate returned no usable target: %s", result)
            raise RemoteProtocolError("no staged target", public_message="Failed to get upload URL")

        params = [(p["name"], p["value"]) for p in (target.get("parameters") or [])]
        return StagedTarget(url=target["url"], resource_url=target["resourceUrl"], parameters=params)

    async def push_to_target(self, target: StagedTarget, path: Path, filename: str, mime_type: str) -> None:
        """Multipart POST of the target's form fields followed by the file bytes."""
        fields: Dict[str, Any] = {}
        for name, value in target.parameters:
            if name in fields:
                prev = fields[name]
                fields[name] = (prev if isinstance(prev, list) else [prev]) + [value]
            else:
                fields[name] = value

        try:
            with Path(path).open("rb") as fh:
                r = await self.http.post(
                    target.url,
                    data=fields,
                    files={"file": (filename, fh, mime_type)},
                )
        except httpx.HTTPError as e:
            raise RemoteProtocolError(f"blob storage transport error: {e!r}", public_message="Storage upload failed") from e

        if not r.is_success:
            logger.error("blob storage upload failed status=%s body=%s", r.status_code, self.mask(r.text))
            raise RemoteProtocolError(f"blob storage responded {r.status_code}", public_message="Storage upload failed")

    async def create_file(self, resource_url: str, content_type: str, alt: str) -> Dict[str, Any]:
        data = await self.graphql(FILE_CREATE, {
            "files": [{
                "alt": alt,
                "contentType": content_type,
                "originalSource": resource_url,
            }]
        })
        result = data.get("fileCreate") or {}
        user_errors = result.get("userErrors") or []
        files = result.get("files") or []
        first = files[0] if files else None
        if user_errors or not first or not first.get("id"):
            logger.error("fileCreate failed userErrors=%s files=%s", user_errors, files)
            raise RemoteProtocolError("fileCreate returned no file", public_message="Failed to create file in Shopify")
        return first

    async def file_node(self, file_id: str) -> Optional[Dict[str, Any]]:
        data = await self.graphql(FILE_STATUS, {"id": file_id})
        return data.get("node")
