# backend/routers/proxy.py
from __future__ import annotations
import json
import logging

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backend.core.errors import UploadError
from backend.services.shopify import ShopifyAdminClient

logger = logging.getLogger("shop_relay.proxy")

router = APIRouter(tags=["proxy"])


@router.post("/shopify-admin-proxy")
async def shopify_admin_proxy(request: Request):
    """
    Forward the browser's GraphQL body to the Admin API with the store token
    attached server side. The platform's JSON comes back untouched.
    """
    shopify: ShopifyAdminClient = request.app.state.shopify
    body = await request.body()
    try:
        r = await shopify.forward(body)
        if not r.is_success:
            logger.error("proxy upstream status=%s body=%s", r.status_code, shopify.mask(r.text))
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        return JSONResponse(r.json())
    except (httpx.HTTPError, json.JSONDecodeError, UploadError) as e:
        logger.error("proxy error: %r", e)
        return JSONResponse({"error": "Internal server error"}, status_code=500)
