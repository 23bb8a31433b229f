from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import settings
from .errors import UpstreamUnavailableError
from .log import debug_log, log_event, preview, redact_headers
from .model_mapping import BUILTIN_MODEL_MAPPINGS, MappingCache, UpstreamConfig
from .schemas.upstream import ModelItem, UpstreamMessage, UpstreamRequest


_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/140.0.0.0 Safari/537.36 Edg/140.0.0.0"
)

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # h2 not installed
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


async def close_httpx_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        client, _HTTPX_CLIENT = _HTTPX_CLIENT, None
        await client.aclose()


def browser_headers() -> Dict[str, str]:
    return {
        "Accept": "*/*",
        "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
        "Cache-Control": "no-cache",
        "Origin": settings.upstream_origin,
        "Referer": f"{settings.upstream_origin}/",
        "User-Agent": _USER_AGENT,
        "X-FE-Version": settings.fe_version,
        "sec-ch-ua": '"Chromium";v="140", "Not=A?Brand";v="24", "Microsoft Edge";v="140"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Linux"',
    }


def generate_request_ids() -> Tuple[str, str]:
    """Return (chat_id, message_id) for a fresh upstream conversation."""
    return str(uuid.uuid4()), str(int(time.time() * 1000))


def _discovery_timeout() -> httpx.Timeout:
    return httpx.Timeout(settings.discovery_timeout)


def _chat_timeout() -> httpx.Timeout:
    return httpx.Timeout(settings.chat_timeout, connect=settings.chat_connect_timeout)


async def get_anonymous_token() -> str:
    """Fetch a guest token from the upstream."""
    client = _get_httpx_client()
    headers = {**browser_headers(), "Accept": "application/json"}
    try:
        resp = await client.get(settings.auth_endpoint, headers=headers, timeout=_discovery_timeout())
    except httpx.HTTPError as e:
        raise UpstreamUnavailableError(f"Anonymous token request failed: {e}") from e
    if not resp.is_success:
        raise UpstreamUnavailableError(f"Anonymous token request returned HTTP {resp.status_code}")
    try:
        token = (resp.json() or {}).get("token")
    except ValueError as e:
        raise UpstreamUnavailableError("Anonymous token response is not JSON") from e
    if not token:
        raise UpstreamUnavailableError("Anonymous token response has no token")
    return str(token)


async def get_auth_token() -> str:
    """Upstream bearer token: guest token when enabled, else the configured backup."""
    if settings.anonymous_mode:
        try:
            token = await get_anonymous_token()
            debug_log("anonymous token acquired", token=preview(token))
            return token
        except UpstreamUnavailableError as e:
            log_event(logging.WARNING, "anonymous token unavailable, using backup token", error=str(e))
    if settings.backup_token:
        return settings.backup_token
    raise UpstreamUnavailableError("No upstream token available (anonymous mode failed and BACKUP_TOKEN unset)")


def build_upstream_request(
    messages: List[Dict[str, Any]],
    upstream: UpstreamConfig,
    chat_id: str,
    message_id: str,
) -> UpstreamRequest:
    enable_thinking = bool(settings.force_thinking or upstream.features.enable_thinking)
    return UpstreamRequest(
        stream=True,
        chat_id=chat_id,
        id=message_id,
        model=upstream.upstream_model_id,
        messages=[
            UpstreamMessage(
                role=m["role"],
                content=m.get("content") or "",
                reasoning_content=m.get("reasoning_content"),
            )
            for m in messages
        ],
        features={
            "enable_thinking": enable_thinking,
            "web_search": bool(upstream.features.web_search),
            "auto_web_search": bool(upstream.features.auto_web_search),
        },
        mcp_servers=list(upstream.mcp_servers),
        model_item=ModelItem(id=upstream.upstream_model_id, name=upstream.upstream_model_name),
        variables={
            "{{USER_NAME}}": "User",
            "{{USER_LOCATION}}": "Unknown",
            "{{CURRENT_DATETIME}}": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        },
    )


async def open_chat_stream(upstream_req: UpstreamRequest, chat_id: str, token: str) -> httpx.Response:
    """Send the chat request and return the response with its body still unread.

    The caller owns the response and must ``aclose()`` it.
    """
    client = _get_httpx_client()
    headers = {
        **browser_headers(),
        "Accept": "text/event-stream",
        "Content-Type": "application/json",
        "Authorization": f"Bearer {token}",
        "Referer": f"{settings.upstream_origin}/c/{chat_id}",
    }
    debug_log(
        "upstream request",
        url=settings.api_endpoint,
        headers=redact_headers(headers),
        model=upstream_req.model,
        features=upstream_req.features,
        mcp_servers=upstream_req.mcp_servers,
        messages=len(upstream_req.messages),
    )
    request = client.build_request(
        "POST",
        settings.api_endpoint,
        json=upstream_req.model_dump(exclude_none=True),
        headers=headers,
        timeout=_chat_timeout(),
    )
    try:
        return await client.send(request, stream=True)
    except httpx.HTTPError as e:
        raise UpstreamUnavailableError(f"Upstream API call failed: {type(e).__name__}: {e}") from e


async def fetch_latest_models() -> List[Dict[str, Any]]:
    """Upstream model list; any failure yields an empty list."""
    try:
        token = await get_anonymous_token()
    except UpstreamUnavailableError as e:
        debug_log("model discovery skipped, no token", error=str(e))
        return []
    headers = {**browser_headers(), "Accept": "application/json", "Authorization": f"Bearer {token}"}
    client = _get_httpx_client()
    try:
        resp = await client.get(settings.models_endpoint, headers=headers, timeout=_discovery_timeout())
        if not resp.is_success:
            debug_log("model discovery failed", status=resp.status_code)
            return []
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        debug_log("model discovery error", error=f"{type(e).__name__}: {e}")
        return []
    items = data.get("data") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return []
    models = [it for it in items if isinstance(it, dict) and it.get("id")]
    debug_log("model discovery ok", count=len(models))
    return models


def builtin_model_list() -> List[Dict[str, Any]]:
    now = int(time.time())
    return [
        {"id": model_id, "name": model_id, "created": now, "owned_by": mapping.owned_by}
        for model_id, mapping in BUILTIN_MODEL_MAPPINGS.items()
    ]


class ModelCatalog:
    """Keeps a MappingCache warm from the upstream model list."""

    def __init__(self, cache: MappingCache) -> None:
        self.cache = cache
        self._lock = asyncio.Lock()

    async def discover(self) -> bool:
        """Fetch and refresh unless the cache is still fresh. Never raises."""
        if self.cache.is_fresh():
            return False
        async with self._lock:
            if self.cache.is_fresh():
                return False
            try:
                models = await fetch_latest_models()
            except Exception as e:  # discovery must never break a request
                log_event(logging.WARNING, "model discovery crashed", error=f"{type(e).__name__}: {e}")
                return False
            if not models:
                return False
            return self.cache.refresh(models)

    async def get_available_models(self) -> List[Dict[str, Any]]:
        try:
            await self.discover()
            return self.cache.list_all()
        except Exception as e:
            log_event(logging.WARNING, "model listing failed, using builtin models", error=str(e))
            return builtin_model_list()
