from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import settings
from .errors import (
    AuthenticationError,
    ClientDisconnectedError,
    InvalidRequestError,
    ProxyError,
    UnsupportedModelError,
    UpstreamStatusError,
    openai_error_body,
)
from .log import debug_log, log_event, preview, setup_logging
from .model_mapping import MappingCache
from .responses import SSE_HEADERS, SSE_MEDIA_TYPE, aggregate_stream, passthrough_stream
from .schemas.openai import ChatCompletionRequest, ModelCard, ModelsResponse
from .transform import process_messages, tools_active
from .upstream import (
    ModelCatalog,
    _get_httpx_client,
    build_upstream_request,
    builtin_model_list,
    close_httpx_client,
    generate_request_ids,
    get_auth_token,
    open_chat_stream,
)


setup_logging(settings.log_level)

app = FastAPI(title="Z.AI OpenAI-Compatible Proxy")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# One mapping cache per process, handed to handlers through dependencies
app.state.model_cache = MappingCache()
app.state.model_catalog = ModelCatalog(app.state.model_cache)


def get_model_cache(request: Request) -> MappingCache:
    return request.app.state.model_cache


def get_model_catalog(request: Request) -> ModelCatalog:
    return request.app.state.model_catalog


def verify_client_token(authorization: Optional[str] = Header(default=None, alias="authorization")) -> None:
    if settings.skip_auth_token:
        debug_log("SKIP_AUTH_TOKEN enabled, client auth skipped")
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing or invalid Authorization header")
    api_key = authorization[len("Bearer ") :]
    if api_key != settings.auth_token:
        debug_log("invalid client api key", api_key=preview(api_key, 8))
        raise AuthenticationError("Invalid API key")


@app.exception_handler(ProxyError)
async def _proxy_error_handler(request: Request, exc: ProxyError) -> Response:
    if isinstance(exc, UpstreamStatusError):
        # Forward the upstream status and body untouched
        return Response(content=exc.body, status_code=exc.status_code, media_type=exc.content_type)
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    log_event(level, "request failed", path=request.url.path, status=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
async def root():
    return {"message": "OpenAI Compatible API Server"}


@app.get("/v1/models")
async def list_models(catalog: ModelCatalog = Depends(get_model_catalog)):
    try:
        models = await catalog.get_available_models()
    except Exception as e:
        log_event(logging.WARNING, "model listing failed, using builtin list", error=str(e))
        models = builtin_model_list()
    now = int(time.time())
    cards = [
        ModelCard(id=m["id"], created=m.get("created") or now, owned_by=m.get("owned_by") or "z.ai")
        for m in models
    ]
    debug_log("models listed", count=len(cards))
    return ModelsResponse(data=cards).model_dump()


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    _auth: None = Depends(verify_client_token),
    cache: MappingCache = Depends(get_model_cache),
):
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestError("Invalid JSON body")
    try:
        parsed = ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError(str(e))
    debug_log(
        "chat completion request",
        model=parsed.model,
        stream=bool(parsed.stream),
        messages=len(parsed.messages),
        tools=len(parsed.tools or []),
    )

    upstream_cfg = cache.resolve(parsed.model)
    if upstream_cfg is None:
        raise UnsupportedModelError(parsed.model)

    has_tools = tools_active(parsed.tools, parsed.tool_choice)
    messages = process_messages(
        parsed.messages,
        parsed.tools,
        parsed.tool_choice,
        enable_thinking=settings.thinking_prompt,
    )

    chat_id, message_id = generate_request_ids()
    upstream_req = build_upstream_request(messages, upstream_cfg, chat_id, message_id)
    token = await get_auth_token()

    upstream = await open_chat_stream(upstream_req, chat_id, token)
    if not upstream.is_success:
        try:
            error_body = await upstream.aread()
        finally:
            await upstream.aclose()
        log_event(logging.WARNING, "upstream error status", status=upstream.status_code, body=error_body[:500])
        raise UpstreamStatusError(upstream.status_code, error_body, upstream.headers.get("content-type"))

    if parsed.stream:
        debug_log("passing upstream stream through", chat_id=chat_id)
        return StreamingResponse(passthrough_stream(upstream), media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS)

    try:
        completion = await aggregate_stream(
            upstream.aiter_lines(),
            model=parsed.model,
            tools_active=has_tools,
            scan_limit=settings.scan_limit,
            is_disconnected=request.is_disconnected,
        )
    except ClientDisconnectedError:
        log_event(logging.INFO, "client disconnected, upstream read aborted", chat_id=chat_id)
        return Response(status_code=499)
    finally:
        await upstream.aclose()
    return JSONResponse(content=completion)


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> Response:
    log_event(logging.ERROR, "unhandled error", path=request.url.path, error=f"{type(exc).__name__}: {exc}")
    return JSONResponse(status_code=500, content=openai_error_body(f"Internal server error: {exc}"))


_background_tasks: set = set()


@app.on_event("startup")
async def _startup_warm_up():
    # Initialize shared HTTP client eagerly to establish pools
    _ = _get_httpx_client()
    if settings.discovery_on_startup:
        task = asyncio.create_task(app.state.model_catalog.discover())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)


@app.on_event("shutdown")
async def _shutdown_close_client():
    for task in list(_background_tasks):
        task.cancel()
    await close_httpx_client()


def run() -> None:
    import uvicorn

    log_event(
        logging.INFO,
        "server starting",
        port=settings.listen_port,
        models_url=f"http://localhost:{settings.listen_port}/v1/models",
    )
    uvicorn.run(app, host="0.0.0.0", port=settings.listen_port)


if __name__ == "__main__":
    run()
