"""Turn the upstream SSE event stream into OpenAI-compatible responses.

Streaming clients get the upstream bytes forwarded untouched. Non-streaming
clients get a single ``chat.completion`` object assembled from the same event
stream, with tool calls recovered from the answer text when tools were
offered.
"""
from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .errors import (
    ClientDisconnectedError,
    MalformedUpstreamEventError,
    UpstreamReportedError,
    UpstreamUnavailableError,
)
from .log import debug_log, log_event
from .schemas.openai import ChatCompletionResponse, Choice, ResponseMessage, ToolCall, Usage
from .schemas.upstream import UpstreamEvent
from .tool_parser import extract_tool_invocations, strip_tool_json


SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

DONE_MARKER = "[DONE]"

_DETAILS_OPEN_RE = re.compile(r"<details[^>]*>")
_SUMMARY_RE = re.compile(r"<summary>.*?</summary>", re.DOTALL)


def map_finish_reason(fr: Optional[str]) -> str:
    if not fr:
        return "stop"
    fr = fr.lower()
    if fr in ("length", "max_tokens"):
        return "length"
    if fr in ("tool_calls", "function_call", "tool_use"):
        return "tool_calls"
    if fr in ("content_filter", "sensitive"):
        return "content_filter"
    return "stop"


def parse_sse_line(line: str) -> Optional[UpstreamEvent]:
    """Decode one SSE line; non-data lines, blanks and ``[DONE]`` yield None."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:") :].strip()
    if not payload or payload == DONE_MARKER:
        return None
    try:
        obj = json.loads(payload)
    except ValueError as e:
        raise MalformedUpstreamEventError(f"Malformed upstream event: {e}: {payload[:200]!r}") from e
    if not isinstance(obj, dict):
        raise MalformedUpstreamEventError(f"Malformed upstream event: expected object, got {type(obj).__name__}")
    if obj.get("data") is None:
        obj.pop("data", None)
    try:
        return UpstreamEvent.model_validate(obj)
    except ValidationError as e:
        raise MalformedUpstreamEventError(f"Malformed upstream event: {e.error_count()} validation error(s)") from e


def is_done_marker(line: str) -> bool:
    line = line.strip()
    return line.startswith("data:") and line[len("data:") :].strip() == DONE_MARKER


def clean_reasoning(text: str) -> str:
    """Drop the <details>/<summary> wrapper and quote markers the upstream puts around reasoning."""
    if not text:
        return ""
    text = _SUMMARY_RE.sub("", text)
    text = _DETAILS_OPEN_RE.sub("", text)
    text = text.replace("</details>", "")
    text = text.replace("\n> ", "\n")
    if text.startswith("> "):
        text = text[2:]
    return text


class CompletionAggregator:
    """Accumulates upstream events into one OpenAI completion."""

    def __init__(self, model: str, tools_active: bool = False, scan_limit: Optional[int] = None) -> None:
        self.model = model
        self.tools_active = tools_active
        self.scan_limit = scan_limit
        self.content: List[str] = []
        self.reasoning: List[str] = []
        self.thinking_open = False
        self.finish_reason: Optional[str] = None
        self.usage: Optional[Dict[str, Any]] = None
        self.done = False

    def feed(self, event: UpstreamEvent) -> None:
        message = event.error_message()
        if message:
            raise UpstreamReportedError(f"Upstream error: {message}")
        data = event.data
        if data.usage:
            self.usage = data.usage
        if data.finish_reason:
            self.finish_reason = data.finish_reason

        phase = data.phase
        if phase == "thinking":
            self.thinking_open = True
            if data.delta_content:
                self.reasoning.append(data.delta_content)
        elif phase == "answer":
            if self.thinking_open or "</details>" in data.edit_content:
                self.thinking_open = False
                if "</details>" in data.edit_content:
                    self.content.append(data.edit_content.split("</details>")[-1])
            if data.delta_content:
                self.content.append(data.delta_content)
        elif data.delta_content:
            self.content.append(data.delta_content)

        if data.done or phase == "done":
            self.done = True

    def finalize(self, completion_id: Optional[str] = None) -> Dict[str, Any]:
        content = "".join(self.content)
        reasoning = clean_reasoning("".join(self.reasoning)).strip()

        tool_calls = extract_tool_invocations(content, self.scan_limit) if self.tools_active else None
        if tool_calls:
            content = strip_tool_json(content)
            finish_reason = "tool_calls"
            debug_log("tool calls extracted", count=len(tool_calls))
        else:
            finish_reason = map_finish_reason(self.finish_reason)
            if finish_reason == "tool_calls":
                finish_reason = "stop"

        usage = Usage()
        if self.usage:
            try:
                usage = Usage.model_validate({k: v for k, v in self.usage.items() if k in Usage.model_fields})
            except ValidationError:
                usage = Usage()

        message = ResponseMessage(
            content=content if (content or not tool_calls) else None,
            reasoning_content=reasoning or None,
            tool_calls=[ToolCall.model_validate(tc) for tc in tool_calls] if tool_calls else None,
        )
        response = ChatCompletionResponse(
            id=completion_id or f"chatcmpl-{uuid.uuid4().hex}",
            created=int(time.time()),
            model=self.model,
            choices=[Choice(index=0, message=message, finish_reason=finish_reason)],
            usage=usage,
        )
        out = response.model_dump(exclude_none=True)
        # OpenAI clients expect an explicit null content next to tool calls
        out["choices"][0]["message"].setdefault("content", None)
        return out


async def aggregate_stream(
    lines: AsyncIterator[str],
    model: str,
    tools_active: bool = False,
    scan_limit: Optional[int] = None,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    completion_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Consume upstream SSE lines and return a single completion dict.

    Read failures and undecodable events raise; nothing partial is returned.
    """
    aggregator = CompletionAggregator(model, tools_active=tools_active, scan_limit=scan_limit)
    try:
        async for line in lines:
            if is_disconnected is not None and await is_disconnected():
                raise ClientDisconnectedError("client disconnected during aggregation")
            if is_done_marker(line):
                break
            event = parse_sse_line(line)
            if event is None:
                continue
            aggregator.feed(event)
            if aggregator.done:
                break
    except httpx.HTTPError as e:
        raise UpstreamUnavailableError(f"Upstream stream failed: {type(e).__name__}: {e}") from e
    if not aggregator.done:
        debug_log("upstream stream ended without done event")
    return aggregator.finalize(completion_id)


async def passthrough_stream(response: httpx.Response) -> AsyncIterator[bytes]:
    """Forward upstream bytes unchanged; the upstream response is always closed."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        # Headers are already sent; all that is left is to end the stream.
        log_event(logging.ERROR, "upstream stream interrupted", error=f"{type(e).__name__}: {e}")
    finally:
        await response.aclose()
