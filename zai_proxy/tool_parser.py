"""Recover OpenAI-style tool calls from free-form upstream text.

The upstream has no native function calling; the injected tool prompt asks the
model to answer with a ``{"tool_calls": [...]}`` JSON object. Models do not
always comply with the fenced format, so three strategies are tried in order:
fenced ```json blocks, brace-balanced inline objects, and finally a Chinese
"调用函数: name 参数: {...}" phrasing.
"""
from __future__ import annotations

import json
import re
import time
import uuid
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .config import settings


TOOL_CALL_FENCE_PATTERN = re.compile(r"```json\s*(\{.*?\})\s*```", re.DOTALL)
FUNCTION_CALL_PATTERN = re.compile(
    r"调用函数\s*[：:]\s*([\w\-.]+)\s*(?:参数|arguments)\s*[：:]\s*(?=\{)", re.DOTALL
)


class _ScanState(Enum):
    OUTSIDE = 0
    IN_STRING = 1
    ESCAPE = 2


def find_object_end(text: str, start: int) -> Optional[int]:
    """Return the index just past the ``}`` balancing ``text[start] == "{"``.

    Braces inside JSON string literals are ignored; a backslash inside a string
    escapes the next character. Returns None when the object never closes.
    """
    depth = 0
    state = _ScanState.OUTSIDE
    for pos in range(start, len(text)):
        ch = text[pos]
        if state is _ScanState.ESCAPE:
            state = _ScanState.IN_STRING
        elif state is _ScanState.IN_STRING:
            if ch == "\\":
                state = _ScanState.ESCAPE
            elif ch == '"':
                state = _ScanState.OUTSIDE
        elif ch == '"':
            state = _ScanState.IN_STRING
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return pos + 1
    return None


def iter_balanced_objects(text: str) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, end)`` for every balanced ``{...}`` candidate, nested ones included."""
    pos = text.find("{")
    while pos != -1:
        end = find_object_end(text, pos)
        if end is not None:
            yield pos, end
        pos = text.find("{", pos + 1)


def _loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except (ValueError, RecursionError):
        return None


def _compact_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def normalize_tool_calls(tool_calls: List[Any]) -> List[Dict[str, Any]]:
    """Ensure every call has an id, a type and string-encoded arguments."""
    normalized: List[Dict[str, Any]] = []
    for tc in tool_calls:
        if not isinstance(tc, dict):
            continue
        call = dict(tc)
        func = call.get("function")
        if not isinstance(func, dict) or not isinstance(func.get("name"), str) or not func["name"]:
            continue
        func = dict(func)
        args = func.get("arguments")
        if args is None:
            func["arguments"] = "{}"
        elif not isinstance(args, str):
            func["arguments"] = _compact_json(args)
        call["function"] = func
        call_id = call.get("id")
        call["id"] = call_id if isinstance(call_id, str) and call_id else _new_call_id()
        call["type"] = "function"
        normalized.append(call)
    return normalized


def _tool_calls_from(candidate: str) -> Optional[List[Dict[str, Any]]]:
    parsed = _loads(candidate)
    if not isinstance(parsed, dict):
        return None
    tool_calls = parsed.get("tool_calls")
    if not isinstance(tool_calls, list) or not tool_calls:
        return None
    normalized = normalize_tool_calls(tool_calls)
    return normalized or None


def _from_fenced_blocks(text: str) -> Optional[List[Dict[str, Any]]]:
    for match in TOOL_CALL_FENCE_PATTERN.finditer(text):
        calls = _tool_calls_from(match.group(1))
        if calls:
            return calls
    return None


def _from_inline_objects(text: str) -> Optional[List[Dict[str, Any]]]:
    for start, end in iter_balanced_objects(text):
        calls = _tool_calls_from(text[start:end])
        if calls:
            return calls
    return None


def _from_natural_language(text: str) -> Optional[List[Dict[str, Any]]]:
    match = FUNCTION_CALL_PATTERN.search(text)
    if not match:
        return None
    start = match.end()
    end = find_object_end(text, start)
    if end is None:
        return None
    arguments = text[start:end].strip()
    if _loads(arguments) is None:
        return None
    return [
        {
            "id": f"call_{time.time_ns()}",
            "type": "function",
            "function": {"name": match.group(1).strip(), "arguments": arguments},
        }
    ]


def extract_tool_invocations(text: Optional[str], scan_limit: Optional[int] = None) -> Optional[List[Dict[str, Any]]]:
    """Return the tool calls found in ``text`` or None when there are none."""
    if not text:
        return None
    limit = scan_limit if scan_limit is not None else settings.scan_limit
    scannable = text[:limit]
    for strategy in (_from_fenced_blocks, _from_inline_objects, _from_natural_language):
        calls = strategy(scannable)
        if calls:
            return calls
    return None


def _is_tool_call_json(candidate: str) -> bool:
    parsed = _loads(candidate)
    return isinstance(parsed, dict) and "tool_calls" in parsed


def strip_tool_json(text: Optional[str]) -> str:
    """Remove tool-call JSON (fenced or inline) from text; everything else is kept."""
    if not text:
        return ""

    def _drop_fenced(match: "re.Match[str]") -> str:
        return "" if _is_tool_call_json(match.group(1)) else match.group(0)

    cleaned = TOOL_CALL_FENCE_PATTERN.sub(_drop_fenced, text)

    out: List[str] = []
    pos = 0
    while True:
        brace = cleaned.find("{", pos)
        if brace == -1:
            out.append(cleaned[pos:])
            break
        end = find_object_end(cleaned, brace)
        if end is not None and _is_tool_call_json(cleaned[brace:end]):
            out.append(cleaned[pos:brace])
            pos = end
            continue
        out.append(cleaned[pos : brace + 1])
        pos = brace + 1
    return "".join(out).strip()
