from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from .config import settings


DEFAULT_SYSTEM_PERSONA = "你是一个有用的助手。"
DEFAULT_THINKING_PERSONA = "你是一个有用的AI助手。"

TOOL_CATALOG_MARKER = "# AVAILABLE FUNCTIONS"
THINKING_MARKER = "<thinking>"

TOOL_CHOICE_HINT = "\n\n请根据需要使用提供的工具函数。"
TOOL_CHOICE_NAMED_HINT = "\n\n请使用 {name} 函数来处理这个请求。"

THINKING_INSTRUCTION = """

在回答之前，请在 <thinking> 标签中进行思考分析：
- 仔细分析用户的问题和需求
- 考虑可能的解决方案和方法
- 评估答案的准确性和完整性
- 组织回答的结构和逻辑

然后给出你的最终回答。请确保你的思考过程清晰且有条理。"""

_USAGE_INSTRUCTIONS = (
    "\n\n# USAGE INSTRUCTIONS\n"
    "When you need to execute a function, respond ONLY with a JSON object containing tool_calls:\n"
    "```json\n"
    "{\n"
    '  "tool_calls": [\n'
    "    {\n"
    '      "id": "call_xxx",\n'
    '      "type": "function",\n'
    '      "function": {\n'
    '        "name": "function_name",\n'
    '        "arguments": "{\\"param1\\": \\"value1\\"}"\n'
    "      }\n"
    "    }\n"
    "  ]\n"
    "}\n"
    "```\n"
    "Important: No explanatory text before or after the JSON. "
    "The 'arguments' field must be a JSON string, not an object.\n"
)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Accept pydantic models or plain dicts for messages/tools."""
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump(exclude_none=True)
    return {}


def content_to_string(content: Any) -> str:
    """Collapse message content (string, list of typed parts, or JSON) into one string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
                continue
            part = _as_dict(part)
            if part.get("type") == "text":
                parts.append(part.get("text") or "")
        return " ".join(parts)
    if hasattr(content, "model_dump"):
        content = content.model_dump(exclude_none=True)
    try:
        return json.dumps(content, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        return str(content)


def generate_tool_prompt(tools: Optional[Iterable[Any]]) -> str:
    """Render the function catalog appended to the system prompt."""
    if not tools:
        return ""
    definitions: List[str] = []
    for tool in tools:
        tool = _as_dict(tool)
        if tool.get("type", "function") != "function":
            continue
        spec = tool.get("function")
        if not isinstance(spec, dict):
            continue
        name = spec.get("name") or "unknown"
        info = [f"## {name}", f"**Purpose**: {spec.get('description') or ''}"]

        parameters = spec.get("parameters") or {}
        properties = parameters.get("properties") if isinstance(parameters, dict) else None
        if isinstance(properties, dict) and properties:
            required = set(parameters.get("required") or [])
            info.append("**Parameters**:")
            for param_name, details in properties.items():
                details = details if isinstance(details, dict) else {}
                flag = "**Required**" if param_name in required else "*Optional*"
                info.append(
                    f"- `{param_name}` ({details.get('type', 'unknown')}) - {flag}: {details.get('description', '')}"
                )
        definitions.append("\n".join(info))

    if not definitions:
        return ""
    return f"\n\n{TOOL_CATALOG_MARKER}\n" + "\n\n---\n".join(definitions) + _USAGE_INSTRUCTIONS


def tools_active(tools: Optional[Iterable[Any]], tool_choice: Any, tool_support: Optional[bool] = None) -> bool:
    enabled = settings.tool_support if tool_support is None else tool_support
    return bool(enabled and tools and tool_choice != "none")


def _tool_choice_function_name(tool_choice: Any) -> Optional[str]:
    choice = _as_dict(tool_choice)
    if choice.get("type") != "function":
        return None
    func = choice.get("function")
    if isinstance(func, dict):
        return func.get("name") or None
    return None


def _tool_result_as_assistant(message: Dict[str, Any]) -> Dict[str, Any]:
    # The upstream has no tool-result role; quote the result as assistant text.
    name = message.get("name") or "unknown"
    result = content_to_string(message.get("content"))
    if result.strip():
        text = f"工具 {name} 返回结果:\n```json\n{result}\n```"
    else:
        text = f"工具 {name} 执行完成"
    return {"role": "assistant", "content": text}


def process_messages_with_tools(
    messages: Iterable[Any],
    tools: Optional[Iterable[Any]] = None,
    tool_choice: Any = None,
    tool_support: Optional[bool] = None,
) -> List[Dict[str, Any]]:
    """Inject the tool catalog and normalize every message to string content."""
    msgs = [dict(_as_dict(m)) for m in messages]
    tools = list(tools or [])

    if tools_active(tools, tool_choice, tool_support):
        tools_prompt = generate_tool_prompt(tools)
        if any(m.get("role") == "system" for m in msgs):
            for m in msgs:
                if m.get("role") != "system":
                    continue
                text = content_to_string(m.get("content"))
                if TOOL_CATALOG_MARKER not in text:
                    text += tools_prompt
                m["content"] = text
        else:
            msgs.insert(0, {"role": "system", "content": DEFAULT_SYSTEM_PERSONA + tools_prompt})

        hint: Optional[str] = None
        if tool_choice in ("required", "auto"):
            hint = TOOL_CHOICE_HINT
        else:
            fname = _tool_choice_function_name(tool_choice)
            if fname:
                hint = TOOL_CHOICE_NAMED_HINT.format(name=fname)
        if hint and msgs and msgs[-1].get("role") == "user":
            msgs[-1]["content"] = content_to_string(msgs[-1].get("content")) + hint

    final: List[Dict[str, Any]] = []
    for m in msgs:
        if m.get("role") in ("tool", "function"):
            final.append(_tool_result_as_assistant(m))
            continue
        out: Dict[str, Any] = {"role": m.get("role"), "content": content_to_string(m.get("content"))}
        if m.get("reasoning_content"):
            out["reasoning_content"] = m["reasoning_content"]
        final.append(out)
    return final


def add_thinking_prompt(messages: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Ask the model to reason inside <thinking> tags; idempotent."""
    msgs = [dict(m) for m in messages]
    for m in msgs:
        if m.get("role") == "system":
            text = content_to_string(m.get("content"))
            if THINKING_MARKER not in text:
                text += THINKING_INSTRUCTION
            m["content"] = text
            return msgs
    msgs.insert(0, {"role": "system", "content": DEFAULT_THINKING_PERSONA + THINKING_INSTRUCTION})
    return msgs


def process_messages(
    messages: Iterable[Any],
    tools: Optional[Iterable[Any]] = None,
    tool_choice: Any = None,
    enable_thinking: bool = True,
    tool_support: Optional[bool] = None,
) -> List[Dict[str, Any]]:
    processed = process_messages_with_tools(messages, tools, tool_choice, tool_support)
    if enable_thinking:
        processed = add_thinking_prompt(processed)
    return processed
