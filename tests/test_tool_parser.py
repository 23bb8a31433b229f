import json

from zai_proxy.tool_parser import (
    extract_tool_invocations,
    find_object_end,
    strip_tool_json,
)


FENCED = (
    "I'll look that up.\n"
    "```json\n"
    '{"tool_calls":[{"function":{"name":"f","arguments":{"a":1}}}]}\n'
    "```\n"
)


def test_fenced_block_object_arguments_become_string():
    calls = extract_tool_invocations(FENCED)
    assert calls is not None and len(calls) == 1
    assert calls[0]["function"]["name"] == "f"
    assert calls[0]["function"]["arguments"] == '{"a":1}'
    assert calls[0]["type"] == "function"
    assert calls[0]["id"].startswith("call_")


def test_inline_object_matches_fenced_result():
    inline = 'Sure: {"tool_calls":[{"function":{"name":"f","arguments":{"a":1}}}]} done'
    fenced = extract_tool_invocations(FENCED)
    found = extract_tool_invocations(inline)
    assert found is not None
    assert [c["function"] for c in found] == [c["function"] for c in fenced]


def test_string_arguments_are_kept_verbatim():
    text = json.dumps(
        {
            "tool_calls": [
                {
                    "id": "call_1",
                    "type": "function",
                    "function": {"name": "get_weather", "arguments": "{\"city\": \"SF\"}"},
                }
            ]
        }
    )
    calls = extract_tool_invocations(text)
    assert calls[0]["id"] == "call_1"
    assert calls[0]["function"]["arguments"] == '{"city": "SF"}'


def test_odd_id_and_type_are_normalized():
    text = '{"tool_calls":[{"id": 1, "type": "tool_call", "function":{"name":"f","arguments":{"a":1}}}]}'
    calls = extract_tool_invocations(text)
    assert calls is not None
    assert isinstance(calls[0]["id"], str) and calls[0]["id"].startswith("call_")
    assert calls[0]["type"] == "function"
    assert calls[0]["function"]["arguments"] == '{"a":1}'


def test_braces_inside_strings_do_not_break_balance():
    text = 'x {"tool_calls":[{"function":{"name":"echo","arguments":{"s":"a } b { \\" c"}}}]} y'
    calls = extract_tool_invocations(text)
    assert calls is not None
    assert json.loads(calls[0]["function"]["arguments"]) == {"s": 'a } b { " c'}


def test_nested_candidate_found_inside_non_tool_object():
    text = '{"wrapper": {"tool_calls": [{"function": {"name": "g", "arguments": {}}}]}}'
    calls = extract_tool_invocations(text)
    assert calls is not None
    assert calls[0]["function"]["name"] == "g"
    assert calls[0]["function"]["arguments"] == "{}"


def test_natural_language_fallback():
    text = '好的，调用函数: search_web 参数: {"query": "天气", "opts": {"n": 3}}'
    calls = extract_tool_invocations(text)
    assert calls is not None and len(calls) == 1
    assert calls[0]["function"]["name"] == "search_web"
    assert json.loads(calls[0]["function"]["arguments"]) == {"query": "天气", "opts": {"n": 3}}
    assert calls[0]["id"].startswith("call_")


def test_natural_language_with_invalid_json_is_a_miss():
    assert extract_tool_invocations("调用函数: f 参数: {not json}") is None


def test_no_tool_calls_returns_none():
    assert extract_tool_invocations("") is None
    assert extract_tool_invocations("plain answer") is None
    assert extract_tool_invocations('{"answer": 42}') is None
    assert extract_tool_invocations('{"tool_calls": []}') is None
    assert extract_tool_invocations("{ unterminated") is None


def test_scan_limit_bounds_the_search():
    text = "x" * 100 + '{"tool_calls":[{"function":{"name":"f","arguments":{}}}]}'
    assert extract_tool_invocations(text, scan_limit=50) is None
    assert extract_tool_invocations(text, scan_limit=10_000) is not None


def test_find_object_end_ignores_escaped_quotes():
    text = '{"a": "\\"}"}tail'
    end = find_object_end(text, 0)
    assert text[:end] == '{"a": "\\"}"}'
    assert find_object_end("{{}", 0) is None


def test_strip_removes_inline_tool_json_and_keeps_other_json():
    text = 'Before {"tool_calls":[{"function":{"name":"f","arguments":{}}}]} middle {"keep": {"x": 1}} after'
    out = strip_tool_json(text)
    assert "tool_calls" not in out
    assert '{"keep": {"x": 1}}' in out
    assert out.startswith("Before")
    assert out.endswith("after")


def test_strip_removes_fenced_tool_block_only():
    text = FENCED + '\n```json\n{"other": true}\n```'
    out = strip_tool_json(text)
    assert out.startswith("I'll look that up.")
    assert "tool_calls" not in out
    assert '{"other": true}' in out


def test_strip_keeps_unparseable_braces():
    assert strip_tool_json("  a {b} c  ") == "a {b} c"
    assert strip_tool_json(None) == ""
