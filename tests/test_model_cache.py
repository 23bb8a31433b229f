import asyncio
import threading
from typing import Any, Dict, List

import pytest

from zai_proxy import upstream as upstream_mod
from zai_proxy.config import settings
from zai_proxy.model_mapping import BUILTIN_MODEL_MAPPINGS, MappingCache


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _observed(*ids: str) -> List[Dict[str, Any]]:
    return [{"id": i, "name": f"{i} display", "owned_by": "someone"} for i in ids]


def test_resolve_builtin_mapping():
    cache = MappingCache()
    cfg = cache.resolve(settings.search_model)
    assert cfg is not None
    assert cfg.upstream_model_id == "0727-360B-API"
    assert cfg.upstream_model_name == "GLM-4.5-Search"
    assert cfg.features.web_search is True
    assert cfg.mcp_servers == ["deep-web-search"]


def test_resolve_unknown_model_is_none():
    assert MappingCache().resolve("unknown-model-xyz") is None


def test_refresh_adds_dynamic_mappings_and_skips_builtin_collisions():
    cache = MappingCache(clock=_Clock())
    observed = _observed("glm-4-flash", "0727-360B-API", settings.primary_model)
    assert cache.refresh(observed) is True

    dynamic = cache.get_dynamic_mappings()
    assert list(dynamic) == ["glm-4-flash"]
    mapping = dynamic["glm-4-flash"]
    assert mapping.display_name == "glm-4-flash display"
    assert mapping.upstream_model_id == "glm-4-flash"
    assert mapping.owned_by == "someone"
    assert mapping.is_builtin is False

    cfg = cache.resolve("glm-4-flash")
    assert cfg.upstream_model_name == "glm-4-flash display"
    assert cache.get_mapping(settings.primary_model) is BUILTIN_MODEL_MAPPINGS[settings.primary_model]


def test_refresh_within_ttl_is_noop():
    clock = _Clock()
    cache = MappingCache(ttl=300, clock=clock)
    assert cache.refresh(_observed("a")) is True
    stamp = cache.last_update_time

    clock.now += 299
    assert cache.refresh(_observed("b")) is False
    assert list(cache.get_dynamic_mappings()) == ["a"]
    assert cache.last_update_time == stamp


def test_refresh_after_ttl_replaces_wholesale():
    clock = _Clock()
    cache = MappingCache(ttl=300, clock=clock)
    cache.refresh(_observed("a", "b"))
    clock.now += 301
    assert cache.refresh(_observed("c")) is True
    assert list(cache.get_dynamic_mappings()) == ["c"]
    assert cache.resolve("a") is None


def test_clear_resets_ttl():
    cache = MappingCache(clock=_Clock())
    cache.refresh(_observed("a"))
    cache.clear()
    assert cache.get_dynamic_mappings() == {}
    assert cache.last_update_time is None
    assert cache.refresh(_observed("b")) is True


def test_list_all_prefers_builtin_entries():
    cache = MappingCache(clock=_Clock())
    cache.add_dynamic_mapping(settings.primary_model, display_name="shadow")
    cache.add_dynamic_mapping("extra-model")
    listed = {m["id"]: m for m in cache.list_all()}
    assert listed[settings.primary_model]["info"]["is_builtin"] is True
    assert listed[settings.primary_model]["name"] == settings.primary_model
    assert listed["extra-model"]["info"]["is_builtin"] is False
    assert set(BUILTIN_MODEL_MAPPINGS) <= set(listed)
    assert cache.supports_feature(settings.thinking_model, "enable_thinking")
    assert not cache.supports_feature(settings.primary_model, "web_search")
    assert cache.mcp_servers_for(settings.search_model_new) == ["deep-web-search"]


def test_builtin_resolution_stable_under_concurrent_refresh():
    clock = _Clock()
    cache = MappingCache(ttl=0.0001, clock=clock)
    expected = cache.resolve(settings.thinking_model)
    errors: List[str] = []
    stop = threading.Event()

    def writer():
        n = 0
        while not stop.is_set():
            clock.now += 1
            cache.refresh(_observed(*(f"m{n}-{i}" for i in range(20)), settings.thinking_model))
            n += 1

    def reader():
        for _ in range(2000):
            if cache.resolve(settings.thinking_model) != expected:
                errors.append("builtin changed")
            snapshot = cache.get_dynamic_mappings()
            if snapshot and len(snapshot) != 20:
                errors.append(f"partial dynamic set: {len(snapshot)}")

    w = threading.Thread(target=writer)
    readers = [threading.Thread(target=reader) for _ in range(4)]
    w.start()
    for r in readers:
        r.start()
    for r in readers:
        r.join()
    stop.set()
    w.join()
    assert errors == []


class _FakeResponse:
    def __init__(self, payload: Dict[str, Any], status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Dict[str, Any]:
        return self._payload


class _FakeClient:
    def __init__(self, models_payload: Dict[str, Any]):
        self._models_payload = models_payload
        self.calls: List[str] = []

    async def get(self, url: str, headers: Dict[str, str], timeout: Any) -> _FakeResponse:
        self.calls.append(url)
        if url == settings.auth_endpoint:
            return _FakeResponse({"token": "guest-token"})
        return _FakeResponse(self._models_payload)


@pytest.mark.asyncio
async def test_catalog_discovers_once_within_ttl(monkeypatch):
    fake_client = _FakeClient({"data": [{"id": "glm-4-flash", "name": "GLM-4-Flash"}]})
    monkeypatch.setattr(upstream_mod, "_get_httpx_client", lambda: fake_client)

    catalog = upstream_mod.ModelCatalog(MappingCache(ttl=300))
    first, second = await asyncio.gather(catalog.get_available_models(), catalog.get_available_models())

    ids = {m["id"] for m in first}
    assert "glm-4-flash" in ids
    assert {m["id"] for m in second} == ids
    assert fake_client.calls.count(settings.models_endpoint) == 1


@pytest.mark.asyncio
async def test_catalog_falls_back_to_builtin_when_discovery_fails(monkeypatch):
    fake_client = _FakeClient({})

    async def failing_get(url, headers, timeout):
        raise upstream_mod.httpx.ConnectError("boom")

    fake_client.get = failing_get  # type: ignore[assignment]
    monkeypatch.setattr(upstream_mod, "_get_httpx_client", lambda: fake_client)

    cache = MappingCache(ttl=300)
    models = await upstream_mod.ModelCatalog(cache).get_available_models()
    assert {m["id"] for m in models} == set(BUILTIN_MODEL_MAPPINGS)
    assert cache.last_update_time is None
