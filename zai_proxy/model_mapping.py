from __future__ import annotations

import threading
import time
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .config import Settings, settings
from .log import debug_log


DEFAULT_OWNER = "z.ai"


class ModelFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    enable_thinking: Optional[bool] = None
    web_search: Optional[bool] = None
    auto_web_search: Optional[bool] = None


class ModelMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    display_name: str
    upstream_model_id: str
    upstream_model_name: str
    features: ModelFeatures = ModelFeatures()
    mcp_servers: Tuple[str, ...] = ()
    owned_by: str = DEFAULT_OWNER
    is_builtin: bool = False
    description: Optional[str] = None


class UpstreamConfig(BaseModel):
    upstream_model_id: str
    upstream_model_name: str
    features: ModelFeatures
    mcp_servers: List[str]


def build_builtin_mappings(cfg: Settings) -> Mapping[str, ModelMapping]:
    """Builtin client id → upstream mapping table, keyed by the configured model ids."""

    def builtin(display: str, upstream_id: str, upstream_name: str, description: str, **kw: Any) -> ModelMapping:
        return ModelMapping(
            display_name=display,
            upstream_model_id=upstream_id,
            upstream_model_name=upstream_name,
            is_builtin=True,
            description=description,
            **kw,
        )

    thinking = ModelFeatures(enable_thinking=True)
    search = ModelFeatures(web_search=True, auto_web_search=True)
    table = {
        cfg.primary_model: builtin(cfg.primary_model, "0727-360B-API", "GLM-4.5", "GLM-4.5 base model"),
        cfg.thinking_model: builtin(
            cfg.thinking_model, "0727-360B-API", "GLM-4.5-Thinking", "GLM-4.5 reasoning model", features=thinking
        ),
        cfg.search_model: builtin(
            cfg.search_model,
            "0727-360B-API",
            "GLM-4.5-Search",
            "GLM-4.5 with web search",
            features=search,
            mcp_servers=("deep-web-search",),
        ),
        cfg.air_model: builtin(cfg.air_model, "0727-106B-API", "GLM-4.5-Air", "GLM-4.5 lightweight model"),
        cfg.primary_model_new: builtin(cfg.primary_model_new, "GLM-4-6-API-V1", "GLM-4.6", "GLM-4.6 base model"),
        cfg.thinking_model_new: builtin(
            cfg.thinking_model_new, "GLM-4-6-API-V1", "GLM-4.6-Thinking", "GLM-4.6 reasoning model", features=thinking
        ),
        cfg.search_model_new: builtin(
            cfg.search_model_new,
            "GLM-4-6-API-V1",
            "GLM-4.6-Search",
            "GLM-4.6 with web search",
            features=search,
            mcp_servers=("deep-web-search",),
        ),
    }
    return MappingProxyType(table)


BUILTIN_MODEL_MAPPINGS: Mapping[str, ModelMapping] = build_builtin_mappings(settings)


class MappingCache:
    """Builtin + dynamically discovered model mappings.

    The dynamic table is replaced wholesale by ``refresh`` and never mutated in
    place afterwards, so readers can work on whatever reference they picked up
    without taking the lock.
    """

    def __init__(
        self,
        builtin: Optional[Mapping[str, ModelMapping]] = None,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._builtin: Mapping[str, ModelMapping] = builtin if builtin is not None else BUILTIN_MODEL_MAPPINGS
        self._dynamic: Mapping[str, ModelMapping] = MappingProxyType({})
        self._ttl: float = float(ttl if ttl is not None else settings.model_discovery_ttl)
        self._clock = clock
        self._last_update: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def last_update_time(self) -> Optional[float]:
        return self._last_update

    @property
    def ttl(self) -> float:
        return self._ttl

    def is_fresh(self) -> bool:
        last = self._last_update
        return last is not None and (self._clock() - last) < self._ttl

    # -- lookups -----------------------------------------------------------

    def get_builtin_mappings(self) -> Dict[str, ModelMapping]:
        return dict(self._builtin)

    def get_dynamic_mappings(self) -> Dict[str, ModelMapping]:
        return dict(self._dynamic)

    def get_mappings(self) -> Dict[str, ModelMapping]:
        dynamic = self._dynamic
        merged = {k: v for k, v in dynamic.items() if k not in self._builtin}
        return {**self._builtin, **merged}

    def get_mapping(self, model_id: str) -> Optional[ModelMapping]:
        mapping = self._builtin.get(model_id)
        if mapping is not None:
            return mapping
        return self._dynamic.get(model_id)

    def has_model(self, model_id: str) -> bool:
        return self.get_mapping(model_id) is not None

    def available_model_ids(self) -> List[str]:
        return list(self.get_mappings().keys())

    def resolve(self, model_id: str) -> Optional[UpstreamConfig]:
        mapping = self.get_mapping(model_id)
        if mapping is None:
            debug_log("model mapping not found", model=model_id)
            return None
        debug_log(
            "model mapping resolved",
            model=model_id,
            upstream_model_id=mapping.upstream_model_id,
            upstream_model_name=mapping.upstream_model_name,
        )
        return UpstreamConfig(
            upstream_model_id=mapping.upstream_model_id,
            upstream_model_name=mapping.upstream_model_name,
            features=mapping.features,
            mcp_servers=list(mapping.mcp_servers),
        )

    def supports_feature(self, model_id: str, feature: str) -> bool:
        mapping = self.get_mapping(model_id)
        return bool(mapping is not None and getattr(mapping.features, feature, None) is True)

    def mcp_servers_for(self, model_id: str) -> List[str]:
        mapping = self.get_mapping(model_id)
        return list(mapping.mcp_servers) if mapping is not None else []

    def list_all(self) -> List[Dict[str, Any]]:
        now = int(time.time())
        out: List[Dict[str, Any]] = []
        for model_id, mapping in self.get_mappings().items():
            out.append(
                {
                    "id": model_id,
                    "name": mapping.display_name,
                    "display_name": mapping.display_name,
                    "created": now,
                    "owned_by": mapping.owned_by or DEFAULT_OWNER,
                    "info": {
                        "name": mapping.display_name,
                        "created_at": now,
                        "user_id": mapping.owned_by or DEFAULT_OWNER,
                        "description": mapping.description,
                        "is_builtin": mapping.is_builtin,
                        "upstream_model_id": mapping.upstream_model_id,
                        "upstream_model_name": mapping.upstream_model_name,
                    },
                }
            )
        return out

    # -- mutation ----------------------------------------------------------

    def _synthesize(self, model_id: str, **fields: Any) -> ModelMapping:
        name = fields.get("display_name") or model_id
        return ModelMapping(
            display_name=name,
            upstream_model_id=fields.get("upstream_model_id") or model_id,
            upstream_model_name=fields.get("upstream_model_name") or name,
            features=fields.get("features") or ModelFeatures(),
            mcp_servers=tuple(fields.get("mcp_servers") or ()),
            owned_by=fields.get("owned_by") or DEFAULT_OWNER,
            is_builtin=False,
            description=fields.get("description") or f"Dynamic model: {model_id}",
        )

    def add_dynamic_mapping(self, model_id: str, **fields: Any) -> ModelMapping:
        """Add or replace a single dynamic mapping outside of discovery."""
        mapping = self._synthesize(model_id, **fields)
        with self._lock:
            table = dict(self._dynamic)
            table[model_id] = mapping
            self._dynamic = MappingProxyType(table)
        return mapping

    def refresh(self, observed_models: Iterable[Dict[str, Any]]) -> bool:
        """Replace the dynamic table from a discovery result.

        No-op (returns False) while the previous successful refresh is younger
        than the TTL.
        """
        with self._lock:
            if self.is_fresh():
                return False
            claimed = {m.upstream_model_id for m in self._builtin.values()}
            table: Dict[str, ModelMapping] = {}
            for model in observed_models:
                if not isinstance(model, dict):
                    continue
                model_id = model.get("id")
                if not model_id or not isinstance(model_id, str):
                    continue
                if model_id in claimed or model_id in self._builtin:
                    continue
                name = model.get("name") or model.get("display_name") or model_id
                table[model_id] = self._synthesize(
                    model_id,
                    display_name=name,
                    upstream_model_id=model_id,
                    upstream_model_name=name,
                    owned_by=model.get("owned_by"),
                    description=f"Z.AI model: {name}",
                )
            self._dynamic = MappingProxyType(table)
            self._last_update = self._clock()
        debug_log("dynamic model mappings replaced", count=len(table))
        return True

    def clear(self) -> None:
        with self._lock:
            self._dynamic = MappingProxyType({})
            self._last_update = None
