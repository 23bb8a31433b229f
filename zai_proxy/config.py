import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    try:
        return max(minimum, int(os.environ.get(name, str(default))))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(os.environ.get(name, str(default))))
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        # Upstream endpoints (chat is always requested as a stream)
        self.api_endpoint: str = os.environ.get("API_ENDPOINT", "https://chat.z.ai/api/chat/completions")
        self.models_endpoint: str = os.environ.get("MODELS_ENDPOINT", "https://chat.z.ai/api/models")
        self.auth_endpoint: str = os.environ.get("AUTH_ENDPOINT", "https://chat.z.ai/api/v1/auths/")
        self.upstream_origin: str = os.environ.get("UPSTREAM_ORIGIN", "https://chat.z.ai")
        self.fe_version: str = os.environ.get("FE_VERSION", "prod-fe-1.0.95")

        # Inbound client auth
        self.auth_token: str = os.environ.get("AUTH_TOKEN", "sk-your-key")
        self.skip_auth_token: bool = _env_flag("SKIP_AUTH_TOKEN", "0")

        # Upstream credentials: guest token first, static token as fallback
        self.anonymous_mode: bool = _env_flag("ANONYMOUS_MODE", "1")
        self.backup_token: Optional[str] = os.environ.get("BACKUP_TOKEN") or None

        # Client-facing ids of the builtin model mappings
        self.primary_model: str = os.environ.get("PRIMARY_MODEL", "GLM-4.5")
        self.thinking_model: str = os.environ.get("THINKING_MODEL", "GLM-4.5-Thinking")
        self.search_model: str = os.environ.get("SEARCH_MODEL", "GLM-4.5-Search")
        self.air_model: str = os.environ.get("AIR_MODEL", "GLM-4.5-Air")
        self.primary_model_new: str = os.environ.get("PRIMARY_MODEL_NEW", "GLM-4.6")
        self.thinking_model_new: str = os.environ.get("THINKING_MODEL_NEW", "GLM-4.6-Thinking")
        self.search_model_new: str = os.environ.get("SEARCH_MODEL_NEW", "GLM-4.6-Search")

        # Tool emulation and prompt injection
        self.tool_support: bool = _env_flag("TOOL_SUPPORT", "1")
        # Tool calls are expected near the start of a reply; longer text is not scanned.
        self.scan_limit: int = _env_int("SCAN_LIMIT", 200000, minimum=1)
        self.thinking_prompt: bool = _env_flag("THINKING_PROMPT", "1")
        self.force_thinking: bool = _env_flag("FORCE_THINKING", "1")

        # Model discovery cache
        self.model_discovery_ttl: int = _env_int("MODEL_DISCOVERY_TTL", 300, minimum=1)
        self.discovery_on_startup: bool = _env_flag("DISCOVERY_ON_STARTUP", "1")

        # Timeouts (seconds); discovery and chat have separate budgets
        self.discovery_timeout: float = _env_float("DISCOVERY_TIMEOUT", 10.0, minimum=0.1)
        self.chat_connect_timeout: float = _env_float("CHAT_CONNECT_TIMEOUT", 10.0, minimum=0.1)
        self.chat_timeout: float = _env_float("CHAT_TIMEOUT", 300.0, minimum=1.0)
        self.http2: bool = _env_flag("PROXY_HTTP2", "1")

        # Logging
        self.debug: bool = _env_flag("DEBUG_LOGGING", "0")
        self.log_level: str = "DEBUG" if self.debug else os.environ.get("LOG_LEVEL", "INFO").upper()

        self.listen_port: int = _env_int("LISTEN_PORT", 8080, minimum=1)

    def builtin_model_ids(self) -> list[str]:
        return [
            self.primary_model,
            self.thinking_model,
            self.search_model,
            self.air_model,
            self.primary_model_new,
            self.thinking_model_new,
            self.search_model_new,
        ]


settings = Settings()
