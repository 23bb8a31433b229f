from __future__ import annotations

from typing import Any, Dict, Optional


class ProxyError(Exception):
    """Base error rendered as an OpenAI-style error envelope at the HTTP edge."""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return openai_error_body(self.message, self.error_type, self.code)


class InvalidRequestError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class UnsupportedModelError(InvalidRequestError):
    def __init__(self, model: str) -> None:
        super().__init__(f"Unsupported model: {model}", code="model_not_found")
        self.model = model


class AuthenticationError(ProxyError):
    status_code = 401
    error_type = "authentication_error"


class UpstreamUnavailableError(ProxyError):
    """Timeout or connection failure talking to the upstream."""

    error_type = "upstream_unavailable"


class UpstreamStatusError(ProxyError):
    """Upstream answered with a non-2xx status; status and body are forwarded as-is."""

    error_type = "upstream_error"

    def __init__(self, status_code: int, body: bytes, content_type: Optional[str] = None) -> None:
        super().__init__(f"Upstream returned HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.content_type = content_type


class MalformedUpstreamEventError(ProxyError):
    error_type = "upstream_decode_error"


class UpstreamReportedError(ProxyError):
    """The upstream signalled an error inside an otherwise successful stream."""

    error_type = "upstream_error"


class ClientDisconnectedError(Exception):
    """The inbound client went away while the upstream was still being read."""


def openai_error_body(message: str, error_type: str = "api_error", code: Optional[str] = None) -> Dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "code": code}}
