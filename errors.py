"""Failures raised while turning a request into a delivered GIF."""

from typing import Any, Dict, Optional


class ProxyError(Exception):
    """Base class; carries the HTTP status and a stable error code."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error_code, "message": str(self)}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class DecodeError(ProxyError):
    """Raised when the request body cannot be decoded into a request model."""

    status_code = 400
    error_code = "decode_error"


class RenderPrepError(ProxyError):
    """Raised when the source document cannot be created or rendered from its template."""

    error_code = "render_prep_failed"


class RenderToolAbsent(ProxyError):
    """Raised when the pixlet binary is not on PATH. Not reported to the caller."""

    status_code = 200
    error_code = "render_tool_absent"


class RenderError(ProxyError):
    """Raised when pixlet render exits non-zero or produces no artifact."""

    error_code = "render_failed"

    def __init__(self, message: str, *, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message, detail=output or None)
        self.returncode = returncode
        self.output = output


class RenderTimeout(RenderError):
    status_code = 504
    error_code = "render_timeout"


class DeliveryError(ProxyError):
    status_code = 502
    error_code = "delivery_failed"


class PushError(DeliveryError):
    """Raised when pixlet push fails."""

    error_code = "push_failed"


class PublishError(DeliveryError):
    """Raised when the MQTT connect/publish round trip fails."""

    error_code = "publish_failed"
