"""Error taxonomy for the shim.

Every error carries a short ``code`` and a free-form ``context`` dict so log
lines and JSON error bodies can be built from the same object.
"""
from typing import Any, Dict


class ShimError(Exception):
    code = "SHIM_ERROR"
    error_type = "internal_error"
    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_log(self) -> str:
        if not self.context:
            return f"{self.message} ({self.code})"
        ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if k != "original_error")
        return f"{self.message} ({self.code}; {ctx})"


class ConfigurationError(ShimError):
    """Invalid setting; callers recover with a default and a warning."""
    code = "CONFIGURATION_ERROR"


class ToolRegistrationError(ShimError):
    """The execution environment rejected a registration."""
    code = "TOOL_REGISTRATION_ERROR"


class ToolNotFoundError(ShimError):
    code = "TOOL_NOT_FOUND"
    error_type = "not_found_error"
    status_code = 404


class ToolInvocationError(ShimError):
    """A tool raised while executing; surfaced to the model as an error result."""
    code = "TOOL_INVOCATION_ERROR"


class ModelNotFoundError(ShimError):
    code = "MODEL_NOT_FOUND"
    error_type = "invalid_request_error"
    status_code = 400


class InvalidRequestError(ShimError):
    code = "INVALID_REQUEST"
    error_type = "invalid_request_error"
    status_code = 400


class UpstreamError(ShimError):
    code = "UPSTREAM_ERROR"
    error_type = "upstream_error"
    status_code = 502


class StreamingTransportError(ShimError):
    """Writing to the caller failed (usually a disconnect); the turn is abandoned."""
    code = "STREAMING_TRANSPORT_ERROR"


def error_body(error_type: str, message: str) -> Dict[str, Any]:
    return {"error": {"type": error_type, "message": message}}

