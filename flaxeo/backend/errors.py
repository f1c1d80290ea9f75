"""
Error taxonomy for the Flaxeo backend.

Every failure that reaches the HTTP layer is a FlaxeoError subclass and is
rendered by the application exception handler as:

    {"success": false, "message": ..., "error": <code>, "output": <log tail>}

Cancellation is not an error and has no class here.
"""

from typing import Any, Dict, Optional


class FlaxeoError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, output: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.output = output

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.code,
        }
        if self.output:
            payload["output"] = self.output
        return payload


class ValidationError(FlaxeoError):
    """Client-caused: missing model selection, missing upload, bad field."""

    status_code = 400
    default_code = "INVALID_REQUEST"


class NotFoundError(FlaxeoError):
    status_code = 404
    default_code = "NOT_FOUND"


class ResourceBusyError(FlaxeoError):
    """The requested slot already has a live process."""

    status_code = 409
    default_code = "RESOURCE_BUSY"


class SpawnError(FlaxeoError):
    """The executable could not be started. The slot stays idle."""

    status_code = 500
    default_code = "SPAWN_FAILED"


class ExecutionFailure(FlaxeoError):
    """Non-zero exit or missing artifact."""

    status_code = 500
    default_code = "EXECUTION_FAILED"


class UpstreamError(FlaxeoError):
    """An HTTP collaborator (inference server, release feed) failed."""

    status_code = 502
    default_code = "UPSTREAM_ERROR"
