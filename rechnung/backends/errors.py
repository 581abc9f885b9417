"""Error types shared by the billing backends.

Every user-facing failure carries a stable machine readable ``reason`` next to
its human readable message so HTTP and MCP callers can branch on it.
"""
from __future__ import annotations

from mcp.server.fastmcp.exceptions import ToolError
from pydantic import ValidationError

from ..utils import config


class BillingError(ToolError):
    """Base class for billing failures."""

    status = 500
    default_reason = "billing_error"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason

    def to_payload(self) -> dict[str, object]:
        return {"message": self.message, "reason": self.reason}


class ValidationFailed(BillingError):
    status = 400
    default_reason = "invalid_payload"


class NotFound(BillingError):
    status = 404
    default_reason = "not_found"


class Conflict(BillingError):
    status = 409
    default_reason = "conflict"


class Unauthorized(BillingError):
    status = 401
    default_reason = "unauthorized"


class WorkflowFailed(BillingError):
    status = 500
    default_reason = "workflow_failed"


class WritesDisabled(BillingError):
    """Raised when write operations are attempted while disabled."""

    status = 403
    default_reason = "writes_disabled"


def require_writes_enabled() -> None:
    if not config.writes_enabled():
        raise WritesDisabled(
            "Write-capable tools are disabled. Set MCP_ENABLE_WRITES=1 to allow writes."
        )


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or str(exc)


__all__ = [
    "BillingError",
    "Conflict",
    "NotFound",
    "Unauthorized",
    "ValidationFailed",
    "WorkflowFailed",
    "WritesDisabled",
    "describe_validation_error",
    "require_writes_enabled",
]
