"""Error definitions for MCP tools.

This module defines structured error types with stable codes
that can be surfaced to MCP clients. Pipeline failures reuse the
failure kind values (environment_provisioning, compilation, ...).
"""

from dataclasses import dataclass
from typing import Any

VALIDATION_ERROR = "validation"
RECIPE_NOT_FOUND = "recipe_not_found"
RUN_NOT_FOUND = "run_not_found"
PIPELINE_ERROR = "pipeline_failed"
INSPECTION_ERROR = "inspection_error"
INTERNAL_ERROR = "internal_error"


@dataclass
class MCPError:
    """Structured error response for MCP tools.

    Attributes:
        code: Stable error code for programmatic handling.
        message: Human-readable error message.
        details: Optional additional error details.
        log_path: Optional path to log file with more information.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None
    log_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        if self.log_path is not None:
            result["log_path"] = self.log_path
        return result


def make_error(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    log_path: str | None = None,
) -> MCPError:
    """Create an MCPError instance."""
    return MCPError(code=code, message=message, details=details, log_path=log_path)


def validation_error(message: str, details: dict[str, Any] | None = None) -> MCPError:
    """Create a validation error."""
    return make_error(VALIDATION_ERROR, message, details)


def run_not_found(run_id: int) -> MCPError:
    """Create a run not found error."""
    return make_error(
        RUN_NOT_FOUND,
        f"Run not found: {run_id}",
        details={"run_id": run_id},
    )


def pipeline_error(
    code: str | None,
    message: str,
    log_path: str | None = None,
    details: dict[str, Any] | None = None,
) -> MCPError:
    """Create a pipeline failure error, keyed by failure kind when known."""
    return make_error(code or PIPELINE_ERROR, message, details, log_path)


__all__ = [
    "INSPECTION_ERROR",
    "INTERNAL_ERROR",
    "MCPError",
    "PIPELINE_ERROR",
    "RECIPE_NOT_FOUND",
    "RUN_NOT_FOUND",
    "VALIDATION_ERROR",
    "make_error",
    "pipeline_error",
    "run_not_found",
    "validation_error",
]
