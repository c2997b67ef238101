"""
Error taxonomy for the shorts pipeline.

Every error carries a machine-readable `code` so the HTTP layer can map it
to a distinct status (402 for credits, 404 for ownership, 502 for provider
failures) instead of a generic 500.
"""

from decimal import Decimal
from typing import Any, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    code = "pipeline_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class NotFoundError(PipelineError):
    """Short, scene or user does not exist or is not owned by the caller."""

    code = "not_found"
    status_code = 404


class ValidationError(PipelineError):
    """Malformed input, rejected before any mutation or credit check."""

    code = "validation_error"
    status_code = 400


class InvalidTransitionError(PipelineError):
    """Status change not present in the transition table."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move short from {current} to {target}",
            details={"current": current, "target": target},
        )
        self.current = current
        self.target = target


class InsufficientCreditsError(PipelineError):
    """Balance does not cover the cost of the requested feature."""

    code = "insufficient_credits"
    status_code = 402

    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient credits: {required} required, {available} available",
            details={"required": float(required), "available": float(available)},
        )
        self.required = required
        self.available = available


class AdapterFailure(PipelineError):
    """External generation call failed or timed out."""

    code = "generation_failed"
    status_code = 502

    def __init__(
        self,
        capability: str,
        error_kind: str,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message or f"{capability} generation failed ({error_kind})",
            details={"capability": capability, "error_kind": error_kind, **(details or {})},
        )
        self.capability = capability
        self.error_kind = error_kind


class ConflictError(PipelineError):
    """Concurrent change detected (status moved, scene order collided)."""

    code = "conflict"
    status_code = 409


class ConfigError(PipelineError):
    """Missing or invalid configuration."""

    code = "config_error"
    status_code = 500


__all__ = [
    "PipelineError",
    "NotFoundError",
    "ValidationError",
    "InvalidTransitionError",
    "InsufficientCreditsError",
    "ConflictError",
    "AdapterFailure",
    "ConfigError",
]
