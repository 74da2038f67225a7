"""Domain model, validation and fingerprinting for runbook execution."""

from __future__ import annotations

from controlroom.core.errors import (
    ControlRoomError,
    ExecutionNotFoundError,
    RunbookNotFoundError,
    RunbookValidationError,
)
from controlroom.core.fingerprint import compute_fingerprint
from controlroom.core.validation import ValidationResult, topological_order, validate_runbook

__all__ = [
    "ControlRoomError",
    "ExecutionNotFoundError",
    "RunbookNotFoundError",
    "RunbookValidationError",
    "ValidationResult",
    "compute_fingerprint",
    "topological_order",
    "validate_runbook",
]
