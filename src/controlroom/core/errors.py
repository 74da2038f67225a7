"""Exception hierarchy shared across the engine."""

from __future__ import annotations

from typing import List, Optional


class ControlRoomError(Exception):
    """Base exception for engine errors."""

    pass


class RunbookValidationError(ControlRoomError):
    """Runbook failed validation and cannot be executed."""

    def __init__(self, errors: List[str], execution_id: Optional[str] = None):
        self.errors = list(errors)
        self.execution_id = execution_id
        super().__init__("; ".join(self.errors) or "Runbook validation failed")


class RunbookNotFoundError(ControlRoomError):
    """Requested runbook does not exist in the store."""

    pass


class ExecutionNotFoundError(ControlRoomError):
    """Requested execution is neither active nor persisted."""

    pass


class ScriptDefinitionNotFoundError(ControlRoomError):
    """A step references a script that is not registered."""

    pass


class StepPersistenceError(ControlRoomError):
    """A step settled but its terminal record could not be written."""

    pass
