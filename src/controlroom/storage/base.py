"""
Storage abstraction for execution records.

The engine only talks to a store through this protocol: durable upserts of
executions and step records, append-only run summaries, events and
artifacts, and lookups for resuming or inspecting past work.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Protocol

from controlroom.core.models import (
    Artifact,
    ExecutionStatus,
    FailureGroup,
    Run,
    RunbookExecution,
    Runbook,
    RunEvent,
    RunStatus,
    Script,
    StepExecution,
)


@dataclass
class StorageCapabilities:
    """Capabilities supported by a storage backend."""

    durable: bool = True  # Survives process restart
    failure_groups: bool = True  # Can aggregate failures by fingerprint
    run_events: bool = True  # Keeps per-line run events


class StorageBackend(Protocol):
    """Protocol for pluggable storage backends."""

    @property
    @abstractmethod
    def capabilities(self) -> StorageCapabilities:
        """Return capabilities supported by this backend"""
        ...

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize storage (create tables, indexes, etc.)"""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cleanup resources"""
        ...

    # Executions

    @abstractmethod
    async def save_execution(self, execution: RunbookExecution) -> None:
        """
        Upsert an execution header and all of its step records.

        Args:
            execution: Execution to persist
        """
        ...

    @abstractmethod
    async def save_step_execution(self, execution_id: str, step: StepExecution) -> None:
        """
        Upsert one step record of an execution.

        Args:
            execution_id: Owning execution
            step: Step record to persist
        """
        ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[RunbookExecution]:
        """
        Get an execution with its step records.

        Returns:
            The execution or None if not found
        """
        ...

    @abstractmethod
    async def list_executions(
        self,
        runbook_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
    ) -> List[RunbookExecution]:
        """List executions, newest first."""
        ...

    # Script runs

    @abstractmethod
    async def create_run(self, run: Run) -> None:
        """Insert a new run header."""
        ...

    @abstractmethod
    async def update_run(self, run: Run) -> None:
        """Replace status, end time, exit code and summary of a run."""
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[Run]:
        """Get a run or None if not found."""
        ...

    @abstractmethod
    async def list_runs(
        self,
        script_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[Run]:
        """List runs, newest first."""
        ...

    @abstractmethod
    async def append_run_event(self, event: RunEvent) -> None:
        """Append an event to a run's event log."""
        ...

    @abstractmethod
    async def get_run_events(self, run_id: str, limit: Optional[int] = None) -> List[RunEvent]:
        """Return a run's events in insertion order."""
        ...

    @abstractmethod
    async def add_artifact(self, artifact: Artifact) -> None:
        """Record an artifact captured from a run."""
        ...

    @abstractmethod
    async def list_artifacts(self, run_id: str) -> List[Artifact]:
        """Return a run's artifacts."""
        ...

    # Definitions

    @abstractmethod
    async def save_script(self, script: Script) -> None:
        """Upsert a script definition."""
        ...

    @abstractmethod
    async def get_script(self, script_id: str) -> Optional[Script]:
        """Get a script definition or None if not found."""
        ...

    @abstractmethod
    async def list_scripts(self) -> List[Script]:
        """List script definitions by name."""
        ...

    @abstractmethod
    async def save_runbook(self, runbook: Runbook) -> None:
        """Upsert a runbook definition."""
        ...

    @abstractmethod
    async def get_runbook(self, runbook_id: str) -> Optional[Runbook]:
        """Get a runbook definition or None if not found."""
        ...

    @abstractmethod
    async def list_runbooks(self) -> List[Runbook]:
        """List runbook definitions by name."""
        ...

    # Failure analysis

    @abstractmethod
    async def list_failure_groups(self, min_count: int = 1, limit: int = 50) -> List[FailureGroup]:
        """
        Group failed runs by failure fingerprint.

        Args:
            min_count: Minimum failures per group (2 lists recurring failures only)
            limit: Maximum number of groups, most recent first

        Returns:
            Failure groups ordered by last occurrence, newest first
        """
        ...

    @abstractmethod
    async def get_recurrence_count(self, fingerprint: str) -> int:
        """Count failed runs sharing a fingerprint."""
        ...
