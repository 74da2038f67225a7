"""In-process storage backend for tests and throwaway CLI sessions."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional

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
from controlroom.storage.base import StorageBackend, StorageCapabilities


class MemoryStorageBackend(StorageBackend):
    """
    Dictionary-backed storage.

    Records are copied on the way in and out so callers cannot mutate
    stored state by holding on to a model instance.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, RunbookExecution] = {}
        self._runs: Dict[str, Run] = {}
        self._events: Dict[str, List[RunEvent]] = defaultdict(list)
        self._artifacts: Dict[str, List[Artifact]] = defaultdict(list)
        self._scripts: Dict[str, Script] = {}
        self._runbooks: Dict[str, Runbook] = {}

    @property
    def capabilities(self) -> StorageCapabilities:
        return StorageCapabilities(durable=False, failure_groups=True, run_events=True)

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def save_execution(self, execution: RunbookExecution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def save_step_execution(self, execution_id: str, step: StepExecution) -> None:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise KeyError(f"Unknown execution: {execution_id}")
        copy = step.model_copy(deep=True)
        for index, existing in enumerate(execution.steps):
            if existing.step_id == step.step_id:
                execution.steps[index] = copy
                return
        execution.steps.append(copy)

    async def get_execution(self, execution_id: str) -> Optional[RunbookExecution]:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        runbook_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
    ) -> List[RunbookExecution]:
        matches = [
            e
            for e in self._executions.values()
            if (runbook_id is None or e.runbook_id == runbook_id)
            and (status is None or e.status == status)
        ]
        matches.sort(key=lambda e: e.started_at, reverse=True)
        return [e.model_copy(deep=True) for e in matches[:limit]]

    async def create_run(self, run: Run) -> None:
        if run.run_id in self._runs:
            raise ValueError(f"Run already exists: {run.run_id}")
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def update_run(self, run: Run) -> None:
        if run.run_id not in self._runs:
            raise KeyError(f"Unknown run: {run.run_id}")
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        script_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[Run]:
        matches = [
            r
            for r in self._runs.values()
            if (script_id is None or r.script_id == script_id)
            and (status is None or r.status == status)
        ]
        matches.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in matches[:limit]]

    async def append_run_event(self, event: RunEvent) -> None:
        self._events[event.run_id].append(event.model_copy(deep=True))

    async def get_run_events(self, run_id: str, limit: Optional[int] = None) -> List[RunEvent]:
        events = self._events.get(run_id, [])
        if limit:
            events = events[:limit]
        return [e.model_copy(deep=True) for e in events]

    async def add_artifact(self, artifact: Artifact) -> None:
        self._artifacts[artifact.run_id].append(artifact.model_copy(deep=True))

    async def list_artifacts(self, run_id: str) -> List[Artifact]:
        artifacts = sorted(self._artifacts.get(run_id, []), key=lambda a: a.locator)
        return [a.model_copy(deep=True) for a in artifacts]

    async def save_script(self, script: Script) -> None:
        self._scripts[script.id] = script.model_copy(deep=True)

    async def get_script(self, script_id: str) -> Optional[Script]:
        script = self._scripts.get(script_id)
        return script.model_copy(deep=True) if script else None

    async def list_scripts(self) -> List[Script]:
        return [s.model_copy(deep=True) for s in sorted(self._scripts.values(), key=lambda s: s.name)]

    async def save_runbook(self, runbook: Runbook) -> None:
        self._runbooks[runbook.id] = runbook.model_copy(deep=True)

    async def get_runbook(self, runbook_id: str) -> Optional[Runbook]:
        runbook = self._runbooks.get(runbook_id)
        return runbook.model_copy(deep=True) if runbook else None

    async def list_runbooks(self) -> List[Runbook]:
        return [
            r.model_copy(deep=True) for r in sorted(self._runbooks.values(), key=lambda r: r.name)
        ]

    def _failed_runs(self) -> List[Run]:
        return [
            r
            for r in self._runs.values()
            if r.status is RunStatus.FAILED and r.summary and r.summary.failure_fingerprint
        ]

    async def list_failure_groups(self, min_count: int = 1, limit: int = 50) -> List[FailureGroup]:
        grouped: Dict[str, List[Run]] = defaultdict(list)
        for run in self._failed_runs():
            assert run.summary is not None
            grouped[run.summary.failure_fingerprint or ""].append(run)

        groups: List[FailureGroup] = []
        for fingerprint, runs in grouped.items():
            if len(runs) < min_count:
                continue
            runs.sort(key=lambda r: r.started_at)
            first, latest = runs[0], runs[-1]
            groups.append(
                FailureGroup(
                    fingerprint=fingerprint,
                    count=len(runs),
                    first_seen=first.started_at,
                    last_seen=latest.started_at,
                    latest_run_id=latest.run_id,
                    first_run_id=first.run_id,
                    script_name=latest.script_name,
                    last_stderr_line=latest.summary.last_stderr_line if latest.summary else None,
                    distinct_scripts=len({r.script_id for r in runs}),
                )
            )
        groups.sort(key=lambda g: g.last_seen, reverse=True)
        return groups[:limit]

    async def get_recurrence_count(self, fingerprint: str) -> int:
        return sum(
            1
            for r in self._failed_runs()
            if r.summary is not None and r.summary.failure_fingerprint == fingerprint
        )
