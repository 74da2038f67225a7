"""
Runbook execution coordinator.

Executes a validated runbook as a dependency-driven DAG: every step whose
dependencies have all settled is started immediately, as its own task,
while the coordination loop waits for at least one running step to finish
before looking for newly ready steps. Executions can be paused, resumed and
canceled while active; finished executions are served from the store.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from controlroom.config import Settings, get_settings
from controlroom.core.cancellation import CancellationSignal
from controlroom.core.errors import (
    ExecutionNotFoundError,
    RunbookNotFoundError,
    RunbookValidationError,
    StepPersistenceError,
)
from controlroom.core.models import (
    ExecutionInfo,
    ExecutionStatus,
    RunbookExecution,
    Runbook,
    RunbookStep,
    StepExecution,
    StepStatus,
)
from controlroom.core.validation import topological_order, validate_runbook
from controlroom.runners.events import (
    ExecutionEvent,
    ExecutionStatusChangedEvent,
    NotificationSink,
    NullSink,
    StepCompletedEvent,
)
from controlroom.runners.process import LocalProcessLauncher
from controlroom.runners.script_run import ScriptRunService
from controlroom.runners.step_executor import StepExecutor, StepTransition
from controlroom.storage.base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class ExecutionState:
    """In-memory state of one active execution."""

    execution: RunbookExecution
    runbook: Runbook
    order: List[str]
    signal: CancellationSignal = field(default_factory=CancellationSignal)
    # Set while the execution may start new steps; cleared by pause().
    resume_event: asyncio.Event = field(default_factory=asyncio.Event)
    # Serializes every persisted write for this execution.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    completed: Dict[str, StepStatus] = field(default_factory=dict)
    running: Set[str] = field(default_factory=set)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task[None]] = None

    def __post_init__(self) -> None:
        self.resume_event.set()

    @property
    def execution_id(self) -> str:
        return self.execution.id

    @property
    def is_paused(self) -> bool:
        return not self.resume_event.is_set()

    def snapshot(self) -> ExecutionInfo:
        return ExecutionInfo(
            execution_id=self.execution.id,
            runbook_id=self.execution.runbook_id,
            status=self.execution.status,
            started_at=self.execution.started_at,
            ended_at=self.execution.ended_at,
            error_message=self.execution.error_message,
            step_statuses={s.step_id: s.status for s in self.execution.steps},
            is_paused=self.is_paused,
            is_active=True,
        )


class ExecutionManager:
    """Table of active executions, keyed by execution id."""

    def __init__(self) -> None:
        self._states: Dict[str, ExecutionState] = {}
        self._lock = asyncio.Lock()

    async def register(self, state: ExecutionState) -> None:
        async with self._lock:
            self._states[state.execution_id] = state

    async def remove(self, execution_id: str) -> None:
        async with self._lock:
            self._states.pop(execution_id, None)

    def get(self, execution_id: str) -> Optional[ExecutionState]:
        return self._states.get(execution_id)

    def active_ids(self) -> List[str]:
        return list(self._states)

    def __len__(self) -> int:
        return len(self._states)


_INTERRUPTED = frozenset({StepStatus.CANCELED, StepStatus.PENDING, StepStatus.RUNNING})


def classify_execution(statuses: Iterable[StepStatus], canceled: bool = False) -> ExecutionStatus:
    """
    Derive the overall status of a finished execution.

    ``SUCCEEDED`` when no step failed, was canceled or was left unreached
    (skipped steps count as neither success nor failure); ``PARTIAL_SUCCESS``
    when at least one step succeeded and at least one failed; otherwise
    ``FAILED``. A cancellation yields ``CANCELED`` only when it interrupted
    work: some step was canceled or never reached. A cancel arriving after
    every step settled leaves the natural outcome in place.
    """
    statuses = list(statuses)
    if canceled and any(s in _INTERRUPTED for s in statuses):
        return ExecutionStatus.CANCELED

    all_succeeded = True
    has_success = False
    has_failure = False
    for status in statuses:
        if status is StepStatus.SUCCEEDED:
            has_success = True
        elif status is StepStatus.SKIPPED:
            continue
        elif status is StepStatus.FAILED:
            has_failure = True
            all_succeeded = False
        elif status is StepStatus.CANCELED:
            all_succeeded = False
        elif status is StepStatus.PENDING or status is StepStatus.RUNNING:
            all_succeeded = False
        else:
            raise ValueError(f"Unhandled step status: {status!r}")

    if all_succeeded:
        return ExecutionStatus.SUCCEEDED
    if has_success and has_failure:
        return ExecutionStatus.PARTIAL_SUCCESS
    return ExecutionStatus.FAILED


async def _wait_first(*waitables: Any) -> None:
    tasks = [asyncio.ensure_future(w) for w in waitables]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()


class RunbookExecutor:
    """
    Public execution API: execute, pause, resume, cancel and get_info.

    Every step and status transition is persisted before the matching
    notification is published, so observers never see an event whose
    record is not yet durable.
    """

    def __init__(
        self,
        store: StorageBackend,
        step_executor: StepExecutor,
        manager: Optional[ExecutionManager] = None,
        sink: Optional[NotificationSink] = None,
        max_concurrent_steps: int = 0,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Storage backend for execution records
            step_executor: Executor used for every step
            manager: Active-execution table (a private one is created if omitted)
            sink: Notification sink for step and status events
            max_concurrent_steps: Cap on concurrently running steps per execution (0 = unbounded)
        """
        self.store = store
        self.step_executor = step_executor
        self.manager = manager if manager is not None else ExecutionManager()
        self.sink: NotificationSink = sink if sink is not None else NullSink()
        self.max_concurrent_steps = max_concurrent_steps

    @classmethod
    def from_settings(
        cls,
        store: StorageBackend,
        settings: Optional[Settings] = None,
        sink: Optional[NotificationSink] = None,
        manager: Optional[ExecutionManager] = None,
    ) -> "RunbookExecutor":
        """Wire launcher, script runs and step executor from settings."""
        settings = settings or get_settings()
        launcher = LocalProcessLauncher(kill_grace_seconds=settings.KILL_GRACE_SECONDS)
        script_runs = ScriptRunService(
            store,
            runs_base_dir=settings.RUNS_BASE_DIR,
            launcher=launcher,
            capture_output_events=settings.CAPTURE_OUTPUT_EVENTS,
        )
        return cls(
            store,
            StepExecutor(script_runs),
            manager=manager,
            sink=sink,
            max_concurrent_steps=settings.MAX_CONCURRENT_STEPS,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, runbook: Runbook, trigger_info: Optional[str] = None) -> str:
        """
        Validate and start a runbook execution.

        Returns as soon as the execution record is persisted and scheduling
        has been started in the background.

        Args:
            runbook: Runbook to execute
            trigger_info: Free-form description of what triggered the run

        Returns:
            The execution id

        Raises:
            RunbookValidationError: If the runbook is disabled or invalid; a
                failed execution record is persisted before raising
        """
        execution_id = str(uuid.uuid4())

        if not runbook.is_enabled:
            errors = [f"Runbook '{runbook.id}' is disabled"]
        else:
            errors = validate_runbook(runbook).errors

        if errors:
            now = datetime.now(UTC)
            message = "Validation failed: " + "; ".join(errors)
            failed = RunbookExecution(
                id=execution_id,
                runbook_id=runbook.id,
                status=ExecutionStatus.FAILED,
                started_at=now,
                ended_at=now,
                trigger_info=trigger_info,
                error_message=message,
            )
            await self.store.save_execution(failed)
            self._publish(
                ExecutionStatusChangedEvent(
                    execution_id=execution_id,
                    runbook_id=runbook.id,
                    status=ExecutionStatus.FAILED,
                    error_message=message,
                )
            )
            logger.warning("Execution %s refused: %s", execution_id, message)
            raise RunbookValidationError(errors, execution_id=execution_id)

        execution = RunbookExecution(
            id=execution_id,
            runbook_id=runbook.id,
            status=ExecutionStatus.RUNNING,
            trigger_info=trigger_info,
            steps=[StepExecution(step_id=s.step_id, name=s.name) for s in runbook.steps],
        )
        state = ExecutionState(
            execution=execution,
            runbook=runbook.model_copy(deep=True),
            order=topological_order(runbook),
        )
        await self.store.save_execution(execution)
        await self.manager.register(state)
        self._publish(
            ExecutionStatusChangedEvent(
                execution_id=execution_id,
                runbook_id=runbook.id,
                status=ExecutionStatus.RUNNING,
            )
        )
        logger.info(
            "Execution %s started for runbook %s (%d steps)",
            execution_id,
            runbook.id,
            len(runbook.steps),
        )
        state.task = asyncio.create_task(self._run(state), name=f"execution-{execution_id}")
        return execution_id

    async def execute_by_id(self, runbook_id: str, trigger_info: Optional[str] = None) -> str:
        """Load a runbook from the store and execute it."""
        runbook = await self.store.get_runbook(runbook_id)
        if runbook is None:
            raise RunbookNotFoundError(f"Runbook not found: {runbook_id}")
        return await self.execute(runbook, trigger_info=trigger_info)

    async def pause(self, execution_id: str) -> bool:
        """
        Stop starting new steps; running steps continue.

        Returns:
            True if the execution was running and is now paused
        """
        state = self.manager.get(execution_id)
        if state is None:
            return False
        if state.execution.status is not ExecutionStatus.RUNNING:
            return False
        state.resume_event.clear()
        changed = await self._set_status(
            state, ExecutionStatus.PAUSED, expected={ExecutionStatus.RUNNING}
        )
        if changed:
            logger.info("Execution %s paused", execution_id)
        elif state.execution.status is not ExecutionStatus.PAUSED:
            state.resume_event.set()
        return changed

    async def resume(self, execution_id: str) -> bool:
        """
        Allow a paused execution to start new steps again.

        Returns:
            True if the execution was paused and is now running
        """
        state = self.manager.get(execution_id)
        if state is None:
            return False
        changed = await self._set_status(
            state, ExecutionStatus.RUNNING, expected={ExecutionStatus.PAUSED}
        )
        if changed:
            state.resume_event.set()
            logger.info("Execution %s resumed", execution_id)
        return changed

    async def cancel(self, execution_id: str) -> bool:
        """
        Cancel an execution.

        Active executions are signaled and settle as ``CANCELED`` once their
        running steps unwind. A persisted execution left non-terminal by a
        previous process is marked ``CANCELED`` directly.

        Returns:
            False if the execution is unknown or already terminal
        """
        state = self.manager.get(execution_id)
        if state is not None:
            if state.execution.status.is_terminal or state.signal.is_canceled:
                return False
            logger.info("Execution %s cancel requested", execution_id)
            state.signal.cancel()
            return True

        stored = await self.store.get_execution(execution_id)
        if stored is None or stored.status.is_terminal:
            return False
        previous = stored.status
        stored.status = ExecutionStatus.CANCELED
        stored.ended_at = datetime.now(UTC)
        stored.error_message = "Canceled after the owning process stopped"
        await self.store.save_execution(stored)
        self._publish(
            ExecutionStatusChangedEvent(
                execution_id=execution_id,
                runbook_id=stored.runbook_id,
                status=ExecutionStatus.CANCELED,
                previous_status=previous,
                error_message=stored.error_message,
            )
        )
        return True

    async def get_info(self, execution_id: str) -> Optional[ExecutionInfo]:
        """
        Snapshot an execution.

        Served from the active table while the execution runs, otherwise
        from the persisted record.

        Returns:
            ExecutionInfo, or None if the execution is unknown
        """
        state = self.manager.get(execution_id)
        if state is not None:
            return state.snapshot()

        stored = await self.store.get_execution(execution_id)
        if stored is None:
            return None
        return ExecutionInfo(
            execution_id=stored.id,
            runbook_id=stored.runbook_id,
            status=stored.status,
            started_at=stored.started_at,
            ended_at=stored.ended_at,
            error_message=stored.error_message,
            step_statuses={s.step_id: s.status for s in stored.steps},
            is_paused=stored.status is ExecutionStatus.PAUSED,
            is_active=False,
        )

    async def wait_for_completion(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> ExecutionInfo:
        """
        Block until an execution reaches a terminal status.

        Raises:
            ExecutionNotFoundError: If the execution is unknown
            asyncio.TimeoutError: If ``timeout`` elapses first
        """
        state = self.manager.get(execution_id)
        if state is not None:
            await asyncio.wait_for(state.done.wait(), timeout=timeout)
        info = await self.get_info(execution_id)
        if info is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return info

    async def shutdown(self) -> None:
        """Cancel every active execution and wait for them to settle."""
        states = [s for s in (self.manager.get(i) for i in self.manager.active_ids()) if s]
        for state in states:
            state.signal.cancel()
        for state in states:
            await state.done.wait()

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    async def _run(self, state: ExecutionState) -> None:
        try:
            try:
                await self._schedule(state)
                status = classify_execution(
                    (s.status for s in state.execution.steps),
                    canceled=state.signal.is_canceled,
                )
                error = self._summarize_errors(state) if status is not ExecutionStatus.SUCCEEDED else None
            except asyncio.CancelledError:
                await self._set_status(
                    state, ExecutionStatus.CANCELED, error_message="Execution task was canceled"
                )
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Execution %s crashed", state.execution_id)
                status, error = ExecutionStatus.FAILED, str(exc) or type(exc).__name__

            await self._set_status(state, status, error_message=error)
            logger.info("Execution %s finished: %s", state.execution_id, status.value)
        finally:
            await self.manager.remove(state.execution_id)
            state.done.set()

    async def _schedule(self, state: ExecutionState) -> None:
        steps = state.runbook.steps
        tasks: Dict[asyncio.Task[StepStatus], str] = {}
        finished = False
        try:
            while len(state.completed) < len(steps):
                while state.is_paused and not state.signal.is_canceled:
                    await _wait_first(state.resume_event.wait(), state.signal.wait())
                if state.signal.is_canceled:
                    break

                ready = [
                    step
                    for step in steps
                    if step.step_id not in state.completed
                    and step.step_id not in state.running
                    and all(dep in state.completed for dep in step.depends_on)
                ]
                if self.max_concurrent_steps > 0:
                    ready = ready[: max(self.max_concurrent_steps - len(state.running), 0)]

                if not ready and not tasks:
                    unreached = [s.step_id for s in steps if s.step_id not in state.completed]
                    logger.warning(
                        "Execution %s stalled; unreached steps: %s",
                        state.execution_id,
                        ", ".join(unreached),
                    )
                    break

                for step in ready:
                    state.running.add(step.step_id)
                    task = asyncio.create_task(
                        self._run_step(state, step, dict(state.completed)),
                        name=f"step-{state.execution_id}-{step.step_id}",
                    )
                    tasks[task] = step.step_id
                    logger.debug("Execution %s: launched step %s", state.execution_id, step.step_id)

                done, _ = await asyncio.wait(set(tasks), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    step_id = tasks.pop(task)
                    state.running.discard(step_id)
                    outcome = task.result()
                    if step_id not in state.completed:
                        # The terminal transition never reached the store.
                        state.completed[step_id] = outcome
                        record = state.execution.get_step(step_id)
                        if record is not None:
                            record.status = outcome
                        raise StepPersistenceError(
                            f"Step {step_id} settled {outcome.value} but its record could not be saved"
                        )
            finished = True
        finally:
            if tasks:
                if not finished:
                    state.signal.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                state.running.clear()

    async def _run_step(
        self, state: ExecutionState, step: RunbookStep, completed: Dict[str, StepStatus]
    ) -> StepStatus:
        async def report(transition: StepTransition) -> None:
            await self._apply_transition(state, transition)

        return await self.step_executor.execute(step, completed, state.signal, report)

    async def _apply_transition(self, state: ExecutionState, transition: StepTransition) -> None:
        async with state.lock:
            record = state.execution.get_step(transition.step_id)
            if record is None:
                raise KeyError(f"Unknown step: {transition.step_id}")

            now = datetime.now(UTC)
            record.status = transition.status
            if transition.attempt is not None:
                record.attempt = transition.attempt
            if transition.run_id is not None:
                record.run_id = transition.run_id
            if transition.error_message is not None or transition.ended:
                record.error_message = transition.error_message
            if transition.output is not None:
                record.output = transition.output
            if transition.started and record.started_at is None:
                record.started_at = now
            if transition.ended:
                record.ended_at = now

            await self.store.save_step_execution(state.execution_id, record)

            if transition.status.is_terminal:
                state.completed[record.step_id] = record.status
                state.running.discard(record.step_id)
                self._publish(
                    StepCompletedEvent(
                        execution_id=state.execution_id,
                        step_id=record.step_id,
                        status=record.status,
                        attempt=record.attempt,
                        run_id=record.run_id,
                        error_message=record.error_message,
                    )
                )

    async def _set_status(
        self,
        state: ExecutionState,
        status: ExecutionStatus,
        error_message: Optional[str] = None,
        expected: Optional[Set[ExecutionStatus]] = None,
    ) -> bool:
        async with state.lock:
            execution = state.execution
            previous = execution.status
            if previous.is_terminal:
                return False
            if expected is not None and previous not in expected:
                return False

            execution.status = status
            if error_message is not None:
                execution.error_message = error_message
            if status.is_terminal:
                execution.ended_at = datetime.now(UTC)
            await self.store.save_execution(execution)
            self._publish(
                ExecutionStatusChangedEvent(
                    execution_id=execution.id,
                    runbook_id=execution.runbook_id,
                    status=status,
                    previous_status=previous,
                    error_message=execution.error_message,
                )
            )
            return True

    def _summarize_errors(self, state: ExecutionState) -> Optional[str]:
        failures: List[Tuple[str, str]] = [
            (s.step_id, s.error_message or s.status.value)
            for s in state.execution.steps
            if s.status in (StepStatus.FAILED, StepStatus.CANCELED)
        ]
        if not failures:
            return None
        return "; ".join(f"{step_id}: {message}" for step_id, message in failures)

    def _publish(self, event: ExecutionEvent) -> None:
        try:
            self.sink.publish(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to publish %s: %s", type(event).__name__, exc)


__all__ = [
    "ExecutionManager",
    "ExecutionState",
    "RunbookExecutor",
    "classify_execution",
]
