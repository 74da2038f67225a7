"""
Single-step execution with skip conditions, retries and timeouts.

The executor never raises into the coordinator: every outcome, including
unexpected exceptions, is reported as a step transition and returned as a
terminal :class:`StepStatus`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional

from controlroom.core.cancellation import CancellationSignal
from controlroom.core.models import RunbookStep, StepStatus
from controlroom.runners.script_run import (
    ScriptRunCanceledError,
    ScriptRunFailedError,
    ScriptRunService,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepTransition:
    """A change to one step record, applied and persisted by the coordinator."""

    step_id: str
    status: StepStatus
    attempt: Optional[int] = None
    run_id: Optional[str] = None
    error_message: Optional[str] = None
    output: Optional[str] = None
    started: bool = False
    ended: bool = False


TransitionReporter = Callable[[StepTransition], Awaitable[None]]


class StepExecutor:
    """Runs one runbook step through the script execution use case."""

    def __init__(self, script_runs: ScriptRunService):
        self.script_runs = script_runs

    async def execute(
        self,
        step: RunbookStep,
        completed: Mapping[str, StepStatus],
        signal: CancellationSignal,
        report: TransitionReporter,
    ) -> StepStatus:
        """
        Execute a step to a terminal status.

        Args:
            step: Step definition
            completed: Snapshot of settled step statuses used for the skip condition
            signal: Execution-level cancellation signal
            report: Coroutine receiving every transition of this step

        Returns:
            SUCCEEDED, FAILED, SKIPPED or CANCELED
        """
        try:
            return await self._execute(step, completed, signal, report)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Step %s crashed", step.step_id)
            try:
                await report(
                    StepTransition(
                        step_id=step.step_id,
                        status=StepStatus.FAILED,
                        error_message=f"Unexpected error: {exc}",
                        ended=True,
                    )
                )
            except Exception as report_exc:  # noqa: BLE001
                logger.error("Could not record failure of step %s: %s", step.step_id, report_exc)
            return StepStatus.FAILED

    async def _execute(
        self,
        step: RunbookStep,
        completed: Mapping[str, StepStatus],
        signal: CancellationSignal,
        report: TransitionReporter,
    ) -> StepStatus:
        if signal.is_canceled:
            return await self._canceled(step, report, None)

        if not step.should_execute(completed):
            logger.info("Step %s skipped: condition not met", step.step_id)
            await report(
                StepTransition(
                    step_id=step.step_id,
                    status=StepStatus.SKIPPED,
                    output="Skipped: condition not met",
                    started=True,
                    ended=True,
                )
            )
            return StepStatus.SKIPPED

        max_attempts = step.max_attempts
        attempt = 1
        last_run_id: Optional[str] = None
        await report(
            StepTransition(step_id=step.step_id, status=StepStatus.RUNNING, attempt=1, started=True)
        )

        while True:
            attempt_signal = signal.linked(timeout=step.timeout_seconds)
            try:
                run_id = await self.script_runs.execute(
                    step.script_id,
                    profile_id=step.profile_id,
                    args_override=step.arguments_override,
                    signal=attempt_signal,
                )
            except ScriptRunCanceledError as exc:
                last_run_id = exc.run_id
                if not attempt_signal.timed_out or signal.is_canceled:
                    return await self._canceled(step, report, last_run_id)
                last_error = f"Step timed out after {step.timeout_seconds}s"
            except ScriptRunFailedError as exc:
                last_run_id = exc.run_id
                last_error = str(exc)
            except Exception as exc:  # noqa: BLE001
                last_error = str(exc) or type(exc).__name__
            else:
                logger.info("Step %s succeeded on attempt %d", step.step_id, attempt)
                await report(
                    StepTransition(
                        step_id=step.step_id,
                        status=StepStatus.SUCCEEDED,
                        attempt=attempt,
                        run_id=run_id,
                        output=await self._describe_run(run_id),
                        ended=True,
                    )
                )
                return StepStatus.SUCCEEDED
            finally:
                attempt_signal.dispose()

            logger.info(
                "Step %s attempt %d/%d failed: %s", step.step_id, attempt, max_attempts, last_error
            )
            if signal.is_canceled:
                return await self._canceled(step, report, last_run_id)

            if attempt >= max_attempts:
                await report(
                    StepTransition(
                        step_id=step.step_id,
                        status=StepStatus.FAILED,
                        attempt=attempt,
                        run_id=last_run_id,
                        error_message=last_error,
                        ended=True,
                    )
                )
                return StepStatus.FAILED

            delay = step.retry.get_delay(attempt) if step.retry is not None else 0.0
            if not await self._backoff(delay, signal):
                return await self._canceled(step, report, last_run_id)

            attempt += 1
            await report(
                StepTransition(
                    step_id=step.step_id,
                    status=StepStatus.RUNNING,
                    attempt=attempt,
                    run_id=last_run_id,
                    error_message=f"Retry {attempt}/{max_attempts}: {last_error}",
                )
            )

    async def _backoff(self, delay: float, signal: CancellationSignal) -> bool:
        """Sleep between attempts; False when canceled during the sleep."""
        logger.debug("Backing off %.2fs before retry", delay)
        return await signal.sleep(delay)

    async def _canceled(
        self,
        step: RunbookStep,
        report: TransitionReporter,
        run_id: Optional[str],
    ) -> StepStatus:
        logger.info("Step %s canceled", step.step_id)
        await report(
            StepTransition(
                step_id=step.step_id,
                status=StepStatus.CANCELED,
                run_id=run_id,
                error_message="Canceled",
                ended=True,
            )
        )
        return StepStatus.CANCELED

    async def _describe_run(self, run_id: str) -> Optional[str]:
        run = await self.script_runs.store.get_run(run_id)
        if run is None or run.summary is None:
            return None
        summary = run.summary
        return (
            f"exit={summary.exit_code} stdout_lines={summary.stdout_lines} "
            f"stderr_lines={summary.stderr_lines} artifacts={summary.artifact_count} "
            f"duration={summary.duration_seconds:.2f}s"
        )


__all__ = ["StepExecutor", "StepTransition", "TransitionReporter"]
