"""
Script execution use case.

Runs one script with a resolved profile inside a fresh run directory,
streams its output into the store, captures artifacts, fingerprints
failures and persists a reproducible :class:`RunSummary`.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from controlroom.core.cancellation import CancellationSignal
from controlroom.core.errors import ControlRoomError, ScriptDefinitionNotFoundError
from controlroom.core.fingerprint import compute_fingerprint
from controlroom.core.models import (
    Run,
    RunEvent,
    RunEventKind,
    RunStatus,
    RunSummary,
    Script,
    ScriptProfile,
)
from controlroom.runners.artifacts import collect_artifacts
from controlroom.runners.process import LocalProcessLauncher, ProcessLauncher, ProcessResult, ProcessSpec
from controlroom.storage.base import StorageBackend

logger = logging.getLogger(__name__)

ENV_RUN_ID = "CONTROLROOM_RUN_ID"
ENV_RUN_DIR = "CONTROLROOM_RUN_DIR"
ENV_ARTIFACT_DIR = "CONTROLROOM_ARTIFACT_DIR"
ENV_PROFILE_ID = "CONTROLROOM_PROFILE_ID"
ENV_PROFILE_NAME = "CONTROLROOM_PROFILE_NAME"

PREVIEW_MAX_CHARS = 200


class ScriptRunFailedError(ControlRoomError):
    """Script ran to completion with a non-zero exit code."""

    def __init__(
        self,
        run_id: str,
        exit_code: Optional[int],
        fingerprint: Optional[str] = None,
        last_stderr_line: Optional[str] = None,
    ):
        self.run_id = run_id
        self.exit_code = exit_code
        self.fingerprint = fingerprint
        self.last_stderr_line = last_stderr_line
        message = f"Script exited with code {exit_code}"
        if last_stderr_line:
            message += f": {last_stderr_line}"
        super().__init__(message)


class ScriptRunCanceledError(ControlRoomError):
    """Script run was canceled (or timed out) before it exited."""

    def __init__(self, run_id: str, reason: Optional[str] = None):
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Script run {run_id} was {'timed out' if reason == 'timeout' else 'canceled'}")


@dataclass(slots=True)
class _OutputCapture:
    stdout_lines: int = 0
    stderr_lines: int = 0
    stderr: List[str] = field(default_factory=list)
    last_stderr_line: Optional[str] = None


def _preview(line: Optional[str]) -> Optional[str]:
    if line is None:
        return None
    return line[:PREVIEW_MAX_CHARS]


def resolve_working_dir(script: Script, profile: ScriptProfile) -> Path:
    """Profile working dir, then the script default, then the script's own directory."""
    if profile.working_dir:
        return Path(profile.working_dir)
    if script.config.working_dir:
        return Path(script.config.working_dir)
    return script.path.resolve().parent


def build_run_environment(run_id: str, run_dir: Path, profile: ScriptProfile) -> Dict[str, str]:
    """Run identity variables overlaid by the profile's environment (profile wins)."""
    env = {
        ENV_RUN_ID: run_id,
        ENV_RUN_DIR: str(run_dir),
        ENV_ARTIFACT_DIR: str(run_dir),
        ENV_PROFILE_ID: profile.id,
        ENV_PROFILE_NAME: profile.name,
    }
    env.update(profile.env)
    return env


class ScriptRunService:
    """
    Orchestrates a single script run.

    Success is decided solely by the launcher's reported outcome: exit code
    zero succeeds, anything else raises :class:`ScriptRunFailedError` once the
    failed run has been persisted.
    """

    def __init__(
        self,
        store: StorageBackend,
        runs_base_dir: Union[str, Path],
        launcher: Optional[ProcessLauncher] = None,
        capture_output_events: bool = True,
    ):
        """
        Initialize the use case.

        Args:
            store: Storage backend receiving runs, events and artifacts
            runs_base_dir: Directory under which one run directory per run is created
            launcher: Process launcher (defaults to :class:`LocalProcessLauncher`)
            capture_output_events: Persist every output line as a run event
        """
        self.store = store
        self.runs_base_dir = Path(runs_base_dir)
        self.launcher: ProcessLauncher = launcher or LocalProcessLauncher()
        self.capture_output_events = capture_output_events

    async def execute(
        self,
        script: Union[Script, str],
        profile_id: Optional[str] = None,
        args_override: Optional[str] = None,
        signal: Optional[CancellationSignal] = None,
    ) -> str:
        """
        Run a script and persist everything about the run.

        Args:
            script: Script definition, or the id of one registered in the store
            profile_id: Profile to use (first profile, then built-in default, if absent)
            args_override: Argument string replacing the profile's arguments when non-empty
            signal: Cancellation signal forwarded to the launcher

        Returns:
            The run id

        Raises:
            ScriptDefinitionNotFoundError: If a script id is not registered
            ScriptRunFailedError: If the script exited non-zero
            ScriptRunCanceledError: If the run was canceled or timed out
            ScriptNotFoundError: If the script file is missing
            ScriptLaunchError: If the process could not be spawned
        """
        if isinstance(script, str):
            loaded = await self.store.get_script(script)
            if loaded is None:
                raise ScriptDefinitionNotFoundError(f"Script not registered: {script}")
            script = loaded

        profile = script.config.get_profile(profile_id)
        arguments = args_override if args_override and args_override.strip() else profile.args
        working_dir = resolve_working_dir(script, profile)

        run_id = str(uuid.uuid4())
        run_dir = self.runs_base_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        env = build_run_environment(run_id, run_dir, profile)

        run = Run(run_id=run_id, script_id=script.id, script_name=script.name)
        await self.store.create_run(run)
        await self.store.append_run_event(
            RunEvent(
                run_id=run_id,
                kind=RunEventKind.RUN_STARTED,
                message=f"Starting {script.name}",
                payload={"profile_id": profile.id, "args": arguments},
            )
        )

        capture = _OutputCapture()

        async def on_line(is_stderr: bool, line: str) -> None:
            if is_stderr:
                capture.stderr_lines += 1
                capture.stderr.append(line)
                capture.last_stderr_line = line
            else:
                capture.stdout_lines += 1
            if self.capture_output_events:
                await self.store.append_run_event(
                    RunEvent(
                        run_id=run_id,
                        kind=RunEventKind.STDERR if is_stderr else RunEventKind.STDOUT,
                        message=line,
                    )
                )

        spec = ProcessSpec(
            script_path=script.path,
            arguments=arguments,
            working_dir=working_dir,
            env=env,
        )

        logger.info("Run %s: starting script %s (profile=%s)", run_id, script.id, profile.id)
        started = time.monotonic()

        def summarize(
            status: RunStatus,
            exit_code: Optional[int],
            fingerprint: Optional[str],
            artifact_count: int,
            command_line: Optional[str],
            last_line: Optional[str],
        ) -> RunSummary:
            return RunSummary(
                status=status,
                duration_seconds=time.monotonic() - started,
                stdout_lines=capture.stdout_lines,
                stderr_lines=capture.stderr_lines,
                exit_code=exit_code,
                failure_fingerprint=fingerprint,
                last_stderr_line=_preview(last_line),
                artifact_count=artifact_count,
                command_line=command_line,
                working_directory=str(working_dir),
                run_directory=str(run_dir),
                profile_id=profile.id,
                profile_name=profile.name,
                args_resolved=arguments,
                env_overrides=dict(env),
            )

        try:
            result: ProcessResult = await self.launcher.run(spec, on_line, signal)
        except asyncio.CancelledError:
            await self._finish(run, summarize(RunStatus.CANCELED, None, None, 0, None, capture.last_stderr_line))
            raise
        except Exception as exc:
            error_text = "\n".join(capture.stderr + [str(exc)])
            fingerprint = compute_fingerprint(None, error_text)
            await self._finish(
                run,
                summarize(RunStatus.FAILED, None, fingerprint, 0, None, capture.last_stderr_line or str(exc)),
            )
            logger.warning("Run %s: launch failed: %s", run_id, exc)
            raise

        artifacts = await collect_artifacts(run_id, run_dir)
        for artifact in artifacts:
            await self.store.add_artifact(artifact)

        if result.was_canceled:
            status = RunStatus.CANCELED
        elif result.exit_code == 0:
            status = RunStatus.SUCCEEDED
        else:
            status = RunStatus.FAILED

        fingerprint = (
            compute_fingerprint(result.exit_code, "\n".join(capture.stderr))
            if status is RunStatus.FAILED
            else None
        )
        summary = summarize(
            status,
            result.exit_code,
            fingerprint,
            len(artifacts),
            result.command_line,
            capture.last_stderr_line,
        )
        await self._finish(run, summary)

        if status is RunStatus.CANCELED:
            raise ScriptRunCanceledError(run_id, signal.reason if signal else None)
        if status is RunStatus.FAILED:
            raise ScriptRunFailedError(
                run_id, result.exit_code, fingerprint, summary.last_stderr_line
            )
        return run_id

    async def _finish(self, run: Run, summary: RunSummary) -> None:
        run.status = summary.status
        run.exit_code = summary.exit_code
        run.ended_at = datetime.now(UTC)
        run.summary = summary
        await self.store.update_run(run)
        await self.store.append_run_event(
            RunEvent(
                run_id=run.run_id,
                kind=RunEventKind.RUN_ENDED,
                message=summary.status.value,
                payload={"exit_code": summary.exit_code, "fingerprint": summary.failure_fingerprint},
            )
        )
        logger.info(
            "Run %s: %s (exit=%s, %.2fs)",
            run.run_id,
            summary.status.value,
            summary.exit_code,
            summary.duration_seconds,
        )


__all__ = [
    "ENV_ARTIFACT_DIR",
    "ENV_PROFILE_ID",
    "ENV_PROFILE_NAME",
    "ENV_RUN_DIR",
    "ENV_RUN_ID",
    "ScriptRunCanceledError",
    "ScriptRunFailedError",
    "ScriptRunService",
    "build_run_environment",
    "resolve_working_dir",
]
