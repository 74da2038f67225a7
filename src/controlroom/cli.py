from __future__ import annotations

import asyncio
import json
import logging
import pathlib
import sys
from typing import Any, List, Optional, Tuple

import typer

from controlroom.config import get_settings
from controlroom.core.errors import ControlRoomError, RunbookValidationError
from controlroom.core.models import ExecutionStatus, Runbook, Script
from controlroom.core.validation import topological_order, validate_runbook
from controlroom.runbooks import RunbookDefinitionError, load_definitions
from controlroom.runners.process import LocalProcessLauncher
from controlroom.runners.runbook_executor import RunbookExecutor
from controlroom.runners.script_run import (
    ScriptRunCanceledError,
    ScriptRunFailedError,
    ScriptRunService,
)
from controlroom.storage import create_storage_backend

app = typer.Typer(no_args_is_help=True)
runbook_app = typer.Typer(help="Runbook definition and execution commands")
execution_app = typer.Typer(help="Inspect recorded runbook executions")
script_app = typer.Typer(help="Run individual scripts")
failures_app = typer.Typer(help="Failure fingerprint analysis")
data_app = typer.Typer(help="Data management commands")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Route log records to stderr so stdout stays machine-readable."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)


def _load(path: pathlib.Path) -> Tuple[Runbook, List[Script]]:
    try:
        return load_definitions(path)
    except RunbookDefinitionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override CONTROLROOM_LOG_LEVEL for this invocation."
    ),
) -> None:
    """Execute runbooks of scripts as dependency graphs."""
    configure_logging(log_level or get_settings().LOG_LEVEL)


@runbook_app.command("validate")
def runbook_validate(
    path: pathlib.Path = typer.Argument(..., help="YAML definition file"),
) -> None:
    """Validate a runbook definition without executing it."""
    runbook, scripts = _load(path)
    result = validate_runbook(runbook)

    known = {script.id for script in scripts}
    errors = list(result.errors)
    for step in runbook.steps:
        if step.script_id not in known:
            errors.append(f"Step '{step.step_id}' references undefined script '{step.script_id}'")

    if errors:
        typer.echo("INVALID")
        for error in errors:
            typer.echo(f"- {error}")
        raise typer.Exit(1)

    typer.echo(f"OK ({len(runbook.steps)} steps): {' -> '.join(topological_order(runbook))}")


@runbook_app.command("run")
def runbook_run(
    path: pathlib.Path = typer.Argument(..., help="YAML definition file"),
    trigger: Optional[str] = typer.Option("cli", "--trigger", help="Trigger description to record."),
    as_json: bool = typer.Option(False, "--json", help="Print the final execution info as JSON."),
) -> None:
    """Register the definition's scripts, execute the runbook and wait for it."""
    runbook, scripts = _load(path)
    settings = get_settings()

    async def _run() -> Optional[Any]:
        storage = await create_storage_backend(settings)
        try:
            for script in scripts:
                await storage.save_script(script)
            await storage.save_runbook(runbook)

            executor = RunbookExecutor.from_settings(storage, settings)
            try:
                execution_id = await executor.execute(runbook, trigger_info=trigger)
            except RunbookValidationError as e:
                typer.echo(f"Validation failed (execution {e.execution_id}):", err=True)
                for error in e.errors:
                    typer.echo(f"- {error}", err=True)
                return None
            try:
                return await executor.wait_for_completion(execution_id)
            finally:
                await executor.shutdown()
        finally:
            await storage.close()

    info = asyncio.run(_run())
    if info is None:
        raise typer.Exit(1)

    if as_json:
        typer.echo(_dump(info.model_dump(mode="json")))
    else:
        typer.echo(f"Execution {info.execution_id}: {info.status.value}")
        for step_id, status in info.step_statuses.items():
            typer.echo(f"  {step_id}: {status.value}")
        if info.error_message:
            typer.echo(f"  error: {info.error_message}")

    if info.status is not ExecutionStatus.SUCCEEDED:
        raise typer.Exit(1)


@execution_app.command("show")
def execution_show(
    execution_id: str = typer.Argument(..., help="Execution ID"),
) -> None:
    """Show a recorded execution with its step records."""
    settings = get_settings()

    async def _show() -> Optional[dict]:
        storage = await create_storage_backend(settings)
        try:
            execution = await storage.get_execution(execution_id)
            return execution.model_dump(mode="json") if execution else None
        finally:
            await storage.close()

    payload = asyncio.run(_show())
    if payload is None:
        typer.echo(f"Execution not found: {execution_id}", err=True)
        raise typer.Exit(1)
    typer.echo(_dump(payload))


@execution_app.command("list")
def execution_list(
    runbook_id: Optional[str] = typer.Option(None, "--runbook", help="Filter by runbook ID"),
    status: Optional[ExecutionStatus] = typer.Option(None, "--status", help="Filter by status"),
    limit: int = typer.Option(20, "--limit", help="Maximum number of results"),
) -> None:
    """List recorded executions, newest first."""
    settings = get_settings()

    async def _list() -> list:
        storage = await create_storage_backend(settings)
        try:
            executions = await storage.list_executions(
                runbook_id=runbook_id, status=status, limit=limit
            )
            return [
                {
                    "id": e.id,
                    "runbook_id": e.runbook_id,
                    "status": e.status.value,
                    "started_at": e.started_at.isoformat(),
                    "ended_at": e.ended_at.isoformat() if e.ended_at else None,
                    "error_message": e.error_message,
                }
                for e in executions
            ]
        finally:
            await storage.close()

    typer.echo(_dump(asyncio.run(_list())))


@script_app.command("run")
def script_run(
    path: pathlib.Path = typer.Argument(..., help="YAML definition file"),
    script_id: str = typer.Argument(..., help="Script ID within the definition"),
    profile: Optional[str] = typer.Option(None, "--profile", help="Profile ID to run with"),
    args: Optional[str] = typer.Option(None, "--args", help="Argument string overriding the profile"),
) -> None:
    """Run a single script from a definition file and print its summary."""
    _, scripts = _load(path)
    script = next((s for s in scripts if s.id == script_id), None)
    if script is None:
        typer.echo(f"Error: script '{script_id}' not defined in {path}", err=True)
        raise typer.Exit(1)
    settings = get_settings()

    async def _run() -> tuple[int, Optional[dict]]:
        storage = await create_storage_backend(settings)
        service = ScriptRunService(
            storage,
            runs_base_dir=settings.RUNS_BASE_DIR,
            launcher=LocalProcessLauncher(kill_grace_seconds=settings.KILL_GRACE_SECONDS),
            capture_output_events=settings.CAPTURE_OUTPUT_EVENTS,
        )
        try:
            await storage.save_script(script)
            code = 0
            try:
                run_id = await service.execute(script, profile_id=profile, args_override=args)
            except (ScriptRunFailedError, ScriptRunCanceledError) as e:
                # The printed run record carries the failure details.
                run_id, code = e.run_id, 1
            except ControlRoomError as e:
                typer.echo(f"Error: {e}", err=True)
                return 1, None
            run = await storage.get_run(run_id)
            return code, run.model_dump(mode="json") if run else None
        finally:
            await storage.close()

    code, payload = asyncio.run(_run())
    if payload is not None:
        typer.echo(_dump(payload))
    if code:
        raise typer.Exit(code)


@failures_app.command("list")
def failures_list(
    recurring: bool = typer.Option(
        False, "--recurring", help="Only show fingerprints seen more than once."
    ),
    limit: int = typer.Option(50, "--limit", help="Maximum number of groups"),
) -> None:
    """Group failed runs by failure fingerprint."""
    settings = get_settings()

    async def _list() -> list:
        storage = await create_storage_backend(settings)
        try:
            groups = await storage.list_failure_groups(
                min_count=2 if recurring else 1, limit=limit
            )
            return [group.model_dump(mode="json") for group in groups]
        finally:
            await storage.close()

    typer.echo(_dump(asyncio.run(_list())))


@data_app.command("init")
def data_init(
    backend: Optional[str] = typer.Option(None, "--backend", help="Storage backend: sqlite, memory"),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Database path (sqlite only)"),
) -> None:
    """Initialize storage backend"""
    overrides = {}
    if backend:
        overrides["STORAGE_BACKEND"] = backend
    if db_path:
        overrides["STORAGE_DB_PATH"] = db_path
    settings = get_settings().model_copy(update=overrides) if overrides else get_settings()

    async def _init() -> None:
        storage = await create_storage_backend(settings)
        typer.echo(f"Storage initialized: {settings.STORAGE_BACKEND}")
        typer.echo(f"  Capabilities: {storage.capabilities}")
        await storage.close()

    try:
        asyncio.run(_init())
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


app.add_typer(runbook_app, name="runbook")
app.add_typer(execution_app, name="execution")
app.add_typer(script_app, name="script")
app.add_typer(failures_app, name="failures")
app.add_typer(data_app, name="data")


if __name__ == "__main__":
    app()
