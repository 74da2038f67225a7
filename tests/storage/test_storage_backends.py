"""Tests shared by every storage backend, plus SQLite durability."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Optional

import pytest
import pytest_asyncio

from controlroom.core.models import (
    Artifact,
    ExecutionStatus,
    Run,
    RunbookExecution,
    RunEvent,
    RunEventKind,
    RunStatus,
    RunSummary,
    StepExecution,
    StepStatus,
)
from controlroom.storage.backends.memory import MemoryStorageBackend
from controlroom.storage.backends.sqlite import SQLiteStorageBackend
from controlroom.storage.base import StorageBackend
from factories import make_runbook, make_script, make_step


@pytest_asyncio.fixture(params=["sqlite", "memory"])
async def backend(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncIterator[StorageBackend]:
    storage: StorageBackend
    if request.param == "sqlite":
        storage = SQLiteStorageBackend(db_path=tmp_path / "nested" / "test.db")
    else:
        storage = MemoryStorageBackend()
    await storage.initialize()
    yield storage
    await storage.close()


def _failed_run(
    run_id: str,
    fingerprint: Optional[str],
    started_at: datetime,
    script_id: str = "deploy",
    last_line: str = "boom",
) -> Run:
    return Run(
        run_id=run_id,
        script_id=script_id,
        script_name=script_id.title(),
        started_at=started_at,
        ended_at=started_at + timedelta(seconds=1),
        status=RunStatus.FAILED,
        exit_code=1,
        summary=RunSummary(
            status=RunStatus.FAILED,
            duration_seconds=1.0,
            exit_code=1,
            failure_fingerprint=fingerprint,
            last_stderr_line=last_line,
        ),
    )


@pytest.mark.asyncio
async def test_execution_roundtrip_keeps_step_order(backend: StorageBackend) -> None:
    execution = RunbookExecution(
        id="exec-1",
        runbook_id="rb",
        trigger_info="manual",
        steps=[StepExecution(step_id=s, name=s.upper()) for s in ("z", "a", "m")],
    )
    await backend.save_execution(execution)

    loaded = await backend.get_execution("exec-1")
    assert loaded is not None
    assert loaded.status is ExecutionStatus.RUNNING
    assert loaded.trigger_info == "manual"
    assert [s.step_id for s in loaded.steps] == ["z", "a", "m"]
    assert all(s.status is StepStatus.PENDING for s in loaded.steps)


@pytest.mark.asyncio
async def test_save_step_execution_updates_in_place(backend: StorageBackend) -> None:
    execution = RunbookExecution(
        id="exec-2",
        runbook_id="rb",
        steps=[StepExecution(step_id="a", name="A"), StepExecution(step_id="b", name="B")],
    )
    await backend.save_execution(execution)

    now = datetime.now(UTC)
    step = StepExecution(
        step_id="a",
        name="A",
        status=StepStatus.FAILED,
        run_id="run-1",
        started_at=now,
        ended_at=now,
        attempt=3,
        error_message="Script exited with code 1",
    )
    await backend.save_step_execution("exec-2", step)

    loaded = await backend.get_execution("exec-2")
    assert loaded is not None
    assert [s.step_id for s in loaded.steps] == ["a", "b"]
    first = loaded.steps[0]
    assert first.status is StepStatus.FAILED
    assert first.attempt == 3
    assert first.run_id == "run-1"
    assert first.error_message == "Script exited with code 1"
    assert first.ended_at is not None


@pytest.mark.asyncio
async def test_execution_status_update_and_listing(backend: StorageBackend) -> None:
    base = datetime.now(UTC)
    for index, runbook_id in enumerate(["rb", "rb", "other"]):
        await backend.save_execution(
            RunbookExecution(
                id=f"exec-{index}",
                runbook_id=runbook_id,
                started_at=base + timedelta(seconds=index),
            )
        )

    done = await backend.get_execution("exec-0")
    assert done is not None
    done.status = ExecutionStatus.PARTIAL_SUCCESS
    done.ended_at = datetime.now(UTC)
    done.error_message = "a: failed"
    await backend.save_execution(done)

    newest_first = await backend.list_executions()
    assert [e.id for e in newest_first] == ["exec-2", "exec-1", "exec-0"]

    by_runbook = await backend.list_executions(runbook_id="rb")
    assert {e.id for e in by_runbook} == {"exec-0", "exec-1"}

    partial = await backend.list_executions(status=ExecutionStatus.PARTIAL_SUCCESS)
    assert [e.id for e in partial] == ["exec-0"]
    assert partial[0].error_message == "a: failed"

    assert len(await backend.list_executions(limit=1)) == 1
    assert await backend.get_execution("missing") is None


@pytest.mark.asyncio
async def test_run_lifecycle_events_and_artifacts(backend: StorageBackend) -> None:
    run = Run(run_id="run-1", script_id="build", script_name="Build")
    await backend.create_run(run)

    await backend.append_run_event(
        RunEvent(run_id="run-1", kind=RunEventKind.RUN_STARTED, payload={"args": "--x"})
    )
    await backend.append_run_event(RunEvent(run_id="run-1", kind=RunEventKind.STDOUT, message="hi"))
    await backend.add_artifact(
        Artifact(
            artifact_id="art-1",
            run_id="run-1",
            media_type="text/plain",
            locator="/tmp/run-1/out.txt",
            sha256_hex="0" * 64,
            size_bytes=3,
        )
    )

    run.status = RunStatus.SUCCEEDED
    run.exit_code = 0
    run.ended_at = datetime.now(UTC)
    run.summary = RunSummary(status=RunStatus.SUCCEEDED, duration_seconds=0.5, exit_code=0, stdout_lines=1)
    await backend.update_run(run)

    loaded = await backend.get_run("run-1")
    assert loaded is not None
    assert loaded.status is RunStatus.SUCCEEDED
    assert loaded.exit_code == 0
    assert loaded.summary is not None
    assert loaded.summary.stdout_lines == 1

    events = await backend.get_run_events("run-1")
    assert [e.kind for e in events] == [RunEventKind.RUN_STARTED, RunEventKind.STDOUT]
    assert events[0].payload == {"args": "--x"}
    assert len(await backend.get_run_events("run-1", limit=1)) == 1

    artifacts = await backend.list_artifacts("run-1")
    assert [a.artifact_id for a in artifacts] == ["art-1"]

    runs = await backend.list_runs(script_id="build", status=RunStatus.SUCCEEDED)
    assert [r.run_id for r in runs] == ["run-1"]
    assert await backend.list_runs(script_id="other") == []


@pytest.mark.asyncio
async def test_scripts_and_runbooks(backend: StorageBackend, tmp_path: Path) -> None:
    script = make_script("build", tmp_path / "build.py", args="--fast", env={"A": "1"})
    await backend.save_script(script)
    loaded_script = await backend.get_script("build")
    assert loaded_script is not None
    assert loaded_script.config.get_profile().args == "--fast"
    assert loaded_script.config.get_profile().env == {"A": "1"}
    assert [s.id for s in await backend.list_scripts()] == ["build"]

    runbook = make_runbook(make_step("a", script_id="build"), make_step("b", depends_on=["a"]))
    await backend.save_runbook(runbook)
    loaded_runbook = await backend.get_runbook("rb")
    assert loaded_runbook is not None
    assert [s.step_id for s in loaded_runbook.steps] == ["a", "b"]
    assert loaded_runbook.steps[1].depends_on == ["a"]
    assert [r.id for r in await backend.list_runbooks()] == ["rb"]

    assert await backend.get_script("missing") is None
    assert await backend.get_runbook("missing") is None


@pytest.mark.asyncio
async def test_failure_groups(backend: StorageBackend) -> None:
    base = datetime(2024, 5, 1, tzinfo=UTC)
    await backend.create_run(_failed_run("r1", "fp-a", base, script_id="deploy"))
    await backend.create_run(_failed_run("r2", "fp-a", base + timedelta(hours=1), script_id="rollback", last_line="late"))
    await backend.create_run(_failed_run("r3", "fp-b", base + timedelta(hours=2)))
    await backend.create_run(_failed_run("r4", None, base + timedelta(hours=3)))

    groups = await backend.list_failure_groups()
    assert [g.fingerprint for g in groups] == ["fp-b", "fp-a"]

    recurring = await backend.list_failure_groups(min_count=2)
    assert len(recurring) == 1
    group = recurring[0]
    assert group.fingerprint == "fp-a"
    assert group.count == 2
    assert group.first_run_id == "r1"
    assert group.latest_run_id == "r2"
    assert group.distinct_scripts == 2
    assert group.script_name == "Rollback"
    assert group.last_stderr_line == "late"
    assert group.first_seen < group.last_seen

    assert await backend.get_recurrence_count("fp-a") == 2
    assert await backend.get_recurrence_count("fp-missing") == 0


@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(tmp_path: Path) -> None:
    db_path = tmp_path / "durable.db"
    first = SQLiteStorageBackend(db_path=db_path)
    await first.initialize()
    assert first.capabilities.durable
    await first.save_execution(
        RunbookExecution(id="exec-1", runbook_id="rb", steps=[StepExecution(step_id="a", name="A")])
    )
    await first.close()

    second = SQLiteStorageBackend(db_path=db_path)
    await second.initialize()
    try:
        loaded = await second.get_execution("exec-1")
        assert loaded is not None
        assert [s.step_id for s in loaded.steps] == ["a"]
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_sqlite_requires_initialize() -> None:
    storage = SQLiteStorageBackend(db_path=":memory:")
    assert not storage.capabilities.durable
    with pytest.raises(RuntimeError):
        await storage.get_execution("x")
