"""Tests for the script run use case."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Callable

import pytest

from controlroom.core.cancellation import CancellationSignal
from controlroom.core.errors import ScriptDefinitionNotFoundError
from controlroom.core.fingerprint import compute_fingerprint
from controlroom.core.models import RunEventKind, RunStatus, ScriptProfile
from controlroom.runners.process import ScriptNotFoundError
from controlroom.runners.script_run import (
    ENV_ARTIFACT_DIR,
    ENV_PROFILE_ID,
    ENV_RUN_ID,
    ScriptRunCanceledError,
    ScriptRunFailedError,
    ScriptRunService,
    build_run_environment,
)
from controlroom.storage.backends.memory import MemoryStorageBackend
from factories import make_script

pytestmark = pytest.mark.slow

WriteScript = Callable[[str, str], Path]


def test_profile_env_overrides_run_variables(tmp_path: Path) -> None:
    profile = ScriptProfile(id="p", name="P", env={ENV_RUN_ID: "forced", "EXTRA": "1"})
    env = build_run_environment("run-1", tmp_path, profile)
    assert env[ENV_RUN_ID] == "forced"
    assert env[ENV_ARTIFACT_DIR] == str(tmp_path)
    assert env[ENV_PROFILE_ID] == "p"
    assert env["EXTRA"] == "1"


@pytest.mark.asyncio
async def test_successful_run_persists_summary_events_and_artifacts(
    write_script: WriteScript, store: MemoryStorageBackend, script_runs: ScriptRunService
) -> None:
    path = write_script(
        "report.py",
        """
        import os, pathlib, sys
        run_dir = pathlib.Path(os.environ["CONTROLROOM_ARTIFACT_DIR"])
        (run_dir / "report.json").write_text('{"ok": true}')
        (run_dir / "logs").mkdir()
        (run_dir / "logs" / "trace.log").write_text("trace")
        print("run " + os.environ["CONTROLROOM_RUN_ID"])
        print("profile " + os.environ["CONTROLROOM_PROFILE_NAME"])
        print("warning", file=sys.stderr)
        """,
    )
    script = make_script("report", path)

    run_id = await script_runs.execute(script)

    run = await store.get_run(run_id)
    assert run is not None
    assert run.status is RunStatus.SUCCEEDED
    assert run.exit_code == 0
    assert run.ended_at is not None
    summary = run.summary
    assert summary is not None
    assert summary.stdout_lines == 2
    assert summary.stderr_lines == 1
    assert summary.last_stderr_line == "warning"
    assert summary.failure_fingerprint is None
    assert summary.artifact_count == 2
    assert summary.profile_id == "default"
    assert summary.run_directory == str(script_runs.runs_base_dir / run_id)
    assert summary.env_overrides[ENV_RUN_ID] == run_id

    events = await store.get_run_events(run_id)
    kinds = [e.kind for e in events]
    assert kinds[0] is RunEventKind.RUN_STARTED
    assert kinds[-1] is RunEventKind.RUN_ENDED
    assert any(e.kind is RunEventKind.STDOUT and e.message == f"run {run_id}" for e in events)
    assert any(e.kind is RunEventKind.STDOUT and e.message == "profile Default" for e in events)

    artifacts = await store.list_artifacts(run_id)
    by_name = {Path(a.locator).name: a for a in artifacts}
    assert set(by_name) == {"report.json", "trace.log"}
    assert by_name["report.json"].media_type == "application/json"
    assert by_name["trace.log"].media_type == "text/plain"
    assert by_name["report.json"].sha256_hex == hashlib.sha256(b'{"ok": true}').hexdigest()
    assert by_name["report.json"].size_bytes == len(b'{"ok": true}')


@pytest.mark.asyncio
async def test_failed_run_raises_and_fingerprints(
    write_script: WriteScript, store: MemoryStorageBackend, script_runs: ScriptRunService
) -> None:
    path = write_script(
        "fail.py",
        """
        import sys
        print("Traceback (most recent call last):", file=sys.stderr)
        print("RuntimeError: database unavailable", file=sys.stderr)
        sys.exit(2)
        """,
    )
    script = make_script("fail", path)

    with pytest.raises(ScriptRunFailedError) as exc_info:
        await script_runs.execute(script)

    error = exc_info.value
    assert error.exit_code == 2
    assert error.last_stderr_line == "RuntimeError: database unavailable"
    assert str(error) == "Script exited with code 2: RuntimeError: database unavailable"
    expected = compute_fingerprint(
        2, "Traceback (most recent call last):\nRuntimeError: database unavailable"
    )
    assert error.fingerprint == expected

    run = await store.get_run(error.run_id)
    assert run is not None
    assert run.status is RunStatus.FAILED
    assert run.summary is not None
    assert run.summary.failure_fingerprint == expected

    with pytest.raises(ScriptRunFailedError):
        await script_runs.execute(script)
    assert await store.get_recurrence_count(expected) == 2


@pytest.mark.asyncio
async def test_profile_and_args_override(
    write_script: WriteScript, store: MemoryStorageBackend, script_runs: ScriptRunService
) -> None:
    path = write_script(
        "args.py",
        """
        import os, sys
        print(" ".join(sys.argv[1:]) + "|" + os.environ.get("MODE", ""))
        """,
    )
    script = make_script(
        "args",
        path,
        profiles=[
            {"id": "fast", "name": "Fast", "args": "--fast", "env": {"MODE": "quick"}},
            {"id": "full", "name": "Full", "args": "--full", "env": {"MODE": "thorough"}},
        ],
    )
    await store.save_script(script)

    run_id = await script_runs.execute("args", profile_id="full")
    events = await store.get_run_events(run_id)
    assert [e.message for e in events if e.kind is RunEventKind.STDOUT] == ["--full|thorough"]

    run_id = await script_runs.execute("args", profile_id="full", args_override="--only x")
    events = await store.get_run_events(run_id)
    assert [e.message for e in events if e.kind is RunEventKind.STDOUT] == ["--only x|thorough"]
    run = await store.get_run(run_id)
    assert run is not None and run.summary is not None
    assert run.summary.args_resolved == "--only x"
    assert run.summary.profile_id == "full"

    run_id = await script_runs.execute("args", args_override="   ")
    events = await store.get_run_events(run_id)
    assert [e.message for e in events if e.kind is RunEventKind.STDOUT] == ["--fast|quick"]


@pytest.mark.asyncio
async def test_output_events_can_be_disabled(
    write_script: WriteScript, store: MemoryStorageBackend, tmp_path: Path
) -> None:
    path = write_script("quiet.py", "print('a')\nprint('b')\n")
    service = ScriptRunService(store, tmp_path / "runs", capture_output_events=False)

    run_id = await service.execute(make_script("quiet", path))

    kinds = [e.kind for e in await store.get_run_events(run_id)]
    assert kinds == [RunEventKind.RUN_STARTED, RunEventKind.RUN_ENDED]
    run = await store.get_run(run_id)
    assert run is not None and run.summary is not None
    assert run.summary.stdout_lines == 2


@pytest.mark.asyncio
async def test_unknown_script_id(script_runs: ScriptRunService) -> None:
    with pytest.raises(ScriptDefinitionNotFoundError):
        await script_runs.execute("ghost")


@pytest.mark.asyncio
async def test_missing_script_file_is_persisted_as_failed(
    store: MemoryStorageBackend, script_runs: ScriptRunService, tmp_path: Path
) -> None:
    script = make_script("gone", tmp_path / "missing.py")

    with pytest.raises(ScriptNotFoundError):
        await script_runs.execute(script)

    runs = await store.list_runs(script_id="gone")
    assert len(runs) == 1
    assert runs[0].status is RunStatus.FAILED
    assert runs[0].summary is not None
    assert runs[0].summary.failure_fingerprint is not None
    assert runs[0].summary.exit_code is None


@pytest.mark.asyncio
async def test_canceled_run(
    write_script: WriteScript, store: MemoryStorageBackend, script_runs: ScriptRunService
) -> None:
    path = write_script("slow.py", "import time\nprint('started', flush=True)\ntime.sleep(60)\n")
    signal = CancellationSignal()
    original_append = store.append_run_event

    async def cancel_on_start(event):  # type: ignore[no-untyped-def]
        await original_append(event)
        if event.kind is RunEventKind.STDOUT and event.message == "started":
            signal.cancel()

    store.append_run_event = cancel_on_start  # type: ignore[method-assign]

    with pytest.raises(ScriptRunCanceledError) as exc_info:
        await script_runs.execute(make_script("slow", path), signal=signal)

    assert exc_info.value.reason == "canceled"
    run = await store.get_run(exc_info.value.run_id)
    assert run is not None
    assert run.status is RunStatus.CANCELED
    assert run.summary is not None
    assert run.summary.failure_fingerprint is None
