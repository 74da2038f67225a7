from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from controlroom.cli import app

runner = CliRunner()

DEFINITION = """
scripts:
  - id: ok
    path: scripts/ok.py
    args: "--greeting hi"
  - id: broken
    path: scripts/broken.py
runbook:
  id: nightly
  name: Nightly
  steps:
    - id: prepare
      script: ok
    - id: publish
      script: ok
      depends_on: [prepare]
"""

FAILING_DEFINITION = """
scripts:
  - id: ok
    path: scripts/ok.py
  - id: broken
    path: scripts/broken.py
runbook:
  id: flaky
  name: Flaky
  steps:
    - id: prepare
      script: ok
    - id: crash
      script: broken
      depends_on: [prepare]
"""


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CONTROLROOM_STORAGE_DB_PATH", str(tmp_path / "state" / "cr.db"))
    monkeypatch.setenv("CONTROLROOM_RUNS_BASE_DIR", str(tmp_path / "state" / "runs"))
    monkeypatch.setenv("CONTROLROOM_LOG_LEVEL", "ERROR")

    scripts = tmp_path / "scripts"
    scripts.mkdir()
    (scripts / "ok.py").write_text(
        "import sys\nprint('ok ' + ' '.join(sys.argv[1:]))\n", encoding="utf-8"
    )
    (scripts / "broken.py").write_text(
        textwrap.dedent(
            """
            import sys
            print("fatal: cannot reach db at 10.0.0.1:5432", file=sys.stderr)
            sys.exit(4)
            """
        ),
        encoding="utf-8",
    )
    (tmp_path / "nightly.yaml").write_text(DEFINITION, encoding="utf-8")
    (tmp_path / "flaky.yaml").write_text(FAILING_DEFINITION, encoding="utf-8")
    return tmp_path


def test_runbook_validate_ok(workspace: Path) -> None:
    result = runner.invoke(app, ["runbook", "validate", str(workspace / "nightly.yaml")])
    assert result.exit_code == 0
    assert "OK (2 steps): prepare -> publish" in result.stdout


def test_runbook_validate_reports_problems(workspace: Path) -> None:
    bad = workspace / "bad.yaml"
    bad.write_text(
        "runbook:\n  id: bad\n  name: Bad\n  steps:\n"
        "    - {id: a, script: ghost, depends_on: [b]}\n"
        "    - {id: b, script: ghost, depends_on: [a]}\n",
        encoding="utf-8",
    )
    result = runner.invoke(app, ["runbook", "validate", str(bad)])
    assert result.exit_code == 1
    assert "INVALID" in result.stdout
    assert "Dependency cycle detected" in result.stdout
    assert "undefined script 'ghost'" in result.stdout


def test_runbook_validate_missing_file(workspace: Path) -> None:
    result = runner.invoke(app, ["runbook", "validate", str(workspace / "nope.yaml")])
    assert result.exit_code == 1


@pytest.mark.slow
def test_runbook_run_and_inspect(workspace: Path) -> None:
    result = runner.invoke(
        app, ["runbook", "run", str(workspace / "nightly.yaml"), "--json", "--trigger", "ci"]
    )
    assert result.exit_code == 0, result.output
    info = json.loads(result.stdout)
    assert info["status"] == "succeeded"
    assert info["step_statuses"] == {"prepare": "succeeded", "publish": "succeeded"}

    listed = runner.invoke(app, ["execution", "list"])
    assert listed.exit_code == 0
    executions = json.loads(listed.stdout)
    assert [e["id"] for e in executions] == [info["execution_id"]]
    assert executions[0]["runbook_id"] == "nightly"

    shown = runner.invoke(app, ["execution", "show", info["execution_id"]])
    assert shown.exit_code == 0
    execution = json.loads(shown.stdout)
    assert execution["trigger_info"] == "ci"
    assert [s["step_id"] for s in execution["steps"]] == ["prepare", "publish"]
    assert all(s["run_id"] for s in execution["steps"])


@pytest.mark.slow
def test_runbook_run_partial_failure_exits_nonzero(workspace: Path) -> None:
    result = runner.invoke(app, ["runbook", "run", str(workspace / "flaky.yaml")])
    assert result.exit_code == 1
    assert "partial_success" in result.stdout
    assert "crash: failed" in result.stdout
    assert "Script exited with code 4" in result.stdout


def test_execution_show_unknown(workspace: Path) -> None:
    result = runner.invoke(app, ["execution", "show", "does-not-exist"])
    assert result.exit_code == 1


@pytest.mark.slow
def test_script_run_and_failure_groups(workspace: Path) -> None:
    definition = str(workspace / "nightly.yaml")

    ok = runner.invoke(app, ["script", "run", definition, "ok", "--args=--name x"])
    assert ok.exit_code == 0, ok.output
    run = json.loads(ok.stdout)
    assert run["status"] == "succeeded"
    assert run["summary"]["args_resolved"] == "--name x"

    for _ in range(2):
        failed = runner.invoke(app, ["script", "run", definition, "broken"])
        assert failed.exit_code == 1
        assert json.loads(failed.stdout)["status"] == "failed"

    groups = runner.invoke(app, ["failures", "list", "--recurring"])
    assert groups.exit_code == 0
    recurring = json.loads(groups.stdout)
    assert len(recurring) == 1
    assert recurring[0]["count"] == 2
    assert recurring[0]["last_stderr_line"] == "fatal: cannot reach db at 10.0.0.1:5432"

    unknown = runner.invoke(app, ["script", "run", definition, "ghost"])
    assert unknown.exit_code == 1


def test_data_init(workspace: Path) -> None:
    result = runner.invoke(app, ["data", "init"])
    assert result.exit_code == 0
    assert "Storage initialized: sqlite" in result.stdout
    assert (workspace / "state" / "cr.db").exists()

    bogus = runner.invoke(app, ["data", "init", "--backend", "postgres"])
    assert bogus.exit_code == 1
