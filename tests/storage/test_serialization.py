from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from controlroom.core.models import RunStatus, ScriptProfile
from controlroom.storage.serialization import json_safe


def test_json_safe_nested_payload() -> None:
    payload = {
        "status": RunStatus.FAILED,
        "paths": (Path("/tmp/a"), Path("b/c")),
        "when": datetime(2024, 1, 2, 3, 4, 5),
        "offset": datetime(2024, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2))),
        "profile": ScriptProfile(id="p", name="P"),
        1: {"tags": {"x"}},
        "other": object,
    }

    result = json_safe(payload)

    assert result["status"] == "failed"
    assert result["paths"] == ["/tmp/a", "b/c"]
    assert result["when"] == "2024-01-02T03:04:05+00:00"
    assert result["offset"] == "2024-01-02T03:04:05+00:00"
    assert result["profile"] == {
        "id": "p",
        "name": "P",
        "args": "",
        "env": {},
        "working_dir": None,
    }
    assert result["1"] == {"tags": ["x"]}
    assert result["other"] == str(object)


def test_json_safe_passes_scalars_through() -> None:
    assert json_safe(None) is None
    assert json_safe(3) == 3
    assert json_safe("x") == "x"
    assert json_safe(True) is True
