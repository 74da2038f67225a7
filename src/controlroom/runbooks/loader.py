"""
YAML runbook definitions.

A definition file holds the scripts a runbook uses and the runbook itself::

    scripts:
      - id: build
        name: Build
        path: scripts/build.py
        profiles:
          - {id: fast, name: Fast, args: "--fast", env: {LEVEL: "1"}}
    runbook:
      id: release
      name: Release
      steps:
        - id: build
          script: build
          retry: {max_attempts: 3, initial_delay_seconds: 2}
        - id: notify
          script: notify
          depends_on: [build]
          condition: on_failure

Relative script paths and working directories resolve against the
directory of the YAML file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml
from pydantic import ValidationError

from controlroom.core.errors import ControlRoomError
from controlroom.core.models import Runbook, Script, ScriptConfig

# Short keys accepted in step mappings.
_STEP_ALIASES = {
    "id": "step_id",
    "script": "script_id",
    "profile": "profile_id",
    "args": "arguments_override",
    "timeout": "timeout_seconds",
}


class RunbookDefinitionError(ControlRoomError):
    """Definition file is missing, malformed or fails model validation."""

    pass


def _resolve(base: Path, value: Any) -> Any:
    if not value:
        return value
    path = Path(str(value)).expanduser()
    return str(path if path.is_absolute() else (base / path).resolve())


def _parse_script(base: Path, data: Dict[str, Any]) -> Script:
    config: Dict[str, Any] = {
        key: data[key]
        for key in ("schema_version", "path", "working_dir", "profiles", "args", "env")
        if key in data
    }
    if "path" not in config:
        raise RunbookDefinitionError(f"Script '{data.get('id', '?')}' has no path")
    config["path"] = _resolve(base, config["path"])
    if config.get("working_dir"):
        config["working_dir"] = _resolve(base, config["working_dir"])
    for profile in config.get("profiles") or []:
        if isinstance(profile, dict) and profile.get("working_dir"):
            profile["working_dir"] = _resolve(base, profile["working_dir"])

    script_id = str(data.get("id", ""))
    return Script(
        id=script_id,
        name=str(data.get("name", script_id)),
        config=ScriptConfig.model_validate(config),
    )


def _parse_step(data: Dict[str, Any]) -> Dict[str, Any]:
    step = {_STEP_ALIASES.get(key, key): value for key, value in data.items()}
    step.setdefault("name", step.get("step_id", ""))
    condition = step.get("condition")
    if isinstance(condition, str):
        step["condition"] = {"type": condition}
    depends_on = step.get("depends_on")
    if isinstance(depends_on, str):
        step["depends_on"] = [depends_on]
    return step


def load_definitions(path: Path) -> Tuple[Runbook, List[Script]]:
    """
    Load a runbook and its scripts from a YAML file.

    Args:
        path: Path to the YAML definition

    Returns:
        The runbook and the scripts it references

    Raises:
        RunbookDefinitionError: If the file is missing or its structure is invalid
    """
    if not path.exists():
        raise RunbookDefinitionError(f"Definition file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise RunbookDefinitionError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise RunbookDefinitionError(f"Definition must be a mapping in {path}")

    base = path.resolve().parent
    scripts_data = data.get("scripts") or []
    runbook_data = data.get("runbook")

    if not isinstance(scripts_data, list):
        raise RunbookDefinitionError(f"'scripts' must be a list in {path}")
    if not isinstance(runbook_data, dict):
        raise RunbookDefinitionError(f"'runbook' must be a mapping in {path}")

    try:
        scripts = [_parse_script(base, item) for item in scripts_data if isinstance(item, dict)]
        steps = [_parse_step(item) for item in runbook_data.get("steps") or [] if isinstance(item, dict)]
        runbook = Runbook.model_validate(
            {
                "id": runbook_data.get("id", path.stem),
                "name": runbook_data.get("name", path.stem),
                "description": runbook_data.get("description", ""),
                "version": runbook_data.get("version", 1),
                "is_enabled": runbook_data.get("enabled", True),
                "steps": steps,
            }
        )
    except ValidationError as exc:
        raise RunbookDefinitionError(f"Invalid definition in {path}: {exc}") from exc

    return runbook, scripts


__all__ = ["RunbookDefinitionError", "load_definitions"]
