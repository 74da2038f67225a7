"""Pytest configuration helpers."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import AsyncIterator, Callable, Iterator

import pytest
import pytest_asyncio

from controlroom.config import get_settings
from controlroom.runners.process import LocalProcessLauncher
from controlroom.runners.script_run import ScriptRunService
from controlroom.storage.backends.memory import MemoryStorageBackend


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Iterator[None]:
    """Settings are cached per process; tests that patch env need a fresh read."""
    get_settings.cache_clear()
    try:
        yield
    finally:
        get_settings.cache_clear()


@pytest_asyncio.fixture
async def store() -> AsyncIterator[MemoryStorageBackend]:
    backend = MemoryStorageBackend()
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a Python script under tmp_path/scripts and return its path."""
    scripts_dir = tmp_path / "scripts"
    scripts_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str) -> Path:
        path = scripts_dir / name
        path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def script_runs(store: MemoryStorageBackend, tmp_path: Path) -> ScriptRunService:
    return ScriptRunService(
        store,
        runs_base_dir=tmp_path / "runs",
        launcher=LocalProcessLauncher(kill_grace_seconds=1.0),
    )
