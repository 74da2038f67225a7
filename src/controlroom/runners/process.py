"""
Local process launcher for script runs.

Spawns one external process per script invocation, streams stdout and
stderr line by line through a callback while the process runs, and
terminates the whole process tree when the run is canceled.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import sys
import time
from asyncio.subprocess import DEVNULL, PIPE
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

import psutil

from controlroom.core.cancellation import CancellationSignal
from controlroom.core.errors import ControlRoomError

logger = logging.getLogger(__name__)

# Per-line read buffer; longer lines are delivered in pieces of at most this size.
STREAM_LIMIT_BYTES = 4 * 1024 * 1024

LineCallback = Callable[[bool, str], Awaitable[None]]


class ScriptNotFoundError(ControlRoomError):
    """Script file does not exist; raised before any process is spawned."""

    pass


class ScriptLaunchError(ControlRoomError):
    """The operating system refused to start the process."""

    pass


@dataclass(slots=True)
class ProcessSpec:
    """What to launch."""

    script_path: Path
    arguments: str = ""
    working_dir: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessResult:
    """How a launched process ended."""

    exit_code: Optional[int]
    was_canceled: bool
    command_line: str
    duration_seconds: float
    pid: Optional[int] = None


def split_arguments(arguments: str) -> List[str]:
    if not arguments or not arguments.strip():
        return []
    return shlex.split(arguments, posix=True)


def build_command(script_path: Path, arguments: str = "") -> List[str]:
    """
    Map a script to the argv that runs it, based on file extension.

    - ``.ps1``: PowerShell (``pwsh -NoProfile -ExecutionPolicy Bypass -File``)
    - ``.cmd`` / ``.bat``: ``cmd.exe /c``
    - ``.py``: the current Python interpreter
    - ``.sh``: ``bash``
    - anything else: executed directly
    """
    path = str(script_path)
    extension = script_path.suffix.lower()
    args = split_arguments(arguments)

    if extension == ".ps1":
        prefix = ["pwsh", "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", path]
    elif extension in (".cmd", ".bat"):
        prefix = ["cmd.exe", "/c", path]
    elif extension == ".py":
        prefix = [sys.executable, path]
    elif extension == ".sh":
        prefix = ["bash", path]
    else:
        prefix = [path]
    return prefix + args


class ProcessLauncher(Protocol):
    """Protocol describing the launcher surface used by script runs."""

    async def run(
        self,
        spec: ProcessSpec,
        on_line: LineCallback,
        signal: Optional[CancellationSignal] = None,
    ) -> ProcessResult:  # pragma: no cover - interface contract
        """Run the process to completion or cancellation."""


class LocalProcessLauncher:
    """Launches scripts as local subprocesses via asyncio."""

    def __init__(
        self, kill_grace_seconds: float = 5.0, stream_limit_bytes: int = STREAM_LIMIT_BYTES
    ) -> None:
        self.kill_grace_seconds = kill_grace_seconds
        self.stream_limit_bytes = stream_limit_bytes

    async def run(
        self,
        spec: ProcessSpec,
        on_line: LineCallback,
        signal: Optional[CancellationSignal] = None,
    ) -> ProcessResult:
        """
        Run a script and stream its output.

        Args:
            spec: Script, arguments, working directory and environment overlay
            on_line: Awaited with ``(is_stderr, line)`` for every output line
            signal: Cancellation signal; when it fires the process tree is killed

        Returns:
            ProcessResult with the exit code, or ``was_canceled=True`` and no
            exit code when the run was canceled

        Raises:
            ScriptNotFoundError: If the script file does not exist
            ScriptLaunchError: If the process could not be spawned
        """
        script_path = Path(spec.script_path)
        if not script_path.is_file():
            raise ScriptNotFoundError(f"Script not found: {script_path}")

        argv = build_command(script_path, spec.arguments)
        command_line = shlex.join(argv)
        cwd = Path(spec.working_dir) if spec.working_dir else script_path.resolve().parent

        merged_env = os.environ.copy()
        merged_env.update(spec.env)

        if signal is not None and signal.is_canceled:
            return ProcessResult(
                exit_code=None, was_canceled=True, command_line=command_line, duration_seconds=0.0
            )

        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(  # nosec B603 - argv built from fixed launcher table
                *argv,
                stdin=DEVNULL,
                stdout=PIPE,
                stderr=PIPE,
                cwd=str(cwd),
                env=merged_env,
                limit=self.stream_limit_bytes,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            raise ScriptLaunchError(f"Failed to start '{command_line}': {exc}") from exc

        logger.debug("Started pid=%s: %s", process.pid, command_line)

        completion = asyncio.ensure_future(
            asyncio.gather(
                self._pump(process.stdout, False, on_line),
                self._pump(process.stderr, True, on_line),
                process.wait(),
            )
        )
        waiters: set[asyncio.Future[object]] = {completion}
        cancel_wait: Optional[asyncio.Task[None]] = None
        if signal is not None:
            cancel_wait = asyncio.create_task(signal.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if completion in done:
                completion.result()
                return ProcessResult(
                    exit_code=process.returncode,
                    was_canceled=False,
                    command_line=command_line,
                    duration_seconds=time.monotonic() - started,
                    pid=process.pid,
                )

            logger.info("Canceling pid=%s (%s)", process.pid, signal.reason if signal else "")
            await self._terminate_tree(process)
            await self._settle(completion)
            return ProcessResult(
                exit_code=None,
                was_canceled=True,
                command_line=command_line,
                duration_seconds=time.monotonic() - started,
                pid=process.pid,
            )
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            if process.returncode is None:
                await self._terminate_tree(process)
            if not completion.done():
                completion.cancel()

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        is_stderr: bool,
        on_line: LineCallback,
    ) -> None:
        if stream is None:
            return
        split_line = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                raw = exc.partial
            except asyncio.LimitOverrunError as exc:
                # Over-long line: hand over what is buffered, the rest follows.
                await on_line(is_stderr, self._decode(await stream.read(exc.consumed)))
                split_line = True
                continue
            if not raw:
                break
            if split_line and raw in (b"\n", b"\r\n"):
                split_line = False
                continue
            split_line = False
            await on_line(is_stderr, self._decode(raw))

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def _settle(self, completion: asyncio.Future[object]) -> None:
        """Give the output pumps a bounded chance to drain after a kill."""
        await asyncio.wait({completion}, timeout=max(self.kill_grace_seconds, 0.1))
        if not completion.done():
            completion.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await completion
            return
        if not completion.cancelled() and completion.exception() is not None:
            logger.debug("Output pump ended with %r after cancellation", completion.exception())

    async def _terminate_tree(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the process and all of its descendants, then kill survivors."""
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.Error:
            children = []

        for child in children:
            with contextlib.suppress(psutil.Error):
                child.terminate()
        with contextlib.suppress(ProcessLookupError):
            process.terminate()

        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Process %s ignored terminate; killing", process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

        if children:
            loop = asyncio.get_running_loop()
            _, alive = await loop.run_in_executor(
                None, lambda: psutil.wait_procs(children, timeout=self.kill_grace_seconds)
            )
            for proc in alive:
                with contextlib.suppress(psutil.Error):
                    proc.kill()


__all__ = [
    "LineCallback",
    "LocalProcessLauncher",
    "ProcessLauncher",
    "ProcessResult",
    "ProcessSpec",
    "ScriptLaunchError",
    "ScriptNotFoundError",
    "build_command",
    "split_arguments",
]
