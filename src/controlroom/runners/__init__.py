"""Execution machinery: process launcher, script runs, steps and runbooks."""

from controlroom.runners.events import (
    EventBus,
    ExecutionStatusChangedEvent,
    NotificationSink,
    StepCompletedEvent,
)
from controlroom.runners.process import LocalProcessLauncher, ProcessResult, ProcessSpec
from controlroom.runners.runbook_executor import ExecutionManager, RunbookExecutor
from controlroom.runners.script_run import ScriptRunService
from controlroom.runners.step_executor import StepExecutor

__all__ = [
    "EventBus",
    "ExecutionManager",
    "ExecutionStatusChangedEvent",
    "LocalProcessLauncher",
    "NotificationSink",
    "ProcessResult",
    "ProcessSpec",
    "RunbookExecutor",
    "ScriptRunService",
    "StepCompletedEvent",
    "StepExecutor",
]
