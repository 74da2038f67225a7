"""
Data models for runbook execution.

Runbooks, steps, executions and script runs are pydantic models so they
can be validated on load, persisted as JSON and returned from the CLI
without bespoke encoders. Status values are closed ``str`` enums.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class StepStatus(str, Enum):
    """
    Lifecycle of a single step within an execution.

    - PENDING: Not yet scheduled
    - RUNNING: An attempt is in flight (or backing off between attempts)
    - SUCCEEDED / FAILED / SKIPPED: Settled by the step executor
    - CANCELED: Interrupted by execution cancellation
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STEP_STATUSES


_TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELED}
)


class ExecutionStatus(str, Enum):
    """Overall status of a runbook execution."""

    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)


class RunStatus(str, Enum):
    """Outcome of a single script run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class ConditionType(str, Enum):
    ALWAYS = "always"
    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    EXPRESSION = "expression"


class RunEventKind(str, Enum):
    RUN_STARTED = "run_started"
    STDOUT = "stdout"
    STDERR = "stderr"
    RUN_ENDED = "run_ended"


# ---------------------------------------------------------------------------
# Step conditions
# ---------------------------------------------------------------------------

_CLAUSE_RE = re.compile(r"^\s*([A-Za-z0-9_.\-]+)\s*(==|!=)\s*([A-Za-z_]+)\s*$")

Clause = Tuple[str, str, StepStatus]


def parse_condition_expression(expression: str) -> List[List[Clause]]:
    """
    Parse a skip-condition expression into disjunctive normal form.

    Clauses look like ``build == succeeded`` or ``lint != failed`` and are
    combined with ``and`` / ``or`` (``and`` binds tighter). Status names are
    case-insensitive and may be written in ``CamelCase``.

    Returns:
        A list of OR-groups, each a list of AND-ed clauses

    Raises:
        ValueError: If the expression is empty or a clause is malformed
    """
    if not expression or not expression.strip():
        raise ValueError("Condition expression is empty")

    groups: List[List[Clause]] = []
    for or_part in re.split(r"\s+or\s+", expression.strip(), flags=re.IGNORECASE):
        clauses: List[Clause] = []
        for and_part in re.split(r"\s+and\s+", or_part, flags=re.IGNORECASE):
            match = _CLAUSE_RE.match(and_part)
            if not match:
                raise ValueError(f"Malformed condition clause: {and_part.strip()!r}")
            step_id, op, raw_status = match.groups()
            normalized = re.sub(r"(?<=[a-z])(?=[A-Z])", "_", raw_status).lower()
            try:
                status = StepStatus(normalized)
            except ValueError as exc:
                raise ValueError(f"Unknown step status in condition: {raw_status!r}") from exc
            clauses.append((step_id, op, status))
        groups.append(clauses)
    return groups


class StepCondition(BaseModel):
    """Decides whether a step runs, given the statuses of settled steps."""

    type: ConditionType = Field(default=ConditionType.ALWAYS, description="Condition kind")
    expression: Optional[str] = Field(
        default=None, description="Clause expression (expression conditions only)"
    )

    @model_validator(mode="after")
    def check_expression(self) -> "StepCondition":
        if self.type is ConditionType.EXPRESSION:
            parse_condition_expression(self.expression or "")
        return self

    def referenced_steps(self) -> List[str]:
        if self.type is not ConditionType.EXPRESSION:
            return []
        return [
            clause[0]
            for group in parse_condition_expression(self.expression or "")
            for clause in group
        ]

    def evaluate(self, depends_on: List[str], completed: Mapping[str, StepStatus]) -> bool:
        """Return True when the step should run."""
        if self.type is ConditionType.ALWAYS:
            return True
        if self.type is ConditionType.ON_SUCCESS:
            return all(completed.get(dep) is StepStatus.SUCCEEDED for dep in depends_on)
        if self.type is ConditionType.ON_FAILURE:
            return any(completed.get(dep) is StepStatus.FAILED for dep in depends_on)
        if self.type is ConditionType.EXPRESSION:
            for group in parse_condition_expression(self.expression or ""):
                if all(_clause_holds(clause, completed) for clause in group):
                    return True
            return False
        raise ValueError(f"Unhandled condition type: {self.type!r}")


def _clause_holds(clause: Clause, completed: Mapping[str, StepStatus]) -> bool:
    step_id, op, status = clause
    actual = completed.get(step_id)
    if op == "==":
        return actual is status
    return actual is not status


# ---------------------------------------------------------------------------
# Runbook definition
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    """Exponential backoff retry policy for a step."""

    max_attempts: int = Field(default=1, ge=1, description="Total attempts including the first")
    initial_delay_seconds: float = Field(default=5.0, ge=0, description="Delay before the 2nd attempt")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor per retry")
    max_delay_seconds: float = Field(default=300.0, ge=0, description="Upper bound on any delay")

    def get_delay(self, attempt: int) -> float:
        """
        Delay to wait after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            Seconds to sleep before the next attempt
        """
        exponent = max(attempt - 1, 0)
        delay = self.initial_delay_seconds * (self.backoff_multiplier**exponent)
        return min(delay, self.max_delay_seconds)


class RunbookStep(BaseModel):
    """One node of a runbook DAG, wrapping a single script invocation."""

    step_id: str = Field(description="Identifier unique within the runbook")
    name: str = Field(description="Display name")
    script_id: str = Field(description="Script to invoke")
    profile_id: Optional[str] = Field(default=None, description="Script profile override")
    arguments_override: Optional[str] = Field(
        default=None, description="Argument string replacing the profile's arguments"
    )
    depends_on: List[str] = Field(default_factory=list, description="Step ids that must settle first")
    retry: Optional[RetryPolicy] = Field(default=None, description="Retry policy (1 attempt if unset)")
    timeout_seconds: Optional[float] = Field(default=None, gt=0, description="Per-attempt timeout")
    condition: Optional[StepCondition] = Field(default=None, description="Skip condition")

    @property
    def max_attempts(self) -> int:
        return self.retry.max_attempts if self.retry else 1

    def should_execute(self, completed: Mapping[str, StepStatus]) -> bool:
        if self.condition is None:
            return True
        return self.condition.evaluate(self.depends_on, completed)


class Runbook(BaseModel):
    """A named, versioned DAG of steps."""

    id: str = Field(description="Runbook identifier")
    name: str = Field(description="Display name")
    description: str = Field(default="", description="Free-form description")
    version: int = Field(default=1, ge=1, description="Definition version")
    steps: List[RunbookStep] = Field(default_factory=list, description="Steps in declaration order")
    is_enabled: bool = Field(default=True, description="Disabled runbooks are refused at execute time")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_step(self, step_id: str) -> Optional[RunbookStep]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------


class StepExecution(BaseModel):
    """Per-step record of one execution."""

    step_id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    run_id: Optional[str] = Field(default=None, description="Script run backing the last attempt")
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    attempt: int = Field(default=0, ge=0, description="1-based attempt number, 0 before the first")
    error_message: Optional[str] = None
    output: Optional[str] = None


class RunbookExecution(BaseModel):
    """One run-through of a runbook."""

    id: str
    runbook_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    trigger_info: Optional[str] = Field(default=None, description="What started this execution")
    error_message: Optional[str] = None
    steps: List[StepExecution] = Field(default_factory=list)

    def get_step(self, step_id: str) -> Optional[StepExecution]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


class ExecutionInfo(BaseModel):
    """Point-in-time snapshot of an execution, active or finished."""

    execution_id: str
    runbook_id: str
    status: ExecutionStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    error_message: Optional[str] = None
    step_statuses: Dict[str, StepStatus] = Field(default_factory=dict)
    is_paused: bool = False
    is_active: bool = False


# ---------------------------------------------------------------------------
# Scripts and runs
# ---------------------------------------------------------------------------


class ScriptProfile(BaseModel):
    """Named preset of arguments, environment and working directory."""

    id: str
    name: str
    args: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    working_dir: Optional[str] = None


DEFAULT_PROFILE = ScriptProfile(id="default", name="Default")


class ScriptConfig(BaseModel):
    """Launch configuration for a script, with profiles."""

    schema_version: int = Field(default=2, description="Config schema version")
    path: str = Field(description="Script file path")
    working_dir: Optional[str] = Field(default=None, description="Default working directory")
    profiles: List[ScriptProfile] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def migrate_flat_config(cls, data: Any) -> Any:
        """Fold schema 1 top-level ``args``/``env`` into a default profile."""
        if not isinstance(data, dict):
            return data
        if int(data.get("schema_version", 1)) >= 2 and "args" not in data and "env" not in data:
            return data
        migrated = dict(data)
        args = migrated.pop("args", "") or ""
        env = migrated.pop("env", {}) or {}
        if not migrated.get("profiles"):
            migrated["profiles"] = [
                {"id": DEFAULT_PROFILE.id, "name": DEFAULT_PROFILE.name, "args": args, "env": env}
            ]
        migrated["schema_version"] = 2
        return migrated

    def get_profile(self, profile_id: Optional[str] = None) -> ScriptProfile:
        """Resolve a profile: explicit id, then the first profile, then the built-in default."""
        if profile_id:
            for profile in self.profiles:
                if profile.id == profile_id:
                    return profile
        if self.profiles:
            return self.profiles[0]
        return DEFAULT_PROFILE


class Script(BaseModel):
    """A registered executable unit that runbook steps refer to."""

    id: str
    name: str
    config: ScriptConfig

    @property
    def path(self) -> Path:
        return Path(self.config.path)


class RunSummary(BaseModel):
    """Durable, reproducible record of what exactly ran."""

    status: RunStatus
    duration_seconds: float
    stdout_lines: int = 0
    stderr_lines: int = 0
    exit_code: Optional[int] = None
    failure_fingerprint: Optional[str] = None
    last_stderr_line: Optional[str] = Field(default=None, max_length=200)
    artifact_count: int = 0
    command_line: Optional[str] = None
    working_directory: Optional[str] = None
    run_directory: Optional[str] = None
    profile_id: Optional[str] = None
    profile_name: Optional[str] = None
    args_resolved: Optional[str] = None
    env_overrides: Dict[str, str] = Field(default_factory=dict)


class Run(BaseModel):
    """Persisted header of one script run."""

    run_id: str
    script_id: str
    script_name: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    exit_code: Optional[int] = None
    summary: Optional[RunSummary] = None


class RunEvent(BaseModel):
    """Timestamped event emitted while a run progresses."""

    run_id: str
    ts: datetime = Field(default_factory=utcnow)
    kind: RunEventKind
    message: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class Artifact(BaseModel):
    """File captured from a run's scratch directory."""

    artifact_id: str
    run_id: str
    media_type: str = "application/octet-stream"
    locator: str = Field(description="Filesystem path of the captured file")
    sha256_hex: str
    size_bytes: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class FailureGroup(BaseModel):
    """Failed runs sharing one failure fingerprint."""

    fingerprint: str
    count: int
    first_seen: datetime
    last_seen: datetime
    latest_run_id: str
    first_run_id: str
    script_name: Optional[str] = None
    last_stderr_line: Optional[str] = None
    distinct_scripts: int = 1
