"""Structural validation of runbook step graphs."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List

from controlroom.core.errors import RunbookValidationError
from controlroom.core.models import Runbook


@dataclass(slots=True)
class ValidationResult:
    """Outcome of validating a runbook."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)


def validate_runbook(runbook: Runbook) -> ValidationResult:
    """
    Validate the dependency graph of a runbook.

    Checks that step ids are unique and non-empty, that every ``depends_on``
    entry names a step of the same runbook, that no step depends on itself,
    that expression conditions only reference known steps, and that the
    graph is acyclic. Never raises; problems are returned as messages.

    Args:
        runbook: Runbook to validate

    Returns:
        ValidationResult with ``is_valid`` False when any error was found
    """
    errors: List[str] = []
    seen: Dict[str, int] = {}

    for step in runbook.steps:
        if not step.step_id.strip():
            errors.append(f"Step '{step.name}' has an empty id")
            continue
        seen[step.step_id] = seen.get(step.step_id, 0) + 1

    for step_id, count in seen.items():
        if count > 1:
            errors.append(f"Duplicate step id '{step_id}' ({count} occurrences)")

    for step in runbook.steps:
        for dep in step.depends_on:
            if dep == step.step_id:
                errors.append(f"Step '{step.step_id}' depends on itself")
            elif dep not in seen:
                errors.append(f"Step '{step.step_id}' depends on unknown step '{dep}'")
        if step.condition is not None:
            for ref in step.condition.referenced_steps():
                if ref not in seen:
                    errors.append(
                        f"Step '{step.step_id}' condition references unknown step '{ref}'"
                    )

    if not errors:
        order = _kahn_order(runbook)
        if len(order) != len(runbook.steps):
            stuck = sorted(s.step_id for s in runbook.steps if s.step_id not in set(order))
            errors.append(f"Dependency cycle detected among steps: {', '.join(stuck)}")

    return ValidationResult(is_valid=not errors, errors=errors)


def topological_order(runbook: Runbook) -> List[str]:
    """
    Return step ids in a dependency-respecting order.

    Raises:
        RunbookValidationError: If the runbook is not valid
    """
    result = validate_runbook(runbook)
    if not result.is_valid:
        raise RunbookValidationError(result.errors)
    return _kahn_order(runbook)


def _kahn_order(runbook: Runbook) -> List[str]:
    # Assumes dependency references were already checked.
    in_degree: Dict[str, int] = {step.step_id: 0 for step in runbook.steps}
    dependents: Dict[str, List[str]] = {step.step_id: [] for step in runbook.steps}
    for step in runbook.steps:
        for dep in set(step.depends_on):
            if dep in dependents:
                in_degree[step.step_id] += 1
                dependents[dep].append(step.step_id)

    queue = deque(step.step_id for step in runbook.steps if in_degree[step.step_id] == 0)
    order: List[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
    return order
