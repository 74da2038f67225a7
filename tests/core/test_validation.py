"""Tests for runbook graph validation."""

from __future__ import annotations

import pytest

from controlroom.core.errors import RunbookValidationError
from controlroom.core.models import StepCondition
from controlroom.core.validation import topological_order, validate_runbook
from factories import make_runbook, make_step


def test_valid_diamond_passes() -> None:
    runbook = make_runbook(
        make_step("a"),
        make_step("b", depends_on=["a"]),
        make_step("c", depends_on=["a"]),
        make_step("d", depends_on=["b", "c"]),
    )
    result = validate_runbook(runbook)
    assert result.is_valid
    assert result.errors == []


def test_empty_runbook_is_valid() -> None:
    assert validate_runbook(make_runbook()).is_valid


def test_duplicate_step_ids_reported() -> None:
    runbook = make_runbook(make_step("a"), make_step("a"))
    result = validate_runbook(runbook)
    assert not result.is_valid
    assert any("Duplicate step id 'a'" in e for e in result.errors)


def test_unknown_dependency_reported() -> None:
    runbook = make_runbook(make_step("a", depends_on=["ghost"]))
    result = validate_runbook(runbook)
    assert result.errors == ["Step 'a' depends on unknown step 'ghost'"]


def test_self_dependency_reported() -> None:
    result = validate_runbook(make_runbook(make_step("a", depends_on=["a"])))
    assert result.errors == ["Step 'a' depends on itself"]


def test_cycle_detected() -> None:
    runbook = make_runbook(
        make_step("a", depends_on=["c"]),
        make_step("b", depends_on=["a"]),
        make_step("c", depends_on=["b"]),
        make_step("free"),
    )
    result = validate_runbook(runbook)
    assert not result.is_valid
    assert result.errors == ["Dependency cycle detected among steps: a, b, c"]


def test_empty_step_id_reported() -> None:
    runbook = make_runbook(make_step(" ", script_id="s"))
    result = validate_runbook(runbook)
    assert not result.is_valid
    assert "empty id" in result.errors[0]


def test_condition_referencing_unknown_step() -> None:
    step = make_step(
        "b",
        condition=StepCondition(type="expression", expression="ghost == failed"),
    )
    result = validate_runbook(make_runbook(make_step("a"), step))
    assert result.errors == ["Step 'b' condition references unknown step 'ghost'"]


def test_multiple_errors_collected() -> None:
    runbook = make_runbook(
        make_step("a", depends_on=["a"]),
        make_step("b", depends_on=["missing"]),
    )
    result = validate_runbook(runbook)
    assert len(result.errors) == 2


def test_topological_order_respects_dependencies() -> None:
    runbook = make_runbook(
        make_step("d", depends_on=["b", "c"]),
        make_step("c", depends_on=["a"]),
        make_step("b", depends_on=["a"]),
        make_step("a"),
    )
    order = topological_order(runbook)
    assert order[0] == "a"
    assert order[-1] == "d"
    assert set(order) == {"a", "b", "c", "d"}


def test_topological_order_raises_on_invalid() -> None:
    runbook = make_runbook(make_step("a", depends_on=["b"]), make_step("b", depends_on=["a"]))
    with pytest.raises(RunbookValidationError) as exc_info:
        topological_order(runbook)
    assert "cycle" in str(exc_info.value)
    assert exc_info.value.errors
