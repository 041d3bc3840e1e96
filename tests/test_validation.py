"""Tests for definition validation."""

import pytest
from helpers import service

from pytaxis import (
    CompensationStep,
    ErrorHandler,
    ErrorHandlerKind,
    LoopConfig,
    ParallelConfig,
    RetryPolicy,
    Step,
    ValidationError,
    WaitConfig,
    WorkflowDefinition,
    validate_definition,
)
from pytaxis.core import find_cycle


def test_valid_diamond_passes():
    definition = WorkflowDefinition(
        steps=(service("a"), service("b", "a"), service("c", "a"), service("d", "b", "c"))
    )
    validate_definition(definition)


def test_empty_definition_rejected():
    with pytest.raises(ValidationError, match="at least one step"):
        validate_definition(WorkflowDefinition(steps=()))


def test_duplicate_ids_rejected_across_nesting():
    fanout = Step("fanout", "Fan out", ParallelConfig(steps=(service("a"),)))
    with pytest.raises(ValidationError) as exc:
        validate_definition(WorkflowDefinition(steps=(service("a"), fanout)))
    assert exc.value.step_ids == ("a",)


def test_unknown_dependency_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_definition(WorkflowDefinition(steps=(service("a", "ghost"),)))
    assert "ghost" in exc.value.step_ids
    assert "a" in exc.value.step_ids


def test_nested_step_cannot_depend_on_outer_step():
    fanout = Step("fanout", "Fan out", ParallelConfig(steps=(service("inner", "outer"),)))
    with pytest.raises(ValidationError, match="non-existent step outer"):
        validate_definition(WorkflowDefinition(steps=(service("outer"), fanout)))


def test_cycle_rejected_with_all_members():
    definition = WorkflowDefinition(
        steps=(service("a", "c"), service("b", "a"), service("c", "b"), service("d"))
    )
    with pytest.raises(ValidationError, match="Cycle") as exc:
        validate_definition(definition)
    assert set(exc.value.step_ids) == {"a", "b", "c"}


def test_cycle_inside_parallel_rejected():
    fanout = Step(
        "fanout", "Fan out", ParallelConfig(steps=(service("x", "y"), service("y", "x")))
    )
    with pytest.raises(ValidationError, match="Cycle"):
        validate_definition(WorkflowDefinition(steps=(fanout,)))


def test_self_dependency_is_a_cycle():
    assert find_cycle([service("a", "a")]) == ["a", "a"]


def test_find_cycle_none_for_dag():
    assert find_cycle([service("a"), service("b", "a"), service("c", "a", "b")]) is None


def test_wait_needs_exactly_one_of_duration_or_until():
    for config in (WaitConfig(), WaitConfig(duration_seconds=1, until_expression="params.t")):
        with pytest.raises(ValidationError, match="exactly one"):
            validate_definition(WorkflowDefinition(steps=(Step("w", "Wait", config),)))


def test_retry_policy_invariants_enforced():
    bad = RetryPolicy(max_attempts=3, initial_delay_ms=500, max_delay_ms=100)
    with pytest.raises(ValidationError, match="max delay"):
        validate_definition(WorkflowDefinition(steps=(service("a", retry=bad),)))

    zero = RetryPolicy(max_attempts=0)
    with pytest.raises(ValidationError, match="max_attempts"):
        validate_definition(WorkflowDefinition(steps=(service("a", retry=zero),)))


def test_loop_caps_must_be_positive():
    loop = Step(
        "loop",
        "Loop",
        LoopConfig("params.items", "item", (service("body"),), max_concurrency=0),
    )
    with pytest.raises(ValidationError, match="max_concurrency"):
        validate_definition(WorkflowDefinition(steps=(loop,)))


def test_compensation_must_reference_existing_step():
    handler = ErrorHandler(
        ErrorHandlerKind.COMPENSATE, (CompensationStep("missing", "svc", "undo"),)
    )
    with pytest.raises(ValidationError) as exc:
        validate_definition(WorkflowDefinition(steps=(service("a"),), error_handler=handler))
    assert exc.value.step_ids == ("missing",)


def test_non_positive_workflow_timeout_rejected():
    with pytest.raises(ValidationError, match="timeout"):
        validate_definition(WorkflowDefinition(steps=(service("a"),), timeout_seconds=0))
