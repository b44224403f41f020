from __future__ import annotations

import pytest

from curator.errors import InvalidTransitionError, WorkflowError
from curator.workflow import (
    normalize_action,
    normalize_priority,
    validate_content_transition,
    validate_work_transition,
)


def test_normalize_action():
    assert normalize_action(" Verify ") == "verify"
    with pytest.raises(WorkflowError):
        normalize_action("publish")


@pytest.mark.parametrize("value,expected", [(1, 1), ("7", 7), (10, 10)])
def test_normalize_priority_accepts_range(value, expected):
    assert normalize_priority(value) == expected


@pytest.mark.parametrize("value", [0, 11, "high", None])
def test_normalize_priority_rejects(value):
    with pytest.raises(WorkflowError):
        normalize_priority(value)


def test_work_transitions():
    validate_work_transition("pending", "processing")
    validate_work_transition("processing", "completed")
    validate_work_transition("processing", "failed")
    for from_state, to_state in [("pending", "completed"), ("completed", "failed"), ("failed", "pending")]:
        with pytest.raises(InvalidTransitionError):
            validate_work_transition(from_state, to_state)


def test_content_transitions():
    validate_content_transition(None, "active")
    validate_content_transition(None, "flagged")
    validate_content_transition("flagged", "active")
    validate_content_transition("active", "deleted")
    with pytest.raises(WorkflowError):
        validate_content_transition(None, "deleted")
    with pytest.raises(WorkflowError):
        validate_content_transition("deleted", "active")
    with pytest.raises(WorkflowError):
        validate_content_transition("active", "archived")
