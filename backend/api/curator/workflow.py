from __future__ import annotations

from curator.errors import InvalidTransitionError, WorkflowError

ACTIONS: list[str] = ["create", "improve", "delete", "verify", "enrich"]

WORK_STATES: list[str] = ["pending", "processing", "completed", "failed"]

CONTENT_STATES: list[str] = ["active", "flagged", "deleted"]

RUN_STATES: list[str] = ["running", "completed", "failed"]

# completed/failed are terminal; a retry is a fresh pending row, never a rewind.
_WORK_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["processing"],
    "processing": ["completed", "failed"],
    "completed": [],
    "failed": [],
}

# deleted is a soft delete; the row stays so its ledger history remains replayable.
_CONTENT_TRANSITIONS: dict[str, list[str]] = {
    "active": ["active", "flagged", "deleted"],
    "flagged": ["active", "flagged", "deleted"],
    "deleted": [],
}

PRIORITY_HIGHEST = 1
PRIORITY_LOWEST = 10


def _normalize(value: str) -> str:
    if not value:
        return value
    return value.strip().lower()


def normalize_action(action: str) -> str:
    a = _normalize(action)
    if a not in ACTIONS:
        raise WorkflowError(f"Unknown action: {action}. Allowed: {ACTIONS}")
    return a


def normalize_priority(priority: int) -> int:
    try:
        p = int(priority)
    except (TypeError, ValueError):
        raise WorkflowError("priority must be an integer")
    if p < PRIORITY_HIGHEST or p > PRIORITY_LOWEST:
        raise WorkflowError(f"priority must be between {PRIORITY_HIGHEST} and {PRIORITY_LOWEST}")
    return p


def validate_work_transition(from_state: str, to_state: str) -> None:
    """
    Raises InvalidTransitionError if the work item cannot move from -> to.
    """
    s_from = _normalize(from_state)
    s_to = _normalize(to_state)
    if s_from not in _WORK_TRANSITIONS:
        raise WorkflowError(f"Unknown work state: {from_state}")
    if s_to not in _WORK_TRANSITIONS[s_from]:
        raise InvalidTransitionError(
            f"Transition not allowed: {s_from} -> {s_to}. Allowed: {_WORK_TRANSITIONS[s_from]}"
        )


def validate_content_transition(from_state: str | None, to_state: str) -> None:
    """
    Raises WorkflowError if the content status change is not permitted.

    from_state None means the item does not exist yet (creation).
    """
    s_to = _normalize(to_state)
    if s_to not in CONTENT_STATES:
        raise WorkflowError(f"Unknown content status: {to_state}")
    if from_state is None:
        if s_to == "deleted":
            raise WorkflowError("Cannot create an item directly in status 'deleted'")
        return
    s_from = _normalize(from_state)
    if s_from not in _CONTENT_TRANSITIONS:
        raise WorkflowError(f"Unknown content status: {from_state}")
    if s_to not in _CONTENT_TRANSITIONS[s_from]:
        raise WorkflowError(
            f"Transition not allowed: {s_from} -> {s_to}. Allowed: {_CONTENT_TRANSITIONS[s_from]}"
        )
