from __future__ import annotations


class CuratorError(Exception):
    """Base class for pipeline errors."""


class TransientError(CuratorError):
    """Network/timeout failure. Retryable with backoff up to a fixed budget."""


class ValidationError(CuratorError):
    """Malformed item or failed quality gate. Not retryable; the item gets flagged."""


class ConflictError(CuratorError):
    """Lost a race against another bot. The caller moves on to the next item."""


class DuplicateWorkError(ConflictError):
    """An equivalent pending/processing work item already exists."""

    def __init__(self, item_type: str, item_id: str, action: str, existing_id: int | None = None):
        self.item_type = item_type
        self.item_id = item_id
        self.action = action
        self.existing_id = existing_id
        super().__init__(
            f"work already queued for {item_type}/{item_id} action={action}"
            + (f" (id={existing_id})" if existing_id is not None else "")
        )


class ClaimConflictError(ConflictError):
    """claim_next kept colliding with concurrent claims on the same item."""


class LostClaimError(ConflictError):
    """The work item stopped being ours (released as stale) before we could settle it."""


class ConsistencyError(CuratorError):
    """Ledger and content store diverged. Fatal: aborts the bot run."""


class WorkflowError(CuratorError):
    """Raised when a status transition is invalid."""


class InvalidTransitionError(WorkflowError):
    """Work item is not in the state (or owned by the caller) the operation requires."""


class AlreadyFinishedError(WorkflowError):
    """A bot run was finished twice."""


class IndexCorruptionError(CuratorError):
    """The vector index is unusable (bad shape, mismatched ids, unreadable file)."""
