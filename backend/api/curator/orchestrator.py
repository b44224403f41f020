"""
Pipeline orchestrator: claim -> dispatch -> commit, one work item at a time.

The orchestrator owns the coordination contract only. Content logic lives in
behaviors (see curator.behaviors) looked up by action.

Commit step, in one database transaction:
  - re-read the item and check it still matches what the behavior saw
  - check it matches the after_state of the item's last ledger entry
  - write the new content row
  - append the ledger entry (before/after snapshots)
  - mark the work item completed
  - bump the run counters

Failures:
  TransientError   -> work item failed, retried while budget remains
  ValidationError  -> item flagged + ledger entry, work item failed (no retry)
  ConsistencyError -> work item failed, run aborted and marked failed
  LostClaimError   -> claim was released as stale; commit rolled back, run goes on
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.engine import Connection, Engine

from curator import scoring
from curator.behaviors import DispatchTable
from curator.config import Settings
from curator.content import ContentStore
from curator.db import to_timestamp, utcnow
from curator.errors import (
    ConflictError,
    ConsistencyError,
    InvalidTransitionError,
    LostClaimError,
    TransientError,
    ValidationError,
    WorkflowError,
)
from curator.ledger import BotLedger, states_match
from curator.models import ActionResult, BotRun, ContentItem, WorkItem
from curator.runs import BotRunTracker
from curator.work_queue import WorkQueue
from curator.workflow import validate_content_transition

log = logging.getLogger(__name__)

OUTCOME_BY_ACTION: dict[str, str] = {
    "create": "created",
    "improve": "updated",
    "enrich": "updated",
    "verify": "updated",
    "delete": "deleted",
}

# Actions whose output is new text and gets rescored before it is stored.
SCORED_ACTIONS = ("create", "improve", "enrich")


def _snapshot(item: Optional[ContentItem]) -> Optional[dict[str, Any]]:
    return item.snapshot() if item is not None else None


class Orchestrator:
    def __init__(
        self,
        engine: Engine,
        behaviors: DispatchTable,
        bot_name: str,
        settings: Optional[Settings] = None,
        assignee: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.behaviors = dict(behaviors)
        self.bot_name = bot_name
        self.assignee = assignee or bot_name
        self.settings = settings or Settings()
        self.clock = clock

        self.queue = WorkQueue(engine, self.settings, clock=clock)
        self.ledger = BotLedger(engine, clock=clock)
        self.runs = BotRunTracker(engine, clock=clock)
        self.store = ContentStore(engine)

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {}

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] = self._stats.get(key, 0) + 1

    # ----------------------------
    # Run loop
    # ----------------------------

    def run(self, max_items: Optional[int] = None, workers: int = 1, boost: bool = True) -> BotRun:
        """
        Processes work until the queue has nothing claimable (or `max_items`
        items were handled) under a single BotRun.
        """
        run_id = self.runs.start_run(self.bot_name)
        self._stats = {}
        try:
            if boost:
                self.queue.boost_starving()
            if workers <= 1:
                self._drain(run_id, max_items, None)
            else:
                self._run_pool(run_id, max_items, workers)
        except ConsistencyError as e:
            log.error("Run %s aborted, ledger and content store disagree: %s", run_id, e)
            self.runs.finish_run(
                run_id, "failed", {"error": "consistency", "detail": str(e), **self._stats}
            )
            raise
        except Exception as e:
            log.exception("Run %s aborted: %s", run_id, e)
            self.runs.finish_run(
                run_id, "failed", {"error": type(e).__name__, "detail": str(e), **self._stats}
            )
            raise
        return self.runs.finish_run(run_id, "completed", dict(self._stats))

    def _drain(self, run_id: int, max_items: Optional[int], budget: Optional["_Budget"]) -> None:
        handled = 0
        while True:
            if budget is not None:
                if not budget.take():
                    return
            elif max_items is not None and handled >= max_items:
                return
            try:
                work = self.process_one(run_id)
            except ConflictError as e:
                log.info("Claim by %s lost to another bot, moving on: %s", self.assignee, e)
                continue
            if work is None:
                return
            handled += 1

    def _run_pool(self, run_id: int, max_items: Optional[int], workers: int) -> None:
        budget = _Budget(max_items)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.bot_name) as pool:
            futures = [pool.submit(self._drain, run_id, None, budget) for _ in range(workers)]
            errors = []
            for f in futures:
                try:
                    f.result()
                except Exception as e:
                    budget.stop()
                    errors.append(e)
        if errors:
            consistency = [e for e in errors if isinstance(e, ConsistencyError)]
            raise (consistency or errors)[0]

    # ----------------------------
    # One item
    # ----------------------------

    def process_one(self, run_id: int) -> Optional[WorkItem]:
        """Claims and handles one item. Returns it, or None if nothing was claimable."""
        work = self.queue.claim_next(self.assignee, allowed_actions=list(self.behaviors))
        if work is None:
            return None

        try:
            try:
                self._execute(run_id, work)
            except LostClaimError:
                raise
            except TransientError as e:
                self._fail(run_id, work, e, retryable=True)
            except ValidationError as e:
                self._flag(run_id, work, e)
            except ConsistencyError as e:
                self._fail_before_abort(run_id, work, e)
                raise
            except Exception as e:
                # A bug in a behavior: record it on the work item, then stop the run.
                self._fail_before_abort(run_id, work, e)
                raise
        except LostClaimError as e:
            self._lost_claim(run_id, work, e)
        return work

    def _execute(self, run_id: int, work: WorkItem) -> None:
        current = self.store.get(work.item_id)
        if work.action == "create":
            if current is not None:
                raise ValidationError(f"Cannot create {work.item_id}: item already exists")
        elif current is None:
            raise ValidationError(f"Cannot {work.action} {work.item_id}: item does not exist")

        behavior = self.behaviors[work.action]
        outcome = behavior(work, current)
        if not isinstance(outcome, ActionResult):
            raise ValidationError(f"Behavior for {work.action} returned {type(outcome).__name__}")

        with self.engine.begin() as conn:
            before = self.store.get(work.item_id, conn=conn)
            if not states_match(_snapshot(before), _snapshot(current)):
                raise ConsistencyError(
                    f"{work.item_type}/{work.item_id} changed while claimed by {self.assignee} "
                    f"(work {work.id}); content was mutated outside the work queue"
                )
            self._check_ledger(work, before, conn)

            new_state = self._prepare_state(work, before, outcome.new_state)
            if new_state is None:
                self._complete(work, outcome.result or {}, conn)
                self.runs.record_outcome(run_id, "processed", conn=conn)
                self._count("unchanged")
                log.info("Work %s (%s %s): no change", work.id, work.action, work.item_id)
                return

            stored = self.store.put(new_state, conn=conn)
            entry = self.ledger.record(
                self.bot_name,
                work.action,
                work.item_type,
                work.item_id,
                _snapshot(before),
                stored.snapshot(),
                reason=outcome.reason or work.reason,
                conn=conn,
            )
            result = dict(outcome.result or {})
            result["ledger_id"] = entry.id
            self._complete(work, result, conn)
            self.runs.record_outcome(run_id, OUTCOME_BY_ACTION[work.action], conn=conn)

        self._count(OUTCOME_BY_ACTION[work.action])
        log.info(
            "Work %s (%s %s) committed as ledger entry %s, status=%s",
            work.id, work.action, work.item_id, entry.id, stored.status,
        )

    def _complete(self, work: WorkItem, result: dict[str, Any], conn: Connection) -> None:
        try:
            self.queue.complete(work.id, result, assignee=self.assignee, conn=conn)
        except InvalidTransitionError as e:
            # Raising rolls back the content and ledger writes made under this claim.
            raise LostClaimError(f"work {work.id} ({work.action} {work.item_id}): {e}") from e

    def _check_ledger(self, work: WorkItem, before: Optional[ContentItem], conn: Connection) -> None:
        """The stored row must equal the last after_state the ledger recorded for it."""
        latest = self.ledger.latest(work.item_type, work.item_id, conn=conn)
        if latest is None:
            # Seeded before the ledger existed; nothing to compare against yet.
            return
        if not states_match(latest.after_state, _snapshot(before)):
            raise ConsistencyError(
                f"{work.item_type}/{work.item_id} does not match ledger entry {latest.id} "
                f"(bot={latest.bot_name}, action={latest.action})"
            )

    def _prepare_state(
        self, work: WorkItem, before: Optional[ContentItem], proposed: Optional[ContentItem]
    ) -> Optional[ContentItem]:
        """
        Validates and stamps the behavior's proposed state. Returns None when
        it does not differ from what is stored.
        """
        if proposed is None:
            return None
        if proposed.id != work.item_id:
            raise ValidationError(f"Behavior returned item {proposed.id!r} for work on {work.item_id!r}")
        try:
            validate_content_transition(before.status if before else None, proposed.status)
        except WorkflowError as e:
            raise ValidationError(str(e))

        now = to_timestamp(self.clock())
        new_state = proposed
        if work.action in SCORED_ACTIONS:
            scored = scoring.score(new_state)
            new_state = new_state.with_changes(relevance_score=scored.score, relevance_details=scored.details)
            if (
                work.action == "create"
                and new_state.status == "active"
                and not scoring.passes_gate(scored, self.settings.relevance_min_score)
            ):
                log.info(
                    "New item %s scored %d (< %d), storing as flagged",
                    work.item_id, scored.score, self.settings.relevance_min_score,
                )
                new_state = new_state.with_changes(status="flagged")

        if before is None:
            new_state = new_state.with_changes(created_at=new_state.created_at or now)
        elif new_state.with_changes(last_updated=before.last_updated).snapshot() == before.snapshot():
            return None
        return new_state.with_changes(last_updated=now)

    # ----------------------------
    # Failure paths
    # ----------------------------

    def _queue_fail(self, work: WorkItem, message: str, retryable: bool, conn: Connection) -> Optional[WorkItem]:
        try:
            _, retry = self.queue.fail(work.id, message, retryable=retryable, assignee=self.assignee, conn=conn)
        except InvalidTransitionError as e:
            raise LostClaimError(f"work {work.id} ({work.action} {work.item_id}): {e}") from e
        return retry

    def _fail(self, run_id: int, work: WorkItem, error: Exception, retryable: bool) -> None:
        message = f"{type(error).__name__}: {error}"
        with self.engine.begin() as conn:
            retry = self._queue_fail(work, message, retryable, conn)
            self.runs.record_outcome(run_id, "processed", conn=conn)
        self._count("failed")
        if retry is not None:
            self._count("retried")

    def _fail_before_abort(self, run_id: int, work: WorkItem, error: Exception) -> None:
        """Records a fatal error on the work item; the caller re-raises `error` either way."""
        try:
            self._fail(run_id, work, error, retryable=False)
        except LostClaimError as e:
            log.warning("Could not record %s on work %s: %s", type(error).__name__, work.id, e)

    def _lost_claim(self, run_id: int, work: WorkItem, error: LostClaimError) -> None:
        # Whoever released the claim already failed the item and queued its retry.
        with self.engine.begin() as conn:
            self.runs.record_outcome(run_id, "processed", conn=conn)
        self._count("lost")
        log.warning("Work %s (%s %s) dropped, claim no longer held: %s", work.id, work.action, work.item_id, error)

    def _flag(self, run_id: int, work: WorkItem, error: ValidationError) -> None:
        reason = f"{work.action} rejected: {error}"
        outcome = "processed"
        with self.engine.begin() as conn:
            before = self.store.get(work.item_id, conn=conn)
            # A rejected create says nothing about the item already stored under that id.
            if work.action != "create" and before is not None and before.status in ("active", "flagged"):
                after = before
                if before.status == "active":
                    after = self.store.put(
                        before.with_changes(status="flagged", last_updated=to_timestamp(self.clock())),
                        conn=conn,
                    )
                    outcome = "updated"
                # Already flagged items still get the rejection on their history, as a no-op entry.
                self.ledger.record(
                    self.bot_name,
                    "flag",
                    work.item_type,
                    work.item_id,
                    before.snapshot(),
                    after.snapshot(),
                    reason=reason,
                    conn=conn,
                )
            self._queue_fail(work, reason, False, conn)
            self.runs.record_outcome(run_id, outcome, conn=conn)
        self._count("flagged" if outcome == "updated" else "failed")
        log.warning("Work %s (%s %s) rejected: %s", work.id, work.action, work.item_id, error)


class _Budget:
    """Shared item budget for pool workers; None means unlimited."""

    def __init__(self, limit: Optional[int]):
        self._limit = limit
        self._taken = 0
        self._stopped = False
        self._lock = threading.Lock()

    def take(self) -> bool:
        with self._lock:
            if self._stopped:
                return False
            if self._limit is not None and self._taken >= self._limit:
                return False
            self._taken += 1
            return True

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
