"""
Work queue: the only channel through which bots request content mutations.

Ownership of an item is a row in `work_queue` with status='processing'.
Claiming is one conditional UPDATE ... RETURNING; there is no read-then-write
window, so two bots (threads or processes) can never claim the same row.
The partial unique index on (item_type, item_id) WHERE status='processing'
backs the "one in-flight mutation per item" rule at the storage level.
"""

from __future__ import annotations

import json
import logging
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from curator.config import Settings
from curator.db import is_postgres, to_timestamp, transaction, utcnow
from curator.errors import ClaimConflictError, DuplicateWorkError, InvalidTransitionError
from curator.models import WorkItem
from curator.workflow import normalize_action, normalize_priority, validate_work_transition

log = logging.getLogger(__name__)

# Claim statements tried before a run of unique-index collisions is reported.
CLAIM_ATTEMPTS = 3

_COLUMNS = """
    id, item_type, item_id, action, priority, status, reason, created_by,
    assigned_to, created_at, claimed_at, processed_at, result, attempts_left, parent_id
"""


def _row_to_work_item(row: Any) -> WorkItem:
    result = row["result"]
    return WorkItem(
        id=int(row["id"]),
        item_type=row["item_type"],
        item_id=row["item_id"],
        action=row["action"],
        priority=int(row["priority"]),
        status=row["status"],
        reason=row["reason"],
        created_by=row["created_by"],
        assigned_to=row["assigned_to"],
        created_at=row["created_at"],
        claimed_at=row["claimed_at"],
        processed_at=row["processed_at"],
        result=json.loads(result) if result else None,
        attempts_left=int(row["attempts_left"]),
        parent_id=row["parent_id"],
    )


class WorkQueue:
    def __init__(
        self,
        engine: Engine,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.settings = settings or Settings()
        self.clock = clock

    def _now(self) -> str:
        return to_timestamp(self.clock())

    def _savepoint(self, conn: Connection):
        # Postgres aborts the whole transaction on a constraint violation unless
        # the statement runs inside a savepoint.
        if is_postgres(self.engine):
            return conn.begin_nested()
        return nullcontext()

    # ----------------------------
    # Producers
    # ----------------------------

    def enqueue(
        self,
        item_type: str,
        item_id: str,
        action: str,
        priority: int = 5,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
        *,
        attempts_left: Optional[int] = None,
        parent_id: Optional[int] = None,
        conn: Optional[Connection] = None,
    ) -> WorkItem:
        """
        Adds a pending work item.

        Raises DuplicateWorkError if a pending/processing item already exists
        for the same (item_type, item_id, action).
        """
        action = normalize_action(action)
        priority = normalize_priority(priority)
        if attempts_left is None:
            attempts_left = self.settings.retry_budget

        sql_existing = text("""
            SELECT id FROM work_queue
            WHERE item_type = :item_type
              AND item_id = :item_id
              AND action = :action
              AND status IN ('pending', 'processing')
            LIMIT 1
        """)

        sql_insert = text(f"""
            INSERT INTO work_queue
                (item_type, item_id, action, priority, status, reason, created_by,
                 created_at, attempts_left, parent_id)
            VALUES
                (:item_type, :item_id, :action, :priority, 'pending', :reason, :created_by,
                 :created_at, :attempts_left, :parent_id)
            RETURNING {_COLUMNS}
        """)

        params = {
            "item_type": item_type,
            "item_id": item_id,
            "action": action,
            "priority": priority,
            "reason": reason,
            "created_by": created_by,
            "created_at": self._now(),
            "attempts_left": int(attempts_left),
            "parent_id": parent_id,
        }

        with transaction(self.engine, conn) as c:
            existing = c.execute(sql_existing, params).mappings().first()
            if existing:
                raise DuplicateWorkError(item_type, item_id, action, int(existing["id"]))
            try:
                with self._savepoint(c):
                    row = c.execute(sql_insert, params).mappings().one()
            except IntegrityError:
                # Another producer inserted between our check and insert.
                raise DuplicateWorkError(item_type, item_id, action)

        item = _row_to_work_item(row)
        log.info(
            "Enqueued work %s: %s %s/%s priority=%s by=%s",
            item.id, item.action, item.item_type, item.item_id, item.priority, created_by,
        )
        return item

    # ----------------------------
    # Consumers
    # ----------------------------

    def claim_next(
        self,
        assignee: str,
        allowed_actions: Optional[Iterable[str]] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[WorkItem]:
        """
        Atomically claims the highest-priority pending item (ties: oldest first).

        Items whose content already has an in-flight mutation are skipped.
        Returns None when nothing is claimable. Raises ClaimConflictError when
        concurrent claims on the same item keep winning the race.
        """
        params: Dict[str, Any] = {"assignee": assignee, "now": self._now()}
        action_filter = ""
        if allowed_actions is not None:
            actions = [normalize_action(a) for a in allowed_actions]
            if not actions:
                return None
            action_filter = "AND w.action IN :actions"
            params["actions"] = actions

        lock_clause = "FOR UPDATE SKIP LOCKED" if is_postgres(self.engine) else ""

        sql = text(f"""
            UPDATE work_queue
            SET status = 'processing',
                assigned_to = :assignee,
                claimed_at = :now
            WHERE id = (
                SELECT w.id
                FROM work_queue w
                WHERE w.status = 'pending'
                  {action_filter}
                  AND NOT EXISTS (
                      SELECT 1 FROM work_queue p
                      WHERE p.item_type = w.item_type
                        AND p.item_id = w.item_id
                        AND p.status = 'processing'
                  )
                ORDER BY w.priority ASC, w.created_at ASC, w.id ASC
                LIMIT 1
                {lock_clause}
            )
              AND status = 'pending'
            RETURNING {_COLUMNS}
        """)
        if "actions" in params:
            sql = sql.bindparams(bindparam("actions", expanding=True))

        row = None
        for attempt in range(1, CLAIM_ATTEMPTS + 1):
            try:
                row = self._claim_once(sql, params, conn)
                break
            except IntegrityError as e:
                # Another bot claimed a different row for the same content item
                # first; its claim is committed by now, so the next pass skips it.
                log.info("Claim race lost by %s (attempt %d/%d): %s", assignee, attempt, CLAIM_ATTEMPTS, e.orig)
        else:
            raise ClaimConflictError(f"{assignee} lost {CLAIM_ATTEMPTS} claim races in a row")

        if row is None:
            return None

        item = _row_to_work_item(row)
        log.info(
            "Claimed work %s: %s %s/%s (priority=%s) -> %s",
            item.id, item.action, item.item_type, item.item_id, item.priority, assignee,
        )
        return item

    def _claim_once(self, sql: Any, params: Dict[str, Any], conn: Optional[Connection]) -> Any:
        with transaction(self.engine, conn) as c:
            with self._savepoint(c):
                return c.execute(sql, params).mappings().first()

    def complete(
        self,
        work_item_id: int,
        result: Optional[dict[str, Any]] = None,
        assignee: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> WorkItem:
        """
        processing -> completed. Raises InvalidTransitionError if the item is not
        processing (or not owned by `assignee` when given).
        """
        params: Dict[str, Any] = {
            "id": int(work_item_id),
            "now": self._now(),
            "result": json.dumps(result) if result is not None else None,
        }
        owner_filter = ""
        if assignee is not None:
            owner_filter = "AND assigned_to = :assignee"
            params["assignee"] = assignee

        sql = text(f"""
            UPDATE work_queue
            SET status = 'completed',
                processed_at = :now,
                result = :result
            WHERE id = :id
              AND status = 'processing'
              {owner_filter}
            RETURNING {_COLUMNS}
        """)

        with transaction(self.engine, conn) as c:
            row = c.execute(sql, params).mappings().first()
            if row is None:
                self._raise_invalid(c, work_item_id, "completed", assignee)

        item = _row_to_work_item(row)
        log.info("Completed work %s (%s %s/%s)", item.id, item.action, item.item_type, item.item_id)
        return item

    def fail(
        self,
        work_item_id: int,
        error: str,
        retryable: bool,
        assignee: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Tuple[WorkItem, Optional[WorkItem]]:
        """
        processing -> failed (terminal).

        When `retryable` and the item still has budget after this attempt, a
        fresh pending item is enqueued with the decremented budget. Returns
        (failed_item, retry_item_or_None).
        """
        params: Dict[str, Any] = {"id": int(work_item_id), "now": self._now()}
        owner_filter = ""
        if assignee is not None:
            owner_filter = "AND assigned_to = :assignee"
            params["assignee"] = assignee

        sql_get = text(f"""
            SELECT {_COLUMNS} FROM work_queue
            WHERE id = :id AND status = 'processing' {owner_filter}
        """)

        sql_fail = text(f"""
            UPDATE work_queue
            SET status = 'failed',
                processed_at = :now,
                result = :result
            WHERE id = :id
              AND status = 'processing'
              {owner_filter}
            RETURNING {_COLUMNS}
        """)

        with transaction(self.engine, conn) as c:
            current = c.execute(sql_get, params).mappings().first()
            if current is None:
                self._raise_invalid(c, work_item_id, "failed", assignee)

            remaining = int(current["attempts_left"]) - 1
            will_retry = bool(retryable) and remaining > 0
            params["result"] = json.dumps({
                "error": str(error),
                "retryable": bool(retryable),
                "attempts_left": max(remaining, 0),
                "retried": will_retry,
            })

            row = c.execute(sql_fail, params).mappings().first()
            if row is None:
                self._raise_invalid(c, work_item_id, "failed", assignee)
            failed = _row_to_work_item(row)

            retry: Optional[WorkItem] = None
            if will_retry:
                try:
                    retry = self.enqueue(
                        failed.item_type,
                        failed.item_id,
                        failed.action,
                        priority=failed.priority,
                        reason=failed.reason,
                        created_by=failed.created_by,
                        attempts_left=remaining,
                        parent_id=failed.id,
                        conn=c,
                    )
                except DuplicateWorkError as e:
                    log.info("Retry for work %s not needed, already queued: %s", failed.id, e)

        if retry is not None:
            log.warning(
                "Work %s failed (%s); retry queued as %s with %d attempt(s) left",
                failed.id, error, retry.id, retry.attempts_left,
            )
        else:
            log.warning("Work %s failed terminally: %s", failed.id, error)
        return failed, retry

    def _raise_invalid(
        self, conn: Connection, work_item_id: int, to_state: str, assignee: Optional[str]
    ) -> None:
        row = conn.execute(
            text("SELECT status, assigned_to FROM work_queue WHERE id = :id"),
            {"id": int(work_item_id)},
        ).mappings().first()
        if row is None:
            raise InvalidTransitionError(f"Work item {work_item_id} not found")
        validate_work_transition(row["status"], to_state)
        # Status allows the move, so ownership must be what failed.
        raise InvalidTransitionError(
            f"Work item {work_item_id} is assigned to {row['assigned_to']!r}, not {assignee!r}"
        )

    # ----------------------------
    # Maintenance
    # ----------------------------

    def boost_starving(
        self,
        age_sec: Optional[int] = None,
        step: Optional[int] = None,
        conn: Optional[Connection] = None,
    ) -> int:
        """
        Raises the priority of pending items older than `age_sec` by `step`
        (never past 1). Meant to run once per scan cycle. Returns rows boosted.
        """
        age = self.settings.starvation_age_sec if age_sec is None else int(age_sec)
        step = self.settings.boost_step if step is None else int(step)
        cutoff = to_timestamp(self.clock() - timedelta(seconds=age))

        sql = text("""
            UPDATE work_queue
            SET priority = CASE WHEN priority - :step < 1 THEN 1 ELSE priority - :step END
            WHERE status = 'pending'
              AND priority > 1
              AND created_at <= :cutoff
        """)

        with transaction(self.engine, conn) as c:
            boosted = c.execute(sql, {"step": step, "cutoff": cutoff}).rowcount or 0

        if boosted:
            log.info("Boosted priority of %d starving work item(s) older than %ss", boosted, age)
        return int(boosted)

    def release_stale(self, timeout_sec: Optional[float] = None) -> List[WorkItem]:
        """
        Fails claims held longer than `timeout_sec` (retryable), so a crashed
        bot does not pin an item in 'processing' forever.
        """
        timeout = self.settings.stale_claim_timeout() if timeout_sec is None else float(timeout_sec)
        cutoff = to_timestamp(self.clock() - timedelta(seconds=timeout))

        sql = text("""
            SELECT id FROM work_queue
            WHERE status = 'processing' AND claimed_at <= :cutoff
            ORDER BY id ASC
        """)
        with self.engine.begin() as c:
            ids = [int(r) for r in c.execute(sql, {"cutoff": cutoff}).scalars().all()]

        released: List[WorkItem] = []
        for work_id in ids:
            try:
                failed, _ = self.fail(work_id, f"claim timed out after {timeout:.0f}s", retryable=True)
            except InvalidTransitionError:
                # Finished by its owner in the meantime.
                continue
            released.append(failed)
        return released

    # ----------------------------
    # Queries
    # ----------------------------

    def get(self, work_item_id: int) -> WorkItem:
        sql = text(f"SELECT {_COLUMNS} FROM work_queue WHERE id = :id")
        with self.engine.begin() as conn:
            row = conn.execute(sql, {"id": int(work_item_id)}).mappings().first()
        if row is None:
            raise KeyError(f"Work item {work_item_id} not found")
        return _row_to_work_item(row)

    def for_item(self, item_type: str, item_id: str) -> List[WorkItem]:
        sql = text(f"""
            SELECT {_COLUMNS} FROM work_queue
            WHERE item_type = :item_type AND item_id = :item_id
            ORDER BY id ASC
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql, {"item_type": item_type, "item_id": item_id}).mappings().all()
        return [_row_to_work_item(r) for r in rows]

    def pending(self, limit: int = 50) -> List[WorkItem]:
        sql = text(f"""
            SELECT {_COLUMNS} FROM work_queue
            WHERE status = 'pending'
            ORDER BY priority ASC, created_at ASC, id ASC
            LIMIT :limit
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql, {"limit": int(limit)}).mappings().all()
        return [_row_to_work_item(r) for r in rows]

    def stats(self) -> Dict[str, Any]:
        sql = text("""
            SELECT status, action, item_type, COUNT(*) AS count
            FROM work_queue
            GROUP BY status, action, item_type
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql).mappings().all()

        stats: Dict[str, Any] = {
            "pending": 0,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "by_action": {},
            "by_type": {},
        }
        for r in rows:
            count = int(r["count"])
            stats[r["status"]] = stats.get(r["status"], 0) + count
            stats["by_action"][r["action"]] = stats["by_action"].get(r["action"], 0) + count
            stats["by_type"][r["item_type"]] = stats["by_type"].get(r["item_type"], 0) + count
        return stats
