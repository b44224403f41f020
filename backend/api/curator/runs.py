"""
Bot run tracker: one row per bot invocation.

Counters are bumped with a single UPDATE in the same transaction as the
ledger entry they account for, so a run's counters always agree with the
ledger rows written during its window.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from curator.db import to_timestamp, transaction, utcnow
from curator.errors import AlreadyFinishedError, WorkflowError
from curator.models import BotRun

log = logging.getLogger(__name__)

_COLUMNS = """
    id, bot_name, started_at, completed_at, status, items_processed,
    items_created, items_updated, items_deleted, summary
"""

# outcome -> counter column bumped alongside items_processed
OUTCOME_COUNTERS: dict[str, Optional[str]] = {
    "created": "items_created",
    "updated": "items_updated",
    "deleted": "items_deleted",
    "processed": None,
}

FINAL_STATUSES = ("completed", "failed")


def _row_to_run(row: Any) -> BotRun:
    summary = row["summary"]
    return BotRun(
        id=int(row["id"]),
        bot_name=row["bot_name"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        status=row["status"],
        items_processed=int(row["items_processed"] or 0),
        items_created=int(row["items_created"] or 0),
        items_updated=int(row["items_updated"] or 0),
        items_deleted=int(row["items_deleted"] or 0),
        summary=json.loads(summary) if summary else None,
    )


class BotRunTracker:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.clock = clock

    def start_run(self, bot_name: str) -> int:
        sql = text("""
            INSERT INTO bot_runs
                (bot_name, started_at, status, items_processed, items_created, items_updated, items_deleted)
            VALUES
                (:bot_name, :started_at, 'running', 0, 0, 0, 0)
            RETURNING id
        """)
        with self.engine.begin() as conn:
            run_id = conn.execute(
                sql, {"bot_name": bot_name, "started_at": to_timestamp(self.clock())}
            ).scalar_one()
        log.info("Started run %s for bot %s", run_id, bot_name)
        return int(run_id)

    def record_outcome(self, run_id: int, outcome_type: str, conn: Optional[Connection] = None) -> None:
        """Counts one finished work item against the run."""
        if outcome_type not in OUTCOME_COUNTERS:
            raise WorkflowError(f"Unknown outcome: {outcome_type}. Allowed: {list(OUTCOME_COUNTERS)}")
        counter = OUTCOME_COUNTERS[outcome_type]
        extra = f", {counter} = {counter} + 1" if counter else ""

        sql = text(f"""
            UPDATE bot_runs
            SET items_processed = items_processed + 1{extra}
            WHERE id = :id AND status = 'running'
        """)
        with transaction(self.engine, conn) as c:
            updated = c.execute(sql, {"id": int(run_id)}).rowcount
            if not updated:
                raise AlreadyFinishedError(f"Run {run_id} is not running")

    def finish_run(self, run_id: int, status: str, summary: Optional[dict[str, Any]] = None) -> BotRun:
        """
        Sets completed_at and the final status. A run can be finished exactly
        once; a second call raises AlreadyFinishedError.
        """
        if status not in FINAL_STATUSES:
            raise WorkflowError(f"Run status must be one of {FINAL_STATUSES}, got {status!r}")

        sql = text(f"""
            UPDATE bot_runs
            SET status = :status,
                completed_at = :completed_at,
                summary = :summary
            WHERE id = :id AND completed_at IS NULL
            RETURNING {_COLUMNS}
        """)
        with self.engine.begin() as conn:
            row = conn.execute(
                sql,
                {
                    "id": int(run_id),
                    "status": status,
                    "completed_at": to_timestamp(self.clock()),
                    "summary": json.dumps(summary) if summary is not None else None,
                },
            ).mappings().first()

        if row is None:
            raise AlreadyFinishedError(f"Run {run_id} already finished or does not exist")

        run = _row_to_run(row)
        log.info(
            "Finished run %s (%s): processed=%d created=%d updated=%d deleted=%d",
            run.id, run.status, run.items_processed, run.items_created,
            run.items_updated, run.items_deleted,
        )
        return run

    def get(self, run_id: int) -> BotRun:
        sql = text(f"SELECT {_COLUMNS} FROM bot_runs WHERE id = :id")
        with self.engine.begin() as conn:
            row = conn.execute(sql, {"id": int(run_id)}).mappings().first()
        if row is None:
            raise KeyError(f"Run {run_id} not found")
        return _row_to_run(row)

    def recent_runs(self, limit: int = 20) -> List[BotRun]:
        sql = text(f"""
            SELECT {_COLUMNS} FROM bot_runs
            ORDER BY started_at DESC, id DESC
            LIMIT :limit
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql, {"limit": int(limit)}).mappings().all()
        return [_row_to_run(r) for r in rows]

    def bot_stats(self) -> List[Dict[str, Any]]:
        sql = text("""
            SELECT
                bot_name,
                COUNT(*) AS total_runs,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS successful_runs,
                SUM(items_created) AS total_created,
                SUM(items_updated) AS total_updated,
                SUM(items_deleted) AS total_deleted,
                MAX(started_at) AS last_run
            FROM bot_runs
            GROUP BY bot_name
            ORDER BY bot_name
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql).mappings().all()
        return [
            {
                "bot_name": r["bot_name"],
                "total_runs": int(r["total_runs"] or 0),
                "successful_runs": int(r["successful_runs"] or 0),
                "total_created": int(r["total_created"] or 0),
                "total_updated": int(r["total_updated"] or 0),
                "total_deleted": int(r["total_deleted"] or 0),
                "last_run": r["last_run"],
            }
            for r in rows
        ]
