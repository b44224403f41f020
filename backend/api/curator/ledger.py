"""
Bot ledger: append-only audit trail of every content mutation.

Rows are never updated or deleted. Ids are monotonic, so an item's history
is replayed by paging through its rows in id order.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from curator.db import to_timestamp, transaction, utcnow
from curator.errors import ConsistencyError
from curator.models import LedgerEntry

log = logging.getLogger(__name__)

_COLUMNS = """
    id, bot_name, action, item_type, item_id, before_state, after_state, reason, created_at
"""


def _loads(value: Optional[str]) -> Optional[dict[str, Any]]:
    return json.loads(value) if value else None


def _dumps(value: Optional[dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def _row_to_entry(row: Any) -> LedgerEntry:
    return LedgerEntry(
        id=int(row["id"]),
        bot_name=row["bot_name"],
        action=row["action"],
        item_type=row["item_type"],
        item_id=row["item_id"],
        before_state=_loads(row["before_state"]),
        after_state=_loads(row["after_state"]),
        reason=row["reason"],
        created_at=row["created_at"],
    )


def states_match(a: Optional[dict[str, Any]], b: Optional[dict[str, Any]]) -> bool:
    """Structural equality of two snapshots (as they round-trip through JSON)."""
    return _dumps(a) == _dumps(b)


class BotLedger:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.clock = clock

    def record(
        self,
        bot_name: str,
        action: str,
        item_type: str,
        item_id: str,
        before_state: Optional[dict[str, Any]],
        after_state: Optional[dict[str, Any]],
        reason: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> LedgerEntry:
        """
        Appends one entry. Pass the connection of the transaction that performs
        the content mutation so both commit or neither does.
        """
        sql = text(f"""
            INSERT INTO bot_ledger
                (bot_name, action, item_type, item_id, before_state, after_state, reason, created_at)
            VALUES
                (:bot_name, :action, :item_type, :item_id, :before_state, :after_state, :reason, :created_at)
            RETURNING {_COLUMNS}
        """)

        with transaction(self.engine, conn) as c:
            row = c.execute(
                sql,
                {
                    "bot_name": bot_name,
                    "action": action,
                    "item_type": item_type,
                    "item_id": item_id,
                    "before_state": _dumps(before_state),
                    "after_state": _dumps(after_state),
                    "reason": reason,
                    "created_at": to_timestamp(self.clock()),
                },
            ).mappings().one()

        entry = _row_to_entry(row)
        log.debug("Ledger %s: %s %s %s/%s", entry.id, bot_name, action, item_type, item_id)
        return entry

    def history_page(
        self,
        item_id: str,
        after_id: int = 0,
        limit: int = 100,
        item_type: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> List[LedgerEntry]:
        """One page of an item's history, oldest first, strictly after `after_id`."""
        type_filter = "AND item_type = :item_type" if item_type else ""
        sql = text(f"""
            SELECT {_COLUMNS} FROM bot_ledger
            WHERE item_id = :item_id
              AND id > :after_id
              {type_filter}
            ORDER BY id ASC
            LIMIT :limit
        """)
        params: Dict[str, Any] = {"item_id": item_id, "after_id": int(after_id), "limit": int(limit)}
        if item_type:
            params["item_type"] = item_type

        with transaction(self.engine, conn) as c:
            rows = c.execute(sql, params).mappings().all()
        return [_row_to_entry(r) for r in rows]

    def history(
        self,
        item_id: str,
        after_id: int = 0,
        page_size: int = 100,
        item_type: Optional[str] = None,
    ) -> Iterator[LedgerEntry]:
        """
        Full history of an item in mutation order.

        Finite and restartable: resume from any point by passing the last seen
        entry id as `after_id`.
        """
        cursor = int(after_id)
        while True:
            page = self.history_page(item_id, after_id=cursor, limit=page_size, item_type=item_type)
            if not page:
                return
            yield from page
            cursor = page[-1].id
            if len(page) < page_size:
                return

    def latest(
        self, item_type: str, item_id: str, conn: Optional[Connection] = None
    ) -> Optional[LedgerEntry]:
        sql = text(f"""
            SELECT {_COLUMNS} FROM bot_ledger
            WHERE item_type = :item_type AND item_id = :item_id
            ORDER BY id DESC
            LIMIT 1
        """)
        with transaction(self.engine, conn) as c:
            row = c.execute(sql, {"item_type": item_type, "item_id": item_id}).mappings().first()
        return _row_to_entry(row) if row else None

    def verify_chain(self, item_id: str, item_type: Optional[str] = None) -> int:
        """
        Checks that each entry's after_state equals the next entry's before_state.

        Returns the number of entries checked; raises ConsistencyError at the
        first break.
        """
        previous: Optional[LedgerEntry] = None
        checked = 0
        for entry in self.history(item_id, item_type=item_type):
            if previous is not None and not states_match(previous.after_state, entry.before_state):
                raise ConsistencyError(
                    f"Ledger chain broken for {entry.item_type}/{item_id}: entry {previous.id} "
                    f"after_state does not match entry {entry.id} before_state"
                )
            previous = entry
            checked += 1
        return checked

    def entries(
        self,
        bot_name: Optional[str] = None,
        item_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[LedgerEntry]:
        """Most recent entries first."""
        where_parts = ["1 = 1"]
        params: Dict[str, Any] = {"limit": int(limit)}
        if bot_name:
            where_parts.append("bot_name = :bot_name")
            params["bot_name"] = bot_name
        if item_type:
            where_parts.append("item_type = :item_type")
            params["item_type"] = item_type
        where_sql = " AND ".join(where_parts)

        sql = text(f"""
            SELECT {_COLUMNS} FROM bot_ledger
            WHERE {where_sql}
            ORDER BY id DESC
            LIMIT :limit
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql, params).mappings().all()
        return [_row_to_entry(r) for r in rows]

    def stats(self, days: int = 7) -> Dict[str, Dict[str, int]]:
        """Per-bot action counts over the last `days` days."""
        since = to_timestamp(self.clock() - timedelta(days=days))
        sql = text("""
            SELECT bot_name, action, COUNT(*) AS count
            FROM bot_ledger
            WHERE created_at > :since
            GROUP BY bot_name, action
            ORDER BY bot_name, count DESC
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql, {"since": since}).mappings().all()

        stats: Dict[str, Dict[str, int]] = {}
        for r in rows:
            stats.setdefault(r["bot_name"], {})[r["action"]] = int(r["count"])
        return stats
