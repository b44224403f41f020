"""
Content store over the `questions` table.

Only the orchestrator, acting on a claimed work item, writes here. Readers
(dedup scans, scorers) use the get/list helpers.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from curator.db import transaction
from curator.models import ContentItem

log = logging.getLogger(__name__)

ITEM_TYPE = "question"

_COLUMNS = """
    id, question, answer, explanation, diagram, eli5, tldr, difficulty, channel,
    sub_channel, tags, companies, relevance_score, relevance_details, status,
    created_at, last_updated
"""


def _row_to_item(row: Any) -> ContentItem:
    details = row["relevance_details"]
    score = row["relevance_score"]
    return ContentItem(
        id=row["id"],
        question=row["question"],
        answer=row["answer"] or "",
        explanation=row["explanation"],
        diagram=row["diagram"],
        eli5=row["eli5"],
        tldr=row["tldr"],
        difficulty=row["difficulty"],
        channel=row["channel"],
        sub_channel=row["sub_channel"],
        tags=tuple(json.loads(row["tags"])) if row["tags"] else (),
        companies=tuple(json.loads(row["companies"])) if row["companies"] else (),
        relevance_score=int(score) if score is not None else None,
        relevance_details=json.loads(details) if details else None,
        status=row["status"],
        created_at=row["created_at"],
        last_updated=row["last_updated"],
    )


def _item_params(item: ContentItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "question": item.question,
        "answer": item.answer or "",
        "explanation": item.explanation,
        "diagram": item.diagram,
        "eli5": item.eli5,
        "tldr": item.tldr,
        "difficulty": item.difficulty,
        "channel": item.channel,
        "sub_channel": item.sub_channel,
        "tags": json.dumps(list(item.tags)) if item.tags else None,
        "companies": json.dumps(list(item.companies)) if item.companies else None,
        "relevance_score": item.relevance_score,
        "relevance_details": (
            json.dumps(item.relevance_details, sort_keys=True) if item.relevance_details else None
        ),
        "status": item.status,
        "created_at": item.created_at,
        "last_updated": item.last_updated,
    }


class ContentStore:
    item_type = ITEM_TYPE

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, item_id: str, conn: Optional[Connection] = None) -> Optional[ContentItem]:
        sql = text(f"SELECT {_COLUMNS} FROM questions WHERE id = :id")
        with transaction(self.engine, conn) as c:
            row = c.execute(sql, {"id": item_id}).mappings().first()
        return _row_to_item(row) if row else None

    def put(self, item: ContentItem, conn: Optional[Connection] = None) -> ContentItem:
        """Insert or replace the row for `item.id`. Returns what was stored."""
        sql = text(f"""
            INSERT INTO questions ({_COLUMNS})
            VALUES (
                :id, :question, :answer, :explanation, :diagram, :eli5, :tldr, :difficulty,
                :channel, :sub_channel, :tags, :companies, :relevance_score,
                :relevance_details, :status, :created_at, :last_updated
            )
            ON CONFLICT (id) DO UPDATE SET
                question = excluded.question,
                answer = excluded.answer,
                explanation = excluded.explanation,
                diagram = excluded.diagram,
                eli5 = excluded.eli5,
                tldr = excluded.tldr,
                difficulty = excluded.difficulty,
                channel = excluded.channel,
                sub_channel = excluded.sub_channel,
                tags = excluded.tags,
                companies = excluded.companies,
                relevance_score = excluded.relevance_score,
                relevance_details = excluded.relevance_details,
                status = excluded.status,
                created_at = excluded.created_at,
                last_updated = excluded.last_updated
            RETURNING {_COLUMNS}
        """)
        with transaction(self.engine, conn) as c:
            row = c.execute(sql, _item_params(item)).mappings().one()
        return _row_to_item(row)

    def list_by_status(self, status: str = "active", limit: int = 1000) -> List[ContentItem]:
        sql = text(f"""
            SELECT {_COLUMNS} FROM questions
            WHERE status = :status
            ORDER BY created_at ASC, id ASC
            LIMIT :limit
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql, {"status": status, "limit": int(limit)}).mappings().all()
        return [_row_to_item(r) for r in rows]

    def get_many(self, item_ids: List[str]) -> Dict[str, ContentItem]:
        found: Dict[str, ContentItem] = {}
        with self.engine.begin() as conn:
            for item_id in item_ids:
                item = self.get(item_id, conn=conn)
                if item is not None:
                    found[item_id] = item
        return found
