"""
Storage layout for the bot pipeline.

Tables:
  work_queue  - pending mutation requests, claimed atomically by bots
  bot_ledger  - append-only audit log, one row per content mutation
  bot_runs    - one row per bot invocation with aggregate counters
  questions   - canonical content items
  embeddings  - version-tagged vector cache + duplicate-checked marker

The two partial unique indexes on work_queue are the storage-level guard for
"one in-flight mutation per item" and "no duplicate pending work".
"""

from __future__ import annotations

import logging

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, text
from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)

metadata = MetaData()

_ACTIVE_WORK = text("status IN ('pending', 'processing')")
_PROCESSING_WORK = text("status = 'processing'")

work_queue = Table(
    "work_queue",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("item_type", String(64), nullable=False),
    Column("item_id", String(128), nullable=False),
    Column("action", String(32), nullable=False),
    Column("priority", Integer, nullable=False, server_default="5"),
    Column("status", String(16), nullable=False, server_default="pending"),
    Column("reason", Text),
    Column("created_by", String(128)),
    Column("assigned_to", String(128)),
    Column("created_at", String(32), nullable=False),
    Column("claimed_at", String(32)),
    Column("processed_at", String(32)),
    Column("result", Text),
    Column("attempts_left", Integer, nullable=False, server_default="3"),
    Column("parent_id", Integer),
    Index("idx_work_queue_claim", "status", "priority", "created_at"),
    Index("idx_work_queue_item", "item_type", "item_id"),
    Index(
        "uq_work_queue_active_action",
        "item_type",
        "item_id",
        "action",
        unique=True,
        sqlite_where=_ACTIVE_WORK,
        postgresql_where=_ACTIVE_WORK,
    ),
    Index(
        "uq_work_queue_processing_item",
        "item_type",
        "item_id",
        unique=True,
        sqlite_where=_PROCESSING_WORK,
        postgresql_where=_PROCESSING_WORK,
    ),
)

bot_ledger = Table(
    "bot_ledger",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("bot_name", String(128), nullable=False),
    Column("action", String(32), nullable=False),
    Column("item_type", String(64), nullable=False),
    Column("item_id", String(128), nullable=False),
    Column("before_state", Text),
    Column("after_state", Text),
    Column("reason", Text),
    Column("created_at", String(32), nullable=False),
    Index("idx_bot_ledger_bot", "bot_name"),
    Index("idx_bot_ledger_item", "item_type", "item_id", "id"),
    Index("idx_bot_ledger_created", "created_at"),
)

bot_runs = Table(
    "bot_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("bot_name", String(128), nullable=False),
    Column("started_at", String(32), nullable=False),
    Column("completed_at", String(32)),
    Column("status", String(16), nullable=False, server_default="running"),
    Column("items_processed", Integer, nullable=False, server_default="0"),
    Column("items_created", Integer, nullable=False, server_default="0"),
    Column("items_updated", Integer, nullable=False, server_default="0"),
    Column("items_deleted", Integer, nullable=False, server_default="0"),
    Column("summary", Text),
    Index("idx_bot_runs_bot", "bot_name"),
    Index("idx_bot_runs_status", "status"),
)

questions = Table(
    "questions",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("question", Text, nullable=False),
    Column("answer", Text, nullable=False, server_default=""),
    Column("explanation", Text),
    Column("diagram", Text),
    Column("eli5", Text),
    Column("tldr", Text),
    Column("difficulty", String(32)),
    Column("channel", String(64)),
    Column("sub_channel", String(64)),
    Column("tags", Text),
    Column("companies", Text),
    Column("relevance_score", Integer),
    Column("relevance_details", Text),
    Column("status", String(16), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
    Column("last_updated", String(32)),
    Index("idx_questions_status", "status"),
    Index("idx_questions_channel", "channel"),
)

embeddings = Table(
    "embeddings",
    metadata,
    Column("item_id", String(128), primary_key=True),
    Column("model_version", String(64), nullable=False),
    Column("text_hash", String(64), nullable=False),
    Column("vector", Text, nullable=False),
    Column("dedup_checked_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


def init_db(engine: Engine) -> None:
    """Create tables if they don't exist."""
    metadata.create_all(engine)
    log.info("Database schema initialized (%s)", engine.dialect.name)
