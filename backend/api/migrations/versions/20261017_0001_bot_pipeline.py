"""Bot pipeline tables: work queue, ledger, runs, questions, embeddings

The two partial unique indexes on work_queue enforce one active request per
(item, action) and one processing request per item.

Idempotent.
"""

from __future__ import annotations

from alembic import op

revision = "20261017_0001_bot_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
    CREATE TABLE IF NOT EXISTS public.work_queue (
        id            serial PRIMARY KEY,
        item_type     varchar(64)  NOT NULL,
        item_id       varchar(128) NOT NULL,
        action        varchar(32)  NOT NULL,
        priority      integer      NOT NULL DEFAULT 5,
        status        varchar(16)  NOT NULL DEFAULT 'pending',
        reason        text,
        created_by    varchar(128),
        assigned_to   varchar(128),
        created_at    varchar(32)  NOT NULL,
        claimed_at    varchar(32),
        processed_at  varchar(32),
        result        text,
        attempts_left integer      NOT NULL DEFAULT 3,
        parent_id     integer
    );
    """)
    op.execute("""
    CREATE INDEX IF NOT EXISTS idx_work_queue_claim
    ON public.work_queue (status, priority, created_at);
    """)
    op.execute("""
    CREATE INDEX IF NOT EXISTS idx_work_queue_item
    ON public.work_queue (item_type, item_id);
    """)
    op.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_work_queue_active_action
    ON public.work_queue (item_type, item_id, action)
    WHERE status IN ('pending', 'processing');
    """)
    op.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_work_queue_processing_item
    ON public.work_queue (item_type, item_id)
    WHERE status = 'processing';
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS public.bot_ledger (
        id           serial PRIMARY KEY,
        bot_name     varchar(128) NOT NULL,
        action       varchar(32)  NOT NULL,
        item_type    varchar(64)  NOT NULL,
        item_id      varchar(128) NOT NULL,
        before_state text,
        after_state  text,
        reason       text,
        created_at   varchar(32)  NOT NULL
    );
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_bot_ledger_bot ON public.bot_ledger (bot_name);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_bot_ledger_item ON public.bot_ledger (item_type, item_id, id);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_bot_ledger_created ON public.bot_ledger (created_at);")

    op.execute("""
    CREATE TABLE IF NOT EXISTS public.bot_runs (
        id              serial PRIMARY KEY,
        bot_name        varchar(128) NOT NULL,
        started_at      varchar(32)  NOT NULL,
        completed_at    varchar(32),
        status          varchar(16)  NOT NULL DEFAULT 'running',
        items_processed integer      NOT NULL DEFAULT 0,
        items_created   integer      NOT NULL DEFAULT 0,
        items_updated   integer      NOT NULL DEFAULT 0,
        items_deleted   integer      NOT NULL DEFAULT 0,
        summary         text
    );
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_bot_runs_bot ON public.bot_runs (bot_name);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_bot_runs_status ON public.bot_runs (status);")

    op.execute("""
    CREATE TABLE IF NOT EXISTS public.questions (
        id                varchar(128) PRIMARY KEY,
        question          text         NOT NULL,
        answer            text         NOT NULL DEFAULT '',
        explanation       text,
        diagram           text,
        eli5              text,
        tldr              text,
        difficulty        varchar(32),
        channel           varchar(64),
        sub_channel       varchar(64),
        tags              text,
        companies         text,
        relevance_score   integer,
        relevance_details text,
        status            varchar(16)  NOT NULL DEFAULT 'active',
        created_at        varchar(32)  NOT NULL,
        last_updated      varchar(32)
    );
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_questions_status ON public.questions (status);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_questions_channel ON public.questions (channel);")

    op.execute("""
    CREATE TABLE IF NOT EXISTS public.embeddings (
        item_id          varchar(128) PRIMARY KEY,
        model_version    varchar(64)  NOT NULL,
        text_hash        varchar(64)  NOT NULL,
        vector           text         NOT NULL,
        dedup_checked_at varchar(32),
        created_at       varchar(32)  NOT NULL
    );
    """)


def downgrade() -> None:
    # Drops content too; only for rebuilding a scratch database.
    op.execute("DROP TABLE IF EXISTS public.embeddings;")
    op.execute("DROP TABLE IF EXISTS public.questions;")
    op.execute("DROP TABLE IF EXISTS public.bot_runs;")
    op.execute("DROP TABLE IF EXISTS public.bot_ledger;")
    op.execute("DROP TABLE IF EXISTS public.work_queue;")
