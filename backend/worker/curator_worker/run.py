"""Worker entrypoint.

Runs one bot against the shared work queue, then sleeps and repeats.

Environment:
  BOT_NAME             name recorded on bot runs and ledger entries (default "maintenance-bot")
  BOT_MODE             "orchestrator" (process queued work) or "dedup" (scan and queue duplicates)
  WORKER_CONCURRENCY   orchestrator threads sharing one run (default 1)
  WORKER_MAX_ITEMS     stop a run after this many items (default: until the queue is empty)
  WORKER_POLL_SEC      sleep between runs (default 30)
  WORKER_ONCE          "1" to exit after a single run
  DEDUP_BATCH_SIZE     items checked per dedup cycle (default 50)
  WORK_STALE_CLAIM_SEC claims older than this are released before each run
                       (default: worst-case provider call plus one timeout)
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

from curator.behaviors import default_behaviors
from curator.config import Settings, load_env_once
from curator.content import ContentStore
from curator.db import get_engine
from curator.dedup import DedupEngine
from curator.embeddings import EmbeddingService, build_embedder
from curator.errors import ConsistencyError
from curator.orchestrator import Orchestrator
from curator.runs import BotRunTracker
from curator.tables import init_db
from curator.work_queue import WorkQueue

log = logging.getLogger("curator_worker")


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


def run_orchestrator_once(engine, settings: Settings, bot_name: str) -> None:
    orchestrator = Orchestrator(engine, default_behaviors(settings.relevance_min_score), bot_name, settings)
    released = orchestrator.queue.release_stale()
    if released:
        log.warning("Released %d stale claim(s)", len(released))
    run = orchestrator.run(
        max_items=_optional_int("WORKER_MAX_ITEMS"),
        workers=int(os.getenv("WORKER_CONCURRENCY", "1")),
    )
    log.info("Run %s %s: %s", run.id, run.status, run.summary)


def run_dedup_once(engine, bot_name: str, dedup: DedupEngine) -> None:
    runs = BotRunTracker(engine)
    run_id = runs.start_run(bot_name)
    try:
        report = dedup.run_cycle(batch_size=_optional_int("DEDUP_BATCH_SIZE") or 50)
    except Exception as e:
        runs.finish_run(run_id, "failed", {"error": type(e).__name__, "detail": str(e)})
        raise
    runs.finish_run(
        run_id,
        "completed",
        {
            "scanned": report.scanned,
            "pairs": len(report.pairs),
            "enqueued": [w.item_id for w in report.enqueued],
        },
    )


def main() -> None:
    load_env_once()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    settings = Settings.from_env()
    engine = get_engine()
    init_db(engine)

    mode = os.getenv("BOT_MODE", "orchestrator").strip().lower()
    bot_name = os.getenv("BOT_NAME", "dedup-bot" if mode == "dedup" else "maintenance-bot")
    poll_sec = float(os.getenv("WORKER_POLL_SEC", "30"))
    once = os.getenv("WORKER_ONCE", "") == "1"

    dedup: Optional[DedupEngine] = None
    if mode == "dedup":
        embeddings = EmbeddingService(engine, build_embedder(settings))
        embeddings.invalidate_stale()
        dedup = DedupEngine(
            ContentStore(engine), embeddings, WorkQueue(engine, settings), settings=settings, bot_name=bot_name
        )
    elif mode != "orchestrator":
        raise RuntimeError(f"BOT_MODE must be 'orchestrator' or 'dedup', got {mode!r}")

    log.info("Worker started: bot=%s mode=%s", bot_name, mode)
    while True:
        try:
            if dedup is not None:
                run_dedup_once(engine, bot_name, dedup)
            else:
                run_orchestrator_once(engine, settings, bot_name)
        except ConsistencyError:
            log.error("Stopping worker: ledger/content consistency check failed")
            raise
        if once:
            return
        time.sleep(poll_sec)


if __name__ == "__main__":
    main()
