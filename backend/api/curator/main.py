from __future__ import annotations

import logging
import os

from fastapi import Depends, FastAPI, HTTPException

from curator.config import Settings, load_env_once
from curator.db import db_ping, get_engine
from curator.errors import DuplicateWorkError, WorkflowError
from curator.schemas import QueueStatsOut, WorkCreateIn, WorkOut
from curator.work_queue import WorkQueue

load_env_once()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

app = FastAPI(title="Question Curator Intake API", version="0.1.0")


def get_queue() -> WorkQueue:
    return WorkQueue(get_engine(), Settings.from_env())


# -----------------------------
# Health checks
# -----------------------------
@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/readyz")
def readyz():
    engine = get_engine()
    db_ping(engine)
    return {"status": "ready", "db": "ok"}


# -----------------------------
# Work intake
# -----------------------------
@app.post("/work", response_model=WorkOut, status_code=201)
def enqueue_work(body: WorkCreateIn, queue: WorkQueue = Depends(get_queue)):
    try:
        return queue.enqueue(
            body.item_type,
            body.item_id,
            body.action,
            priority=body.priority,
            reason=body.reason,
            created_by=body.created_by or "api",
        )
    except DuplicateWorkError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except WorkflowError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/work/stats", response_model=QueueStatsOut)
def work_stats(queue: WorkQueue = Depends(get_queue)):
    return queue.stats()


@app.get("/work/{work_id}", response_model=WorkOut)
def get_work(work_id: int, queue: WorkQueue = Depends(get_queue)):
    try:
        return queue.get(work_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Not found")
