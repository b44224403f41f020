"""
Embedding service: question text -> fixed-length, L2-normalised vector.

Two providers:
  HashingEmbedder  - offline token-hashing projection, deterministic, default
  OpenAIEmbedder   - OpenAI embeddings API, with timeout + retry/backoff

Vectors are cached in the `embeddings` table keyed by item id, tagged with
the provider's model version and a hash of the embedded text. A change in
either makes the cached vector stale and it is recomputed on next use.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

import numpy as np
from openai import OpenAI
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from curator.config import Settings
from curator.db import to_timestamp, transaction, utcnow
from curator.llm import with_retries
from curator.models import ContentItem

log = logging.getLogger(__name__)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


class Embedder(Protocol):
    model_version: str
    dimensions: int

    def embed(self, text: str) -> List[float]:
        ...


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return vector / norm


def _stable_hash(token: str) -> int:
    # Python's hash() is salted per process; vectors must agree across bots.
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class HashingEmbedder:
    """
    Term-frequency vector projected into `dimensions` buckets by hashing.

    Bump `version` whenever the tokenisation or projection changes so cached
    vectors get invalidated.
    """

    def __init__(self, dimensions: int = 384, version: str = "hashing-v1"):
        self.dimensions = int(dimensions)
        self.model_version = f"{version}:{self.dimensions}"

    def _tokens(self, text: str) -> List[str]:
        return [t for t in _TOKEN_SPLIT.split(text.lower()) if len(t) > 2]

    def embed(self, text: str) -> List[float]:
        tokens = self._tokens(text or "")
        vector = np.zeros(self.dimensions, dtype=np.float64)
        if not tokens:
            return vector.tolist()

        tf: Dict[str, int] = {}
        for token in tokens:
            tf[token] = tf.get(token, 0) + 1
        max_tf = max(tf.values())

        for token in sorted(tf):
            freq = tf[token] / max_tf
            h1 = _stable_hash(token)
            h2 = _stable_hash(token + "_2")
            h3 = _stable_hash(token + "_3")
            vector[abs(h1) % self.dimensions] += freq * (1.0 if h1 > 0 else -1.0)
            vector[abs(h2) % self.dimensions] += freq * (1.0 if h2 > 0 else -1.0) * 0.5
            vector[abs(h3) % self.dimensions] += freq * 0.25

        return l2_normalize(vector).tolist()


class OpenAIEmbedder:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[OpenAI] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or Settings.from_env()
        self.model = self.settings.embedding_model
        self.dimensions = self.settings.embedding_dimensions
        self.model_version = f"openai:{self.model}:{self.dimensions}"
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.settings.openai_api_key or None,
                timeout=self.settings.provider_timeout_sec,
                max_retries=0,
            )
        return self._client

    def embed(self, text: str) -> List[float]:
        def _call() -> List[float]:
            resp = self.client.embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dimensions,
                timeout=self.settings.provider_timeout_sec,
            )
            return list(resp.data[0].embedding)

        raw = with_retries(
            _call,
            what=f"embed({self.model})",
            max_attempts=self.settings.provider_max_attempts,
            base_delay=self.settings.provider_backoff_sec,
            sleep=self._sleep,
        )
        return l2_normalize(np.asarray(raw, dtype=np.float64)).tolist()


def build_embedder(settings: Settings) -> Embedder:
    if settings.embedding_model.startswith("hashing"):
        return HashingEmbedder(dimensions=settings.embedding_dimensions, version=settings.embedding_model)
    return OpenAIEmbedder(settings)


def embedding_text(item: ContentItem) -> str:
    return (item.question or "").strip()


def text_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class EmbeddingService:
    def __init__(
        self,
        engine: Engine,
        embedder: Embedder,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.embedder = embedder
        self.clock = clock

    @property
    def model_version(self) -> str:
        return self.embedder.model_version

    def embed(self, text_value: str) -> List[float]:
        return self.embedder.embed(text_value)

    def vector_for(self, item: ContentItem, conn: Optional[Connection] = None) -> List[float]:
        """Cached vector for the item, recomputed if the text or model changed."""
        content = embedding_text(item)
        digest = text_hash(content)

        sql_get = text("""
            SELECT model_version, text_hash, vector FROM embeddings WHERE item_id = :item_id
        """)
        with transaction(self.engine, conn) as c:
            row = c.execute(sql_get, {"item_id": item.id}).mappings().first()
        if row and row["model_version"] == self.model_version and row["text_hash"] == digest:
            return json.loads(row["vector"])

        vector = self.embed(content)
        self._store(item.id, digest, vector, conn=conn)
        return vector

    def _store(
        self, item_id: str, digest: str, vector: List[float], conn: Optional[Connection] = None
    ) -> None:
        # A fresh vector means the item has not been dedup-checked against it yet.
        sql = text("""
            INSERT INTO embeddings (item_id, model_version, text_hash, vector, dedup_checked_at, created_at)
            VALUES (:item_id, :model_version, :text_hash, :vector, NULL, :created_at)
            ON CONFLICT (item_id) DO UPDATE SET
                model_version = excluded.model_version,
                text_hash = excluded.text_hash,
                vector = excluded.vector,
                dedup_checked_at = NULL,
                created_at = excluded.created_at
        """)
        with transaction(self.engine, conn) as c:
            c.execute(
                sql,
                {
                    "item_id": item_id,
                    "model_version": self.model_version,
                    "text_hash": digest,
                    "vector": json.dumps(vector),
                    "created_at": to_timestamp(self.clock()),
                },
            )

    def mark_checked(self, item_id: str, conn: Optional[Connection] = None) -> None:
        sql = text("""
            UPDATE embeddings SET dedup_checked_at = :now
            WHERE item_id = :item_id AND model_version = :model_version
        """)
        with transaction(self.engine, conn) as c:
            c.execute(
                sql,
                {"item_id": item_id, "now": to_timestamp(self.clock()), "model_version": self.model_version},
            )

    def unchecked_item_ids(self, limit: int) -> List[str]:
        """
        Active items not yet dedup-checked under the current model: no cached
        vector, a vector from another model version, never checked, or edited
        since the last check.
        """
        sql = text("""
            SELECT q.id
            FROM questions q
            LEFT JOIN embeddings e ON e.item_id = q.id
            WHERE q.status = 'active'
              AND (
                  e.item_id IS NULL
                  OR e.model_version <> :model_version
                  OR e.dedup_checked_at IS NULL
                  OR (q.last_updated IS NOT NULL AND q.last_updated > e.dedup_checked_at)
              )
            ORDER BY q.created_at ASC, q.id ASC
            LIMIT :limit
        """)
        with self.engine.begin() as conn:
            return [
                str(r)
                for r in conn.execute(
                    sql, {"model_version": self.model_version, "limit": int(limit)}
                ).scalars().all()
            ]

    def active_vectors(self) -> Dict[str, List[float]]:
        """Current-version cached vectors of every active item."""
        sql = text("""
            SELECT e.item_id, e.vector
            FROM embeddings e
            JOIN questions q ON q.id = e.item_id
            WHERE q.status = 'active' AND e.model_version = :model_version
        """)
        with self.engine.begin() as conn:
            rows = conn.execute(sql, {"model_version": self.model_version}).mappings().all()
        return {r["item_id"]: json.loads(r["vector"]) for r in rows}

    def invalidate_stale(self) -> int:
        """Drops cached vectors produced by other model versions."""
        sql = text("DELETE FROM embeddings WHERE model_version <> :model_version")
        with self.engine.begin() as conn:
            removed = conn.execute(sql, {"model_version": self.model_version}).rowcount or 0
        if removed:
            log.info("Invalidated %d stale embedding(s) (current model %s)", removed, self.model_version)
        return int(removed)
