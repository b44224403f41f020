"""
Dedup engine: finds near-duplicate questions by vector similarity and queues
the losers for deletion.

Per cycle:  IDLE -> SCANNING -> (pairs found) RESOLVING -> IDLE

Deletion is never done here. Losers are enqueued as `delete` work items so
the orchestrator performs (and ledgers) the mutation like any other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import text

from curator import scoring
from curator.config import Settings
from curator.content import ITEM_TYPE, ContentStore
from curator.embeddings import EmbeddingService
from curator.errors import DuplicateWorkError, IndexCorruptionError, TransientError
from curator.models import ContentItem, DuplicateCandidatePair, WorkItem
from curator.vector_index import VectorIndex
from curator.work_queue import WorkQueue

log = logging.getLogger(__name__)


class DedupState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    RESOLVING = "resolving"


@dataclass
class DedupReport:
    scanned: int = 0
    pairs: List[DuplicateCandidatePair] = field(default_factory=list)
    enqueued: List[WorkItem] = field(default_factory=list)


def relevance_of(item: ContentItem) -> int:
    if item.relevance_score is not None:
        return int(item.relevance_score)
    return scoring.score(item).score


def rank_key(item: ContentItem) -> Tuple[int, int, str, str]:
    """Sort key; the smallest key is the item to keep."""
    return (-relevance_of(item), -item.enrichment_count(), item.created_at or "", item.id)


def pick_winner(a: ContentItem, b: ContentItem) -> ContentItem:
    """
    Keeps the higher relevance score, then the more complete metadata, then
    the older item. Item id settles anything still tied.
    """
    return a if rank_key(a) <= rank_key(b) else b


class _UnionFind:
    def __init__(self) -> None:
        self.parent: Dict[str, str] = {}

    def find(self, x: str) -> str:
        self.parent.setdefault(x, x)
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Deterministic root: smaller id.
            if rb < ra:
                ra, rb = rb, ra
            self.parent[rb] = ra

    def groups(self) -> List[List[str]]:
        out: Dict[str, List[str]] = {}
        for x in list(self.parent):
            out.setdefault(self.find(x), []).append(x)
        return [sorted(members) for _, members in sorted(out.items())]


def duplicate_clusters(pairs: Iterable[DuplicateCandidatePair]) -> List[List[str]]:
    uf = _UnionFind()
    for p in pairs:
        uf.union(p.item_a, p.item_b)
    return [g for g in uf.groups() if len(g) > 1]


class DedupEngine:
    def __init__(
        self,
        store: ContentStore,
        embeddings: EmbeddingService,
        queue: WorkQueue,
        index: Optional[VectorIndex] = None,
        settings: Optional[Settings] = None,
        bot_name: str = "dedup-bot",
    ):
        self.store = store
        self.embeddings = embeddings
        self.queue = queue
        self.settings = settings or Settings()
        self.bot_name = bot_name
        self.state = DedupState.IDLE

        dims = embeddings.embedder.dimensions
        if index is not None:
            self.index = index
        elif self.settings.vector_index_path:
            self.index = VectorIndex.load(self.settings.vector_index_path, dims, embeddings.model_version)
        else:
            self.index = VectorIndex(dims, embeddings.model_version)
        self._last_scanned = 0

    def _set_state(self, state: DedupState) -> None:
        if state != self.state:
            log.info("Dedup %s -> %s", self.state.value, state.value)
            self.state = state

    def sync_index(self) -> int:
        """Brings the index in line with the cached vectors of active items."""
        vectors = self.embeddings.active_vectors()
        for stale in [i for i in self.index.ids() if i not in vectors]:
            self.index.remove(stale)
        for item_id, vector in vectors.items():
            try:
                self.index.upsert(item_id, vector)
            except IndexCorruptionError as e:
                log.warning("Skipping cached vector for %s: %s", item_id, e)
        return len(self.index)

    def _delete_in_flight(self, item_id: str) -> bool:
        sql = text("""
            SELECT 1 FROM work_queue
            WHERE item_type = :item_type AND item_id = :item_id
              AND action = 'delete' AND status IN ('pending', 'processing')
            LIMIT 1
        """)
        with self.queue.engine.begin() as conn:
            return conn.execute(sql, {"item_type": ITEM_TYPE, "item_id": item_id}).first() is not None

    def _neighbors(self, item_id: str, vector: List[float], min_similarity: float) -> List[Tuple[str, float]]:
        try:
            self.index.upsert(item_id, vector)
            return self.index.query_nearest(
                vector, k=self.settings.dedup_neighbors, min_similarity=min_similarity, exclude=item_id
            )
        except IndexCorruptionError as e:
            # A broken index must not block content creation.
            log.warning("Vector index unusable while checking %s, treating as no duplicates: %s", item_id, e)
            return []

    def scan_for_duplicates(
        self, batch_size: int = 50, min_similarity: Optional[float] = None
    ) -> List[DuplicateCandidatePair]:
        """
        Checks up to `batch_size` unchecked active items against the index.

        Emits each unordered pair above the threshold once, skipping self
        matches, inactive items and items already queued for deletion.
        """
        threshold = self.settings.dedup_min_similarity if min_similarity is None else float(min_similarity)
        self._set_state(DedupState.SCANNING)
        self._last_scanned = 0
        # Other bot processes may have added or deleted items since the last scan.
        self.sync_index()

        ids = self.embeddings.unchecked_item_ids(batch_size)
        items = self.store.get_many(ids)
        pairs: Dict[Tuple[str, str], DuplicateCandidatePair] = {}

        for item_id in ids:
            item = items.get(item_id)
            if item is None or item.status != "active":
                continue
            try:
                vector = self.embeddings.vector_for(item)
            except TransientError as e:
                # Left unchecked; the next scan tries again.
                log.warning("Embedding failed for %s, will retry next scan: %s", item_id, e)
                continue

            self._last_scanned += 1
            for other_id, similarity in self._neighbors(item_id, vector, threshold):
                candidate = DuplicateCandidatePair(item_id, other_id, similarity)
                key = candidate.key()
                if key in pairs:
                    continue
                other = items.get(other_id) or self.store.get(other_id)
                if other is None or other.status != "active":
                    self.index.remove(other_id)
                    continue
                if self._delete_in_flight(item_id) or self._delete_in_flight(other_id):
                    continue
                items[other_id] = other
                winner = pick_winner(item, other)
                pairs[key] = DuplicateCandidatePair(
                    item_a=item_id,
                    item_b=other_id,
                    similarity=similarity,
                    verdict="keep_a" if winner.id == item_id else "keep_b",
                )

            self.embeddings.mark_checked(item_id)

        found = sorted(pairs.values(), key=lambda p: (-p.similarity, p.key()))
        log.info("Dedup scan checked %d item(s), found %d candidate pair(s)", self._last_scanned, len(found))
        return found

    def resolve(self, pairs: List[DuplicateCandidatePair]) -> List[WorkItem]:
        """
        Groups pairs into clusters (A~B, B~C puts A, B, C together) and keeps
        one canonical item per cluster; every other member gets a delete work
        item naming the keeper.
        """
        if not pairs:
            return []
        self._set_state(DedupState.RESOLVING)
        enqueued: List[WorkItem] = []

        for cluster in duplicate_clusters(pairs):
            members = [m for m in self.store.get_many(cluster).values() if m.status == "active"]
            if len(members) < 2:
                continue
            members.sort(key=rank_key)
            winner, losers = members[0], members[1:]
            for loser in losers:
                try:
                    work = self.queue.enqueue(
                        ITEM_TYPE,
                        loser.id,
                        "delete",
                        priority=self.settings.dedup_delete_priority,
                        reason=f"duplicate of {winner.id}",
                        created_by=self.bot_name,
                    )
                except DuplicateWorkError as e:
                    log.info("Delete already queued for %s: %s", loser.id, e)
                    continue
                self.index.remove(loser.id)
                enqueued.append(work)
                log.info("Queued %s for deletion as duplicate of %s", loser.id, winner.id)

        return enqueued

    def run_cycle(self, batch_size: int = 50, min_similarity: Optional[float] = None) -> DedupReport:
        report = DedupReport()
        try:
            report.pairs = self.scan_for_duplicates(batch_size, min_similarity)
            report.scanned = self._last_scanned
            if report.pairs:
                report.enqueued = self.resolve(report.pairs)
        finally:
            self._set_state(DedupState.IDLE)
        if self.settings.vector_index_path:
            self.index.save(self.settings.vector_index_path)
        return report
