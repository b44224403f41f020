"""
In-memory cosine-similarity index over item vectors.

Vectors are stored L2-normalised in one matrix, so a nearest-neighbour query
is a single matrix-vector product. The index can be saved to and loaded from
a directory; anything unreadable or inconsistent on load yields an empty
index instead of an error.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from curator.errors import IndexCorruptionError

log = logging.getLogger(__name__)

VECTORS_FILE = "vectors.npy"
IDS_FILE = "ids.json"
META_FILE = "meta.json"


class VectorIndex:
    def __init__(self, dimensions: int, model_version: str = ""):
        self.dimensions = int(dimensions)
        self.model_version = model_version
        self._ids: List[str] = []
        self._pos: Dict[str, int] = {}
        self._matrix = np.zeros((0, self.dimensions), dtype=np.float32)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._pos

    def ids(self) -> List[str]:
        return list(self._ids)

    def _prepare(self, vector: Sequence[float]) -> np.ndarray:
        v = np.asarray(vector, dtype=np.float32).reshape(-1)
        if v.shape[0] != self.dimensions:
            raise IndexCorruptionError(
                f"Vector has {v.shape[0]} dimensions, index expects {self.dimensions}"
            )
        if not np.all(np.isfinite(v)):
            raise IndexCorruptionError("Vector contains NaN or infinite values")
        norm = float(np.linalg.norm(v))
        return v / norm if norm > 0 else v

    def upsert(self, item_id: str, vector: Sequence[float]) -> None:
        v = self._prepare(vector)
        pos = self._pos.get(item_id)
        if pos is not None:
            self._matrix[pos] = v
            return
        self._pos[item_id] = len(self._ids)
        self._ids.append(item_id)
        self._matrix = np.vstack([self._matrix, v[np.newaxis, :]])

    def remove(self, item_id: str) -> bool:
        pos = self._pos.pop(item_id, None)
        if pos is None:
            return False
        last = len(self._ids) - 1
        if pos != last:
            # Move the last row into the hole so positions stay dense.
            moved = self._ids[last]
            self._ids[pos] = moved
            self._matrix[pos] = self._matrix[last]
            self._pos[moved] = pos
        self._ids.pop()
        self._matrix = self._matrix[:last]
        return True

    def query_nearest(
        self,
        vector: Sequence[float],
        k: int = 5,
        min_similarity: float = -1.0,
        exclude: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        """
        Up to `k` (item_id, cosine similarity) pairs with similarity >=
        `min_similarity`, most similar first. Ties break by item id.
        """
        if not self._ids or k <= 0:
            return []
        if self._matrix.shape != (len(self._ids), self.dimensions):
            raise IndexCorruptionError(
                f"Index matrix shape {self._matrix.shape} does not match {len(self._ids)} ids"
            )
        q = self._prepare(vector)
        if not np.any(q):
            return []

        sims = np.clip(self._matrix @ q, -1.0, 1.0)
        hits = [
            (self._ids[i], float(sims[i]))
            for i in range(len(self._ids))
            if self._ids[i] != exclude and float(sims[i]) >= min_similarity
        ]
        hits.sort(key=lambda h: (-h[1], h[0]))
        return hits[:k]

    def save(self, directory: str | Path) -> None:
        path = Path(directory)
        path.mkdir(parents=True, exist_ok=True)
        np.save(path / VECTORS_FILE, self._matrix)
        (path / IDS_FILE).write_text(json.dumps(self._ids), encoding="utf-8")
        (path / META_FILE).write_text(
            json.dumps({"dimensions": self.dimensions, "model_version": self.model_version}),
            encoding="utf-8",
        )
        log.info("Saved vector index (%d vectors) to %s", len(self._ids), path)

    @classmethod
    def load(cls, directory: str | Path, dimensions: int, model_version: str = "") -> "VectorIndex":
        """
        Loads a saved index. Missing files, unreadable data, a dimension or
        model-version mismatch all produce an empty index.
        """
        index = cls(dimensions, model_version)
        path = Path(directory)
        if not (path / VECTORS_FILE).exists() or not (path / IDS_FILE).exists():
            return index
        try:
            meta = json.loads((path / META_FILE).read_text(encoding="utf-8"))
            if int(meta.get("dimensions", -1)) != index.dimensions:
                raise IndexCorruptionError(
                    f"saved dimensions {meta.get('dimensions')} != {index.dimensions}"
                )
            if model_version and meta.get("model_version") != model_version:
                raise IndexCorruptionError(
                    f"saved model {meta.get('model_version')!r} != {model_version!r}"
                )
            matrix = np.load(path / VECTORS_FILE, allow_pickle=False).astype(np.float32)
            ids = json.loads((path / IDS_FILE).read_text(encoding="utf-8"))
            if matrix.ndim != 2 or matrix.shape != (len(ids), index.dimensions):
                raise IndexCorruptionError(f"matrix shape {matrix.shape} does not match {len(ids)} ids")
            if len(set(ids)) != len(ids):
                raise IndexCorruptionError("duplicate ids in saved index")
        except (OSError, ValueError, IndexCorruptionError) as e:
            log.warning("Ignoring unusable vector index at %s: %s", path, e)
            return cls(dimensions, model_version)

        index._ids = [str(i) for i in ids]
        index._pos = {item_id: pos for pos, item_id in enumerate(index._ids)}
        index._matrix = matrix
        log.info("Loaded vector index (%d vectors) from %s", len(index._ids), path)
        return index
