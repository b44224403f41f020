from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_loaded = False


def load_env_once() -> None:
    """
    Loads .env from:
      1) ENV_PATH if provided
      2) backend/api/.env (project default)
      3) current working directory .env (fallback)
    """
    global _loaded
    if _loaded:
        return
    _loaded = True

    # 1) explicit ENV_PATH
    env_path = os.getenv("ENV_PATH")
    if env_path:
        p = Path(env_path)
        if p.exists():
            load_dotenv(p, override=False)
            return

    # 2) backend/api/.env (this file is backend/api/curator/config.py)
    backend_api_dir = Path(__file__).resolve().parents[1]  # .../backend/api
    p2 = backend_api_dir / ".env"
    if p2.exists():
        load_dotenv(p2, override=False)
        return

    # 3) cwd .env
    p3 = Path.cwd() / ".env"
    if p3.exists():
        load_dotenv(p3, override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return _env_float(name, 0.0)


@dataclass(frozen=True)
class Settings:
    # Work queue
    retry_budget: int = 3
    starvation_age_sec: int = 3600
    boost_step: int = 1
    # Claims held longer than this are released; None derives it from the provider policy.
    stale_claim_sec: Optional[float] = None

    # Network providers (LLM + embeddings)
    provider_timeout_sec: float = 120.0
    provider_max_attempts: int = 3
    provider_backoff_sec: float = 2.0

    # Dedup
    dedup_min_similarity: float = 0.85
    dedup_neighbors: int = 5
    dedup_delete_priority: int = 2

    # Relevance gate
    relevance_min_score: int = 40

    # Providers
    embedding_model: str = "hashing-v1"
    embedding_dimensions: int = 384
    openai_api_key: str = ""
    openai_model: str = "gpt-4.1-mini"
    vector_index_path: str = ""

    def provider_worst_case_sec(self) -> float:
        """Longest a single provider call can legitimately take, retries and backoff included."""
        attempts = max(1, self.provider_max_attempts)
        backoff = sum(self.provider_backoff_sec * (2 ** i) for i in range(attempts - 1))
        return self.provider_timeout_sec * attempts + backoff

    def stale_claim_timeout(self) -> float:
        if self.stale_claim_sec is not None:
            return float(self.stale_claim_sec)
        # One extra timeout of headroom for the commit after a slow behavior.
        return self.provider_worst_case_sec() + self.provider_timeout_sec

    @classmethod
    def from_env(cls) -> "Settings":
        load_env_once()
        return cls(
            retry_budget=_env_int("WORK_RETRY_BUDGET", cls.retry_budget),
            starvation_age_sec=_env_int("WORK_STARVATION_AGE_SEC", cls.starvation_age_sec),
            boost_step=_env_int("WORK_BOOST_STEP", cls.boost_step),
            stale_claim_sec=_env_optional_float("WORK_STALE_CLAIM_SEC"),
            provider_timeout_sec=_env_float("PROVIDER_TIMEOUT_SEC", cls.provider_timeout_sec),
            provider_max_attempts=_env_int("PROVIDER_MAX_ATTEMPTS", cls.provider_max_attempts),
            provider_backoff_sec=_env_float("PROVIDER_BACKOFF_SEC", cls.provider_backoff_sec),
            dedup_min_similarity=_env_float("DEDUP_MIN_SIMILARITY", cls.dedup_min_similarity),
            dedup_neighbors=_env_int("DEDUP_NEIGHBORS", cls.dedup_neighbors),
            dedup_delete_priority=_env_int("DEDUP_DELETE_PRIORITY", cls.dedup_delete_priority),
            relevance_min_score=_env_int("RELEVANCE_MIN_SCORE", cls.relevance_min_score),
            embedding_model=os.getenv("EMBEDDING_MODEL", cls.embedding_model),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", cls.embedding_dimensions),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            vector_index_path=os.getenv("VECTOR_INDEX_PATH", ""),
        )
