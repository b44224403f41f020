from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Optional

# Fields filled in by enrichment bots; counted when comparing metadata completeness.
ENRICHMENT_FIELDS: tuple[str, ...] = ("explanation", "diagram", "eli5", "tldr", "companies")


@dataclass(frozen=True)
class WorkItem:
    id: int
    item_type: str
    item_id: str
    action: str
    priority: int
    status: str
    reason: Optional[str]
    created_by: Optional[str]
    assigned_to: Optional[str]
    created_at: str
    claimed_at: Optional[str]
    processed_at: Optional[str]
    result: Optional[dict[str, Any]]
    attempts_left: int
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    bot_name: str
    action: str
    item_type: str
    item_id: str
    before_state: Optional[dict[str, Any]]
    after_state: Optional[dict[str, Any]]
    reason: Optional[str]
    created_at: str


@dataclass(frozen=True)
class BotRun:
    id: int
    bot_name: str
    started_at: str
    completed_at: Optional[str]
    status: str
    items_processed: int
    items_created: int
    items_updated: int
    items_deleted: int
    summary: Optional[dict[str, Any]]


@dataclass(frozen=True)
class ContentItem:
    id: str
    question: str
    answer: str = ""
    explanation: Optional[str] = None
    diagram: Optional[str] = None
    eli5: Optional[str] = None
    tldr: Optional[str] = None
    difficulty: Optional[str] = None
    channel: Optional[str] = None
    sub_channel: Optional[str] = None
    tags: tuple[str, ...] = ()
    companies: tuple[str, ...] = ()
    relevance_score: Optional[int] = None
    relevance_details: Optional[dict[str, Any]] = None
    status: str = "active"
    created_at: str = ""
    last_updated: Optional[str] = None

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe state as stored in ledger before/after columns."""
        d = asdict(self)
        d["tags"] = list(self.tags)
        d["companies"] = list(self.companies)
        return d

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "ContentItem":
        d = dict(data)
        d["tags"] = tuple(d.get("tags") or ())
        d["companies"] = tuple(d.get("companies") or ())
        return cls(**d)

    def enrichment_count(self) -> int:
        count = 0
        for name in ENRICHMENT_FIELDS:
            value = getattr(self, name)
            if value:
                count += 1
        return count

    def with_changes(self, **changes: Any) -> "ContentItem":
        return replace(self, **changes)


@dataclass(frozen=True)
class DuplicateCandidatePair:
    item_a: str
    item_b: str
    similarity: float
    verdict: Optional[str] = None  # "keep_a" | "keep_b"

    def key(self) -> tuple[str, str]:
        return (self.item_a, self.item_b) if self.item_a <= self.item_b else (self.item_b, self.item_a)


@dataclass(frozen=True)
class ScoreResult:
    score: int
    details: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionResult:
    """What a bot behavior hands back to the orchestrator."""
    new_state: Optional[ContentItem]
    result: dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
