"""
Bot behaviors: what a bot does with one claimed work item.

A behavior is any callable `(work_item, current_item) -> ActionResult`.
`current_item` is None when the content does not exist yet (create).
Returning `new_state=None` means "nothing to change". Behaviors never write
to storage; the orchestrator applies the returned state and ledgers it.

Raise TransientError for provider hiccups (retried) and ValidationError for
content that must not be stored (flagged, not retried).
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional

from curator import scoring
from curator.errors import ValidationError
from curator.llm import LLMClient
from curator.models import ENRICHMENT_FIELDS, ActionResult, ContentItem, WorkItem

log = logging.getLogger(__name__)

Behavior = Callable[[WorkItem, Optional[ContentItem]], ActionResult]
DispatchTable = Mapping[str, Behavior]


def delete_behavior(work: WorkItem, current: Optional[ContentItem]) -> ActionResult:
    """Soft delete: the row stays with status='deleted'."""
    if current is None:
        raise ValidationError(f"Cannot delete {work.item_id}: item does not exist")
    if current.status == "deleted":
        return ActionResult(new_state=None, result={"skipped": "already deleted"})
    return ActionResult(
        new_state=current.with_changes(status="deleted"),
        result={"deleted": current.id},
        reason=work.reason,
    )


def make_verify_behavior(min_score: int) -> Behavior:
    """Rescores an item and flags it when it drops below `min_score`."""

    def verify(work: WorkItem, current: Optional[ContentItem]) -> ActionResult:
        if current is None:
            raise ValidationError(f"Cannot verify {work.item_id}: item does not exist")
        if current.status == "deleted":
            return ActionResult(new_state=None, result={"skipped": "deleted"})
        scored = scoring.score(current)
        status = current.status
        if status == "active" and not scoring.passes_gate(scored, min_score):
            status = "flagged"

        result = {"score": scored.score, "passed": scoring.passes_gate(scored, min_score)}
        if (
            scored.score == current.relevance_score
            and scored.details == (current.relevance_details or {})
            and status == current.status
        ):
            return ActionResult(new_state=None, result=result)

        reason = f"relevance {scored.score}"
        if status != current.status:
            reason += f" below gate {min_score}"
        return ActionResult(
            new_state=current.with_changes(
                relevance_score=scored.score,
                relevance_details=scored.details,
                status=status,
            ),
            result=result,
            reason=reason,
        )

    return verify


def make_field_enrich_behavior(
    llm: LLMClient,
    field: str,
    build_prompt: Callable[[ContentItem], str],
    min_chars: int = 1,
) -> Behavior:
    """
    Fills one enrichment field (eli5, tldr, explanation, diagram) with text
    generated from `build_prompt(item)`.
    """
    if field not in ENRICHMENT_FIELDS or field == "companies":
        raise ValueError(f"{field!r} is not a text enrichment field")

    def enrich(work: WorkItem, current: Optional[ContentItem]) -> ActionResult:
        if current is None:
            raise ValidationError(f"Cannot enrich {work.item_id}: item does not exist")
        generated = (llm.generate(build_prompt(current)) or "").strip()
        if len(generated) < min_chars:
            raise ValidationError(
                f"Generated {field} for {current.id} is too short ({len(generated)} < {min_chars} chars)"
            )
        return ActionResult(
            new_state=current.with_changes(**{field: generated}),
            result={"field": field, "chars": len(generated)},
            reason=f"enriched {field}",
        )

    return enrich


def default_behaviors(min_score: int) -> dict[str, Behavior]:
    """Behaviors every bot can run. create/improve/enrich come from the bot itself."""
    return {
        "delete": delete_behavior,
        "verify": make_verify_behavior(min_score),
    }
