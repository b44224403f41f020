from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import make_item

from curator.behaviors import delete_behavior, make_field_enrich_behavior, make_verify_behavior
from curator.errors import ValidationError
from curator.models import WorkItem


def _work(action, item_id="q-1", reason=None):
    return WorkItem(
        id=1, item_type="question", item_id=item_id, action=action, priority=5, status="processing",
        reason=reason, created_by="test", assigned_to="bot", created_at="", claimed_at="",
        processed_at=None, result=None, attempts_left=3,
    )


def test_delete_is_soft_and_idempotent():
    item = make_item()

    out = delete_behavior(_work("delete", reason="duplicate of q-0"), item)
    assert out.new_state.status == "deleted"
    assert out.new_state.question == item.question
    assert out.reason == "duplicate of q-0"

    again = delete_behavior(_work("delete"), out.new_state)
    assert again.new_state is None

    with pytest.raises(ValidationError):
        delete_behavior(_work("delete"), None)


def test_verify_rescoring():
    verify = make_verify_behavior(40)

    fresh = verify(_work("verify"), make_item())
    assert fresh.new_state.relevance_score == 65
    assert fresh.new_state.status == "active"

    unchanged = verify(_work("verify"), fresh.new_state)
    assert unchanged.new_state is None

    weak = verify(_work("verify"), make_item(question="Hash?", answer=""))
    assert weak.new_state.status == "flagged"
    assert weak.result["passed"] is False
    assert "below gate 40" in weak.reason


def test_verify_skips_deleted_items():
    deleted = make_item(status="deleted", question="Hash?", answer="")
    out = make_verify_behavior(40)(_work("verify"), deleted)
    assert out.new_state is None
    assert out.result == {"skipped": "deleted"}


def test_field_enrichment_uses_generated_text():
    llm = MagicMock()
    llm.generate.return_value = "  Like a coat check: your ticket finds your coat.  "
    enrich = make_field_enrich_behavior(llm, "eli5", lambda item: f"ELI5: {item.question}", min_chars=10)

    out = enrich(_work("enrich"), make_item())

    assert out.new_state.eli5 == "Like a coat check: your ticket finds your coat."
    assert out.result == {"field": "eli5", "chars": len(out.new_state.eli5)}
    llm.generate.assert_called_once_with("ELI5: How does a hash map handle collisions?")


def test_field_enrichment_rejects_short_output():
    llm = MagicMock()
    llm.generate.return_value = "ok"
    enrich = make_field_enrich_behavior(llm, "tldr", lambda item: item.question, min_chars=10)

    with pytest.raises(ValidationError, match="too short"):
        enrich(_work("enrich"), make_item())


def test_field_enrichment_only_for_text_fields():
    with pytest.raises(ValueError):
        make_field_enrich_behavior(MagicMock(), "companies", lambda item: "")
    with pytest.raises(ValueError):
        make_field_enrich_behavior(MagicMock(), "answer", lambda item: "")
