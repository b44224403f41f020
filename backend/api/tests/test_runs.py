from __future__ import annotations

import pytest

from curator.errors import AlreadyFinishedError, WorkflowError


def test_run_lifecycle_and_counters(runs):
    run_id = runs.start_run("improve-bot")
    for outcome in ["created", "updated", "updated", "deleted", "processed"]:
        runs.record_outcome(run_id, outcome)

    run = runs.finish_run(run_id, "completed", {"note": "nightly"})

    assert run.status == "completed"
    assert run.completed_at is not None
    assert run.items_processed == 5
    assert run.items_created == 1
    assert run.items_updated == 2
    assert run.items_deleted == 1
    assert run.summary == {"note": "nightly"}
    assert runs.get(run_id) == run


def test_finish_run_only_once(runs):
    run_id = runs.start_run("verify-bot")
    runs.finish_run(run_id, "failed", {"error": "boom"})

    with pytest.raises(AlreadyFinishedError):
        runs.finish_run(run_id, "completed")
    with pytest.raises(AlreadyFinishedError):
        runs.record_outcome(run_id, "updated")
    assert runs.get(run_id).status == "failed"


def test_unknown_outcome_and_status_are_rejected(runs):
    run_id = runs.start_run("bot")
    with pytest.raises(WorkflowError):
        runs.record_outcome(run_id, "exploded")
    with pytest.raises(WorkflowError):
        runs.finish_run(run_id, "running")


def test_recent_runs_and_bot_stats(runs, clock):
    first = runs.start_run("dedup-bot")
    runs.record_outcome(first, "deleted")
    runs.finish_run(first, "completed")
    second = runs.start_run("dedup-bot")
    runs.finish_run(second, "failed")
    third = runs.start_run("verify-bot")

    assert [r.id for r in runs.recent_runs(limit=2)] == [third, second]

    stats = {s["bot_name"]: s for s in runs.bot_stats()}
    assert stats["dedup-bot"]["total_runs"] == 2
    assert stats["dedup-bot"]["successful_runs"] == 1
    assert stats["dedup-bot"]["total_deleted"] == 1
    assert stats["verify-bot"]["total_runs"] == 1
    assert stats["verify-bot"]["successful_runs"] == 0
