from __future__ import annotations

import pytest
from conftest import make_item

from curator.behaviors import default_behaviors
from curator.dedup import DedupEngine
from curator.embeddings import EmbeddingService, HashingEmbedder
from curator.errors import ClaimConflictError, ConsistencyError, TransientError, ValidationError
from curator.models import ActionResult
from curator.orchestrator import Orchestrator
from curator.work_queue import WorkQueue


def create_from_id(work, current):
    return ActionResult(new_state=make_item(work.item_id), result={"source": "test"})


def improve_answer(work, current):
    return ActionResult(
        new_state=current.with_changes(answer=current.answer + " For example, Java's HashMap chains entries."),
        reason="added example",
    )


@pytest.fixture
def make_orchestrator(engine, settings, clock):
    def factory(extra=None, bot_name="test-bot"):
        behaviors = {"create": create_from_id, "improve": improve_answer, **default_behaviors(40)}
        behaviors.update(extra or {})
        return Orchestrator(engine, behaviors, bot_name, settings=settings, clock=clock)

    return factory


def test_create_is_stored_ledgered_and_counted(make_orchestrator, queue, store, ledger):
    work = queue.enqueue("question", "Q-1", "create", priority=1, created_by="generator")
    bot = make_orchestrator()

    run = bot.run()

    assert run.status == "completed"
    assert (run.items_processed, run.items_created, run.items_updated) == (1, 1, 0)

    stored = store.get("Q-1")
    assert stored.status == "active"
    assert stored.relevance_score == 65
    assert stored.relevance_details["tagged"] == 5
    assert stored.last_updated is not None

    entries = list(ledger.history("Q-1"))
    assert len(entries) == 1
    entry = entries[0]
    assert entry.action == "create"
    assert entry.bot_name == "test-bot"
    assert entry.before_state is None
    assert entry.after_state == stored.snapshot()

    done = queue.get(work.id)
    assert done.status == "completed"
    assert done.result == {"source": "test", "ledger_id": entry.id}


def test_every_mutation_extends_the_ledger_chain(make_orchestrator, queue, store, ledger):
    bot = make_orchestrator()
    queue.enqueue("question", "q-1", "create")
    bot.run()
    queue.enqueue("question", "q-1", "improve")
    run = bot.run()

    assert run.items_updated == 1
    history = list(ledger.history("q-1"))
    assert [e.action for e in history] == ["create", "improve"]
    assert history[-1].reason == "added example"
    assert history[-1].after_state == store.get("q-1").snapshot()
    assert store.get("q-1").relevance_details.get("concrete_example") == 10
    assert ledger.verify_chain("q-1") == 2


def test_low_scoring_create_is_stored_flagged(make_orchestrator, queue, store):
    def weak(work, current):
        return ActionResult(new_state=make_item(work.item_id, question="Hash?", answer="", difficulty=None))

    queue.enqueue("question", "q-weak", "create")
    run = make_orchestrator({"create": weak}).run()

    assert run.items_created == 1
    assert store.get("q-weak").status == "flagged"


def test_verify_without_changes_writes_no_ledger_entry(make_orchestrator, queue, ledger):
    bot = make_orchestrator()
    queue.enqueue("question", "q-1", "create")
    bot.run()
    verify = queue.enqueue("question", "q-1", "verify")

    run = bot.run()

    assert (run.items_processed, run.items_updated) == (1, 0)
    assert [e.action for e in ledger.history("q-1")] == ["create"]
    assert queue.get(verify.id).result == {"score": 65, "passed": True}


def test_verify_flags_seeded_item_below_gate(make_orchestrator, queue, store, ledger):
    store.put(make_item("q-old", question="Hash?", answer=""))
    queue.enqueue("question", "q-old", "verify")

    run = make_orchestrator().run()

    assert run.items_updated == 1
    assert store.get("q-old").status == "flagged"
    entry = ledger.latest("question", "q-old")
    assert entry.action == "verify"
    assert entry.before_state["status"] == "active"
    assert entry.after_state["status"] == "flagged"


def test_validation_error_flags_item_without_retry(make_orchestrator, queue, store, ledger):
    def reject(work, current):
        raise ValidationError("generated answer is empty")

    store.put(make_item("q-1"))
    work = queue.enqueue("question", "q-1", "enrich")

    run = make_orchestrator({"enrich": reject}).run()

    assert run.status == "completed"
    assert (run.items_processed, run.items_updated) == (1, 1)
    assert store.get("q-1").status == "flagged"
    entry = ledger.latest("question", "q-1")
    assert entry.action == "flag"
    assert "generated answer is empty" in entry.reason
    failed = queue.get(work.id)
    assert failed.status == "failed"
    assert failed.result["retryable"] is False
    assert queue.pending() == []


def test_rejection_of_already_flagged_item_is_still_ledgered(make_orchestrator, queue, store, ledger):
    def reject(work, current):
        raise ValidationError("generated tldr is too short")

    store.put(make_item("q-1", status="flagged"))
    work = queue.enqueue("question", "q-1", "enrich")

    run = make_orchestrator({"enrich": reject}).run()

    assert (run.items_processed, run.items_updated) == (1, 0)
    assert store.get("q-1").status == "flagged"
    entry = ledger.latest("question", "q-1")
    assert entry.action == "flag"
    assert entry.before_state == entry.after_state == store.get("q-1").snapshot()
    assert "generated tldr is too short" in entry.reason
    assert queue.get(work.id).status == "failed"


def test_rejected_create_leaves_existing_item_alone(make_orchestrator, queue, store, ledger):
    store.put(make_item("q-1"))
    work = queue.enqueue("question", "q-1", "create")

    run = make_orchestrator().run()

    assert (run.items_processed, run.items_created, run.items_updated) == (1, 0, 0)
    assert store.get("q-1").status == "active"
    assert ledger.latest("question", "q-1") is None
    assert queue.get(work.id).status == "failed"


def test_transient_error_retries_until_budget_is_spent(make_orchestrator, queue):
    calls = []

    def flaky(work, current):
        calls.append(work.id)
        raise TransientError("provider timed out")

    queue.enqueue("question", "q-1", "create")

    run = make_orchestrator({"create": flaky}).run()

    assert run.status == "completed"
    assert len(calls) == 3
    assert run.items_processed == 3
    assert run.items_created == 0
    assert queue.stats()["failed"] == 3
    assert queue.pending() == []


def test_transient_error_then_success(make_orchestrator, queue, store):
    attempts = []

    def eventually(work, current):
        attempts.append(work.attempts_left)
        if len(attempts) < 2:
            raise TransientError("rate limited")
        return create_from_id(work, current)

    queue.enqueue("question", "q-1", "create")
    run = make_orchestrator({"create": eventually}).run()

    assert attempts == [3, 2]
    assert (run.items_processed, run.items_created) == (2, 1)
    assert store.get("q-1") is not None


def test_out_of_band_write_during_claim_aborts_run(make_orchestrator, queue, store, runs):
    def tampering(work, current):
        store.put(current.with_changes(answer="edited by hand"))
        return improve_answer(work, current)

    store.put(make_item("q-1"))
    work = queue.enqueue("question", "q-1", "improve")
    queue.enqueue("question", "q-2", "verify")

    with pytest.raises(ConsistencyError):
        make_orchestrator({"improve": tampering}).run()

    run = runs.recent_runs(limit=1)[0]
    assert run.status == "failed"
    assert run.summary["error"] == "consistency"
    assert queue.get(work.id).status == "failed"
    assert store.get("q-1").answer == "edited by hand"
    # The run stopped before reaching the next item.
    assert [w.item_id for w in queue.pending()] == ["q-2"]


def test_content_diverging_from_ledger_aborts_run(make_orchestrator, queue, store):
    bot = make_orchestrator()
    queue.enqueue("question", "q-1", "create")
    bot.run()
    store.put(store.get("q-1").with_changes(answer="changed outside the queue"))
    queue.enqueue("question", "q-1", "improve")

    with pytest.raises(ConsistencyError, match="does not match ledger"):
        bot.run()


def test_unexpected_behavior_error_fails_item_and_run(make_orchestrator, queue, runs):
    def broken(work, current):
        raise RuntimeError("bug")

    work = queue.enqueue("question", "q-1", "create")

    with pytest.raises(RuntimeError):
        make_orchestrator({"create": broken}).run()

    assert queue.get(work.id).status == "failed"
    run = runs.recent_runs(limit=1)[0]
    assert run.status == "failed"
    assert run.items_processed == 1


def test_actions_without_behavior_stay_queued(engine, settings, clock, queue):
    work = queue.enqueue("question", "q-1", "enrich")
    bot = Orchestrator(engine, default_behaviors(40), "verify-bot", settings=settings, clock=clock)

    run = bot.run()

    assert run.items_processed == 0
    assert queue.get(work.id).status == "pending"


def test_max_items_limits_a_run(make_orchestrator, queue, store):
    for i in range(3):
        store.put(make_item(f"q-{i}"))
        queue.enqueue("question", f"q-{i}", "verify")

    run = make_orchestrator().run(max_items=2)

    assert run.items_processed == 2
    assert len(queue.pending()) == 1


def test_duplicate_is_deleted_end_to_end(engine, settings, clock, make_orchestrator, queue, store, ledger):
    embeddings = EmbeddingService(engine, HashingEmbedder(dimensions=64), clock=clock)
    store.put(make_item("q-a", relevance_score=80))
    store.put(make_item("q-b", relevance_score=60))

    DedupEngine(store, embeddings, queue, settings=settings).run_cycle()
    run = make_orchestrator(bot_name="cleanup-bot").run()

    assert run.items_deleted == 1
    assert store.get("q-a").status == "active"
    assert store.get("q-b").status == "deleted"
    entry = ledger.latest("question", "q-b")
    assert entry.action == "delete"
    assert entry.reason == "duplicate of q-a"
    assert embeddings.active_vectors().keys() == {"q-a"}


def test_claim_released_as_stale_mid_behavior_rolls_back_and_run_goes_on(
    engine, settings, clock, make_orchestrator, queue, store, ledger
):
    calls = []

    def slow_improve(work, current):
        calls.append(work.id)
        if len(calls) == 1:
            # The provider call outlives the claim and a sweeper releases it.
            clock.advance(seconds=200)
            WorkQueue(engine, settings, clock=clock).release_stale(timeout_sec=60)
        return improve_answer(work, current)

    original = make_item("q-1")
    store.put(original)
    work = queue.enqueue("question", "q-1", "improve")
    bot = make_orchestrator({"improve": slow_improve})

    run = bot.run(max_items=1)

    assert run.status == "completed"
    assert (run.items_processed, run.items_updated) == (1, 0)
    assert run.summary == {"lost": 1}
    assert store.get("q-1").answer == original.answer
    assert ledger.latest("question", "q-1") is None
    assert queue.get(work.id).status == "failed"
    [retry] = queue.pending()
    assert (retry.parent_id, retry.attempts_left) == (work.id, 2)

    again = bot.run()

    assert (again.items_processed, again.items_updated) == (1, 1)
    assert ledger.latest("question", "q-1").action == "improve"
    assert queue.get(retry.id).status == "completed"


def test_lost_claim_race_does_not_end_the_run(make_orchestrator, queue, store, monkeypatch):
    for i in range(2):
        store.put(make_item(f"q-{i}"))
        queue.enqueue("question", f"q-{i}", "verify")
    bot = make_orchestrator()
    real_claim = bot.queue.claim_next
    conflicts = []

    def contested(*args, **kwargs):
        if not conflicts:
            conflicts.append(True)
            raise ClaimConflictError("another bot kept winning")
        return real_claim(*args, **kwargs)

    monkeypatch.setattr(bot.queue, "claim_next", contested)

    run = bot.run()

    assert run.status == "completed"
    assert run.items_processed == 2
    assert queue.pending() == []


def test_worker_pool_processes_each_item_once(make_orchestrator, queue, store, ledger):
    ids = [f"q-{i}" for i in range(9)]
    for item_id in ids:
        store.put(make_item(item_id))
        queue.enqueue("question", item_id, "verify")

    run = make_orchestrator().run(workers=3)

    assert run.status == "completed"
    assert (run.items_processed, run.items_updated) == (9, 9)
    assert run.summary == {"updated": 9}
    stats = queue.stats()
    assert (stats["completed"], stats["pending"], stats["processing"], stats["failed"]) == (9, 0, 0, 0)
    entries = ledger.entries(limit=100)
    assert sorted(e.item_id for e in entries) == sorted(ids)
    assert all(e.action == "verify" for e in entries)


def test_worker_pool_shares_the_max_items_budget(make_orchestrator, queue, store):
    for i in range(6):
        store.put(make_item(f"q-{i}"))
        queue.enqueue("question", f"q-{i}", "verify")

    run = make_orchestrator().run(max_items=4, workers=3)

    assert run.items_processed == 4
    assert len(queue.pending()) == 2
