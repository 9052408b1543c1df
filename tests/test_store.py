from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from contentflow.compiler import GraphCompiler
from contentflow.errors import ClaimFailure
from contentflow.models import Board, CapturedEvent, PlanStatus, WorkflowRecord

from .conftest import T0


def test_claim_only_due_scheduled_plans(store, make_plan):
    due = make_plan()
    future = make_plan(starts_at=T0 + timedelta(hours=1))
    failed = make_plan()
    store.claim_due_plans(10, now=T0)
    store.mark_failed(failed.id, "boom", now=T0)
    store.mark_completed(due.id, T0 - timedelta(minutes=1), now=T0)

    claimed = store.claim_due_plans(10, now=T0)

    assert [plan.id for plan in claimed] == [due.id]
    assert claimed[0].status is PlanStatus.PROCESSING
    assert claimed[0].claimed_at == T0
    assert store.get_plan(future.id).status is PlanStatus.SCHEDULED
    assert store.get_plan(failed.id).status is PlanStatus.FAILED


def test_claim_respects_limit_and_due_order(store, make_plan):
    plans = [make_plan(starts_at=T0 - timedelta(minutes=minutes)) for minutes in (1, 30, 10)]

    claimed = store.claim_due_plans(2, now=T0)

    assert [plan.id for plan in claimed] == [plans[1].id, plans[2].id]
    assert store.claim_due_plans(0, now=T0) == []


def test_nothing_due_claims_nothing(store, make_plan):
    make_plan(starts_at=T0 + timedelta(days=1))

    assert store.claim_due_plans(20, now=T0) == []


def test_concurrent_claims_never_overlap(store, make_plan):
    due_ids = {make_plan().id for _ in range(5)}
    barrier = threading.Barrier(4)
    batches: list[list[str]] = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        claimed = store.claim_due_plans(10, now=T0)
        with lock:
            batches.append([plan.id for plan in claimed])

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    claimed_ids = [plan_id for batch in batches for plan_id in batch]
    assert len(claimed_ids) == len(set(claimed_ids))
    assert set(claimed_ids) == due_ids


def test_stale_processing_plans_are_reclaimed(store, make_plan):
    plan = make_plan()
    store.claim_due_plans(10, now=T0)

    assert store.claim_due_plans(10, now=T0 + timedelta(minutes=10), stale_after=timedelta(minutes=30)) == []

    reclaimed = store.claim_due_plans(10, now=T0 + timedelta(minutes=31), stale_after=timedelta(minutes=30))
    assert [item.id for item in reclaimed] == [plan.id]
    assert reclaimed[0].claimed_at == T0 + timedelta(minutes=31)


def test_stuck_plans_stay_put_without_stale_policy(store, make_plan):
    make_plan()
    store.claim_due_plans(10, now=T0)

    assert store.claim_due_plans(10, now=T0 + timedelta(days=3)) == []


def test_mark_completed_rearms_recurring_plan(store, make_plan):
    plan = make_plan(rrule="FREQ=DAILY")
    store.claim_due_plans(10, now=T0)
    next_run = plan.starts_at + timedelta(days=1)

    assert store.mark_completed(plan.id, next_run, now=T0)

    stored = store.get_plan(plan.id)
    assert stored.status is PlanStatus.SCHEDULED
    assert stored.starts_at == next_run
    assert stored.last_run_at == T0
    assert stored.claimed_at is None


def test_mark_completed_without_next_leaves_plan_dormant(store, make_plan):
    plan = make_plan()
    store.claim_due_plans(10, now=T0)

    store.mark_completed(plan.id, None, now=T0)

    stored = store.get_plan(plan.id)
    assert stored.status is PlanStatus.COMPLETED
    assert stored.starts_at == plan.starts_at


def test_mark_failed_records_error(store, make_plan):
    plan = make_plan()
    store.claim_due_plans(10, now=T0)

    assert store.mark_failed(plan.id, "Dispatch failed: 500", now=T0)

    stored = store.get_plan(plan.id)
    assert stored.status is PlanStatus.FAILED
    assert stored.last_error == "Dispatch failed: 500"
    assert stored.last_run_at == T0


def test_finalize_requires_processing(store, make_plan):
    plan = make_plan()

    assert not store.mark_completed(plan.id, None, now=T0)
    assert not store.mark_failed(plan.id, "nope", now=T0)
    assert store.get_plan(plan.id).status is PlanStatus.SCHEDULED


def test_requeue_failed_plan(store, make_plan):
    plan = make_plan()
    store.claim_due_plans(10, now=T0)
    store.mark_failed(plan.id, "boom", now=T0)
    new_start = T0 + timedelta(hours=2)

    requeued = store.requeue_plan(plan.id, new_start)

    assert requeued.status is PlanStatus.SCHEDULED
    assert requeued.starts_at == new_start
    assert requeued.anchor_at == new_start
    assert requeued.last_error is None
    assert store.requeue_plan(plan.id) is None


def test_create_plan_anchors_first_occurrence(store, make_plan):
    plan = make_plan(starts_at=datetime(2024, 1, 1, 9, 0))

    assert plan.starts_at == datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    assert plan.anchor_at == plan.starts_at
    assert store.list_plans(PlanStatus.SCHEDULED) == [plan]


def test_claim_failure_when_store_is_broken(store):
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("DROP TABLE content_plans")

    with pytest.raises(ClaimFailure):
        store.claim_due_plans(5, now=T0)


def test_workflow_round_trip(store):
    board = Board.model_validate(
        {
            "nodes": [{"id": "t", "data": {"actionKind": "webhook-trigger"}}],
            "connections": [{"source": "start", "target": "t", "sourceHandle": "out"}],
        }
    )
    definition = GraphCompiler().compile(board, "wf")
    record = WorkflowRecord(id="wf-1", name="wf", board=board, definition=definition, warnings=["w"])

    store.create_workflow(record)
    loaded = store.get_workflow("wf-1")

    assert loaded.board == board
    assert loaded.definition == definition
    assert loaded.warnings == ["w"]
    assert store.get_definition("wf-1") == definition
    assert store.update_workflow("missing", record) is None
    assert [item.id for item in store.list_workflows()] == ["wf-1"]


def test_captured_events_listed_newest_first(store):
    for offset, node_id in enumerate(["n1", "n2", "n1"]):
        store.add_captured_event(
            CapturedEvent(
                id=str(uuid.uuid4()),
                workflow_id="wf-1",
                node_id=node_id,
                payload={"n": offset},
                headers={"content-type": "application/json"},
                captured_at=T0 + timedelta(seconds=offset),
            )
        )

    events = store.list_captured_events("wf-1", "n1")

    assert [event.payload for event in events] == [{"n": 2}, {"n": 0}]
    assert len(store.list_captured_events("wf-1")) == 3
    assert store.list_captured_events("other") == []
