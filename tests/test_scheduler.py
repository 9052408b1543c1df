from __future__ import annotations

from contentflow.dispatcher import Dispatcher
from contentflow.errors import ClaimFailure
from contentflow.scheduler import DispatchScheduler


def test_tick_dispatches_due_plans(store, backend, clock, make_plan):
    plan = make_plan()
    scheduler = DispatchScheduler(Dispatcher(store, backend, clock=clock), interval_seconds=60, limit=5)

    report = scheduler.tick()

    assert report["processed"] == 1
    assert report["results"][0]["plan_id"] == plan.id


def test_tick_survives_claim_failure(store, backend, clock):
    class BrokenStore(type(store)):
        def claim_due_plans(self, limit, now=None, stale_after=None):
            raise ClaimFailure("database is locked")

    dispatcher = Dispatcher(BrokenStore(str(store.db_path)), backend, clock=clock)

    assert DispatchScheduler(dispatcher, interval_seconds=60).tick() is None


def test_disabled_interval_never_starts(store, backend):
    scheduler = DispatchScheduler(Dispatcher(store, backend), interval_seconds=0)

    scheduler.start()

    assert not scheduler.running


def test_start_and_shutdown(store, backend):
    scheduler = DispatchScheduler(Dispatcher(store, backend), interval_seconds=3600)

    scheduler.start()
    try:
        assert scheduler.running
    finally:
        scheduler.shutdown()
    assert not scheduler.running
