"""
In-process periodic trigger for content plan dispatch.

Deployments that already call ``POST /dispatch`` from an external cron keep
``interval_seconds = 0`` and never start this.
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .dispatcher import DEFAULT_BATCH_LIMIT, Dispatcher, run_dispatch
from .errors import ClaimFailure

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "content-plan-dispatch"


class DispatchScheduler:
    def __init__(
        self,
        dispatcher: Dispatcher,
        interval_seconds: int,
        limit: int = DEFAULT_BATCH_LIMIT,
    ) -> None:
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.limit = limit
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def tick(self) -> dict | None:
        try:
            return run_dispatch(self.dispatcher, self.limit)
        except ClaimFailure:
            logger.exception("[Scheduler] Dispatch tick could not claim plans")
            return None

    def start(self) -> None:
        if self.running or self.interval_seconds <= 0:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        # Never more than one tick in flight.
        scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=self.interval_seconds,
            id=DISPATCH_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("[Scheduler] Dispatch every %ss (limit %d)", self.interval_seconds, self.limit)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("[Scheduler] Shutdown")
