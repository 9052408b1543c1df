from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from .models import ContentPlan, PlanResult, RunReport
from .recurrence import advance, format_timestamp
from .store import SQLiteStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 20


class Backend(Protocol):
    def generate_video(self, plan: ContentPlan) -> dict[str, Any]: ...


class Dispatcher:
    """Claims due content plans, renders them and advances their schedule.

    Only a failed claim escapes :meth:`dispatch_batch`; anything that goes
    wrong for a single plan is recorded against that plan and the batch
    carries on.
    """

    def __init__(
        self,
        store: SQLiteStore,
        backend: Backend,
        stale_after: timedelta | None = timedelta(minutes=30),
        max_workers: int = 1,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.backend = backend
        self.stale_after = stale_after
        self.max_workers = max(1, max_workers)
        self._clock = clock

    def dispatch_batch(self, limit: int = DEFAULT_BATCH_LIMIT) -> RunReport:
        plans = self.store.claim_due_plans(limit, now=self._clock(), stale_after=self.stale_after)
        logger.info("Claimed %d content plans for processing", len(plans))
        if not plans:
            return RunReport()

        if self.max_workers == 1 or len(plans) == 1:
            results = [self._run_plan(plan) for plan in plans]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(plans))) as pool:
                results = list(pool.map(self._run_plan, plans))

        report = RunReport.from_results(results)
        logger.info(
            "Dispatch completed: %d successful, %d failed",
            report.successful,
            report.failed,
        )
        return report

    def _run_plan(self, plan: ContentPlan) -> PlanResult:
        logger.info("Processing plan %s: %s", plan.id, plan.title or "Untitled")
        try:
            response = self.backend.generate_video(plan)
            logger.info("Dispatched plan %s: %s", plan.id, response)
            next_starts_at = advance(plan.starts_at, plan.rrule, anchor=plan.anchor_at)
            if not self.store.mark_completed(plan.id, next_starts_at, now=self._clock()):
                logger.warning("Plan %s was no longer processing; completion not recorded", plan.id)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("Plan %s failed: %s", plan.id, message)
            self._mark_failed(plan, f"Dispatch failed: {message}")
            return PlanResult(plan_id=plan.id, status="failed", message=message)

        if next_starts_at is None:
            detail = "Successfully dispatched and marked completed"
        else:
            detail = f"Successfully dispatched; next run at {format_timestamp(next_starts_at)}"
        return PlanResult(plan_id=plan.id, status="success", message=detail)

    def _mark_failed(self, plan: ContentPlan, message: str) -> None:
        try:
            self.store.mark_failed(plan.id, message, now=self._clock())
        except Exception:
            logger.exception("Could not mark plan %s as failed", plan.id)


def run_dispatch(dispatcher: Dispatcher, limit: int = DEFAULT_BATCH_LIMIT) -> dict[str, Any]:
    """Entry point for periodic triggers; returns the run report as JSON data."""
    return dispatcher.dispatch_batch(limit).model_dump(mode="json")
