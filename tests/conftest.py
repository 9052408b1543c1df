"""Pytest configuration and fixtures."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from contentflow.errors import BackendRejected
from contentflow.models import ContentPlan, ContentPlanCreate
from contentflow.store import SQLiteStore

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = T0) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


class FakeBackend:
    def __init__(self) -> None:
        self.calls: list[ContentPlan] = []
        self.failures: dict[str, Exception] = {}

    def fail(self, plan_id: str, exc: Exception | None = None) -> None:
        self.failures[plan_id] = exc or BackendRejected(500, "render queue full")

    def generate_video(self, plan: ContentPlan) -> dict[str, Any]:
        self.calls.append(plan)
        if plan.id in self.failures:
            raise self.failures[plan.id]
        return {"jobId": f"job-{plan.id}"}


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def store(tmp_path) -> SQLiteStore:
    return SQLiteStore(str(tmp_path / "contentflow.db"))


@pytest.fixture
def make_plan(store):
    def _make(**overrides: Any) -> ContentPlan:
        fields: dict[str, Any] = {
            "user_id": "user-1",
            "influencer_id": "inf-1",
            "look_id": "look-1",
            "prompt": "Morning routine tips",
            "title": "Morning tips",
            "starts_at": T0 - timedelta(minutes=5),
            "rrule": None,
        }
        fields.update(overrides)
        return store.create_plan(ContentPlanCreate(**fields))

    return _make
