from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .errors import ClaimFailure, StoreError
from .models import (
    Board,
    CapturedEvent,
    ContentPlan,
    ContentPlanCreate,
    ExecutionDefinition,
    PlanStatus,
    WorkflowRecord,
)
from .recurrence import as_utc

logger = logging.getLogger(__name__)

REQUEUEABLE = (PlanStatus.FAILED, PlanStatus.COMPLETED)


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text so that string comparison in SQL orders correctly.
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteStore:
    def __init__(self, db_path: str = "data/contentflow.db", busy_timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        """Write transaction that takes the database write lock up front."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    board TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    warnings TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS content_plans (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    influencer_id TEXT NOT NULL,
                    look_id TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    title TEXT,
                    starts_at TEXT NOT NULL,
                    anchor_at TEXT,
                    rrule TEXT,
                    status TEXT NOT NULL,
                    last_run_at TEXT,
                    last_error TEXT,
                    claimed_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_content_plans_due ON content_plans (status, starts_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS captured_events (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    payload TEXT,
                    headers TEXT NOT NULL,
                    captured_at TEXT NOT NULL
                )
                """
            )

    # Workflows

    def create_workflow(self, workflow: WorkflowRecord) -> WorkflowRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, version, board, definition, warnings, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    workflow.id,
                    workflow.name,
                    workflow.version,
                    workflow.board.model_dump_json(),
                    workflow.definition.model_dump_json(),
                    json.dumps(workflow.warnings),
                    _ts(workflow.created_at),
                    _ts(workflow.updated_at),
                ),
            )
        return workflow

    def update_workflow(self, workflow_id: str, workflow: WorkflowRecord) -> WorkflowRecord | None:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE workflows
                SET name = ?, version = ?, board = ?, definition = ?, warnings = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    workflow.name,
                    workflow.version,
                    workflow.board.model_dump_json(),
                    workflow.definition.model_dump_json(),
                    json.dumps(workflow.warnings),
                    _ts(workflow.updated_at),
                    workflow_id,
                ),
            )
            if cursor.rowcount == 0:
                return None
        return workflow

    def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()

        if not row:
            return None
        return self._workflow_from_row(row)

    def list_workflows(self) -> list[WorkflowRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM workflows ORDER BY created_at DESC").fetchall()

        return [self._workflow_from_row(row) for row in rows]

    def get_definition(self, workflow_id: str) -> ExecutionDefinition | None:
        with self._connect() as conn:
            row = conn.execute("SELECT definition FROM workflows WHERE id = ?", (workflow_id,)).fetchone()

        if not row:
            return None
        return ExecutionDefinition.model_validate_json(row["definition"])

    @staticmethod
    def _workflow_from_row(row: sqlite3.Row) -> WorkflowRecord:
        return WorkflowRecord(
            id=row["id"],
            name=row["name"],
            version=row["version"],
            board=Board.model_validate_json(row["board"]),
            definition=ExecutionDefinition.model_validate_json(row["definition"]),
            warnings=json.loads(row["warnings"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Content plans

    def create_plan(self, request: ContentPlanCreate) -> ContentPlan:
        plan = ContentPlan(
            id=str(uuid.uuid4()),
            anchor_at=request.starts_at,
            **request.model_dump(),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO content_plans (
                    id, user_id, influencer_id, look_id, prompt, title, starts_at, anchor_at,
                    rrule, status, last_run_at, last_error, claimed_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.id,
                    plan.user_id,
                    plan.influencer_id,
                    plan.look_id,
                    plan.prompt,
                    plan.title,
                    _ts(plan.starts_at),
                    _ts(plan.anchor_at),
                    plan.rrule,
                    plan.status.value,
                    None,
                    None,
                    None,
                    _ts(plan.created_at),
                ),
            )
        return self.get_plan(plan.id) or plan

    def get_plan(self, plan_id: str) -> ContentPlan | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM content_plans WHERE id = ?", (plan_id,)).fetchone()

        if not row:
            return None
        return self._plan_from_row(row)

    def list_plans(self, status: PlanStatus | None = None) -> list[ContentPlan]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM content_plans ORDER BY starts_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM content_plans WHERE status = ? ORDER BY starts_at",
                    (status.value,),
                ).fetchall()

        return [self._plan_from_row(row) for row in rows]

    def claim_due_plans(
        self,
        limit: int,
        now: datetime | None = None,
        stale_after: timedelta | None = None,
    ) -> list[ContentPlan]:
        """Atomically move up to ``limit`` due plans to ``processing``.

        Due means ``scheduled`` with ``starts_at <= now``, or ``processing``
        with a claim older than ``stale_after`` when that is given. The
        select and the per-row compare-and-swap run under one immediate
        transaction, so concurrent callers never receive the same plan.
        """
        if limit <= 0:
            return []
        now = now or datetime.now(timezone.utc)
        stale_before = _ts(now - stale_after) if stale_after else None

        try:
            with self._immediate() as conn:
                candidates = conn.execute(
                    """
                    SELECT id, status FROM content_plans
                    WHERE (status = ? AND starts_at <= ?)
                       OR (? IS NOT NULL AND status = ? AND claimed_at <= ?)
                    ORDER BY starts_at, id
                    LIMIT ?
                    """,
                    (
                        PlanStatus.SCHEDULED.value,
                        _ts(now),
                        stale_before,
                        PlanStatus.PROCESSING.value,
                        stale_before,
                        limit,
                    ),
                ).fetchall()

                claimed: list[str] = []
                for row in candidates:
                    cursor = conn.execute(
                        "UPDATE content_plans SET status = ?, claimed_at = ? WHERE id = ? AND status = ?",
                        (PlanStatus.PROCESSING.value, _ts(now), row["id"], row["status"]),
                    )
                    if cursor.rowcount > 0:
                        claimed.append(row["id"])
                        if row["status"] == PlanStatus.PROCESSING.value:
                            logger.warning("Reclaiming plan %s stuck in processing", row["id"])

                if not claimed:
                    return []
                placeholders = ", ".join("?" for _ in claimed)
                rows = conn.execute(
                    f"SELECT * FROM content_plans WHERE id IN ({placeholders}) ORDER BY starts_at, id",
                    claimed,
                ).fetchall()
        except sqlite3.Error as exc:
            raise ClaimFailure(f"Could not claim due content plans: {exc}") from exc

        return [self._plan_from_row(row) for row in rows]

    def mark_completed(
        self,
        plan_id: str,
        next_starts_at: datetime | None,
        now: datetime | None = None,
    ) -> bool:
        """Finish a processing plan; re-arm it when there is a next occurrence."""
        now = now or datetime.now(timezone.utc)
        status = PlanStatus.SCHEDULED if next_starts_at is not None else PlanStatus.COMPLETED
        return self._finalize(
            plan_id,
            """
            UPDATE content_plans
            SET status = ?, starts_at = COALESCE(?, starts_at), last_run_at = ?,
                last_error = NULL, claimed_at = NULL
            WHERE id = ? AND status = ?
            """,
            (status.value, _ts(next_starts_at), _ts(now), plan_id, PlanStatus.PROCESSING.value),
        )

    def mark_failed(self, plan_id: str, message: str, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self._finalize(
            plan_id,
            """
            UPDATE content_plans
            SET status = ?, last_run_at = ?, last_error = ?, claimed_at = NULL
            WHERE id = ? AND status = ?
            """,
            (PlanStatus.FAILED.value, _ts(now), message, plan_id, PlanStatus.PROCESSING.value),
        )

    def requeue_plan(self, plan_id: str, starts_at: datetime | None = None) -> ContentPlan | None:
        """Put a failed or dormant plan back on the schedule."""
        statuses = [status.value for status in REQUEUEABLE]
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE content_plans
                SET status = ?, starts_at = COALESCE(?, starts_at), anchor_at = COALESCE(?, anchor_at),
                    last_error = NULL, claimed_at = NULL
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    PlanStatus.SCHEDULED.value,
                    _ts(starts_at),
                    _ts(starts_at),
                    plan_id,
                    *statuses,
                ),
            )
            if cursor.rowcount == 0:
                return None
        return self.get_plan(plan_id)

    def _finalize(self, plan_id: str, sql: str, params: tuple) -> bool:
        try:
            with self._immediate() as conn:
                cursor = conn.execute(sql, params)
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise StoreError(f"Could not update content plan {plan_id}: {exc}") from exc

    @staticmethod
    def _plan_from_row(row: sqlite3.Row) -> ContentPlan:
        return ContentPlan(
            id=row["id"],
            user_id=row["user_id"],
            influencer_id=row["influencer_id"],
            look_id=row["look_id"],
            prompt=row["prompt"],
            title=row["title"],
            starts_at=datetime.fromisoformat(row["starts_at"]),
            anchor_at=_dt(row["anchor_at"]),
            rrule=row["rrule"],
            status=PlanStatus(row["status"]),
            last_run_at=_dt(row["last_run_at"]),
            last_error=row["last_error"],
            claimed_at=_dt(row["claimed_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Captured webhook test events

    def add_captured_event(self, event: CapturedEvent) -> CapturedEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO captured_events (id, workflow_id, node_id, payload, headers, captured_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.workflow_id,
                    event.node_id,
                    json.dumps(event.payload),
                    json.dumps(event.headers),
                    _ts(event.captured_at),
                ),
            )
        return event

    def list_captured_events(self, workflow_id: str, node_id: str | None = None) -> list[CapturedEvent]:
        with self._connect() as conn:
            if node_id is None:
                rows = conn.execute(
                    "SELECT * FROM captured_events WHERE workflow_id = ? ORDER BY captured_at DESC",
                    (workflow_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM captured_events
                    WHERE workflow_id = ? AND node_id = ?
                    ORDER BY captured_at DESC
                    """,
                    (workflow_id, node_id),
                ).fetchall()

        return [
            CapturedEvent(
                id=row["id"],
                workflow_id=row["workflow_id"],
                node_id=row["node_id"],
                payload=json.loads(row["payload"]) if row["payload"] is not None else None,
                headers=json.loads(row["headers"]),
                captured_at=datetime.fromisoformat(row["captured_at"]),
            )
            for row in rows
        ]
