from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .backend import RenderBackend
from .capture import WebhookTestService
from .compiler import GraphCompiler
from .config import AppConfig, app_config, configure_logging
from .dispatcher import Backend, Dispatcher, run_dispatch
from .errors import ClaimFailure, TokenError
from .models import (
    ArmedTest,
    ArmRequest,
    CapturedEvent,
    CompileRequest,
    CompileResponse,
    ContentPlan,
    ContentPlanCreate,
    ExecutionDefinition,
    PlanStatus,
    RequeueRequest,
    WorkflowRecord,
    WorkflowSaveRequest,
)
from .nodes import NodeKindRegistry, register_builtin_kinds
from .scheduler import DispatchScheduler
from .store import REQUEUEABLE, SQLiteStore
from .tokens import TokenCache

logger = logging.getLogger(__name__)


def create_app(
    store: SQLiteStore | None = None,
    backend: Backend | None = None,
    token_cache: TokenCache | None = None,
    config: AppConfig = app_config,
) -> FastAPI:
    store_settings = config.store_settings()
    backend_settings = config.backend_settings()
    dispatch_settings = config.dispatch_settings()
    webhook_settings = config.webhook_test_settings()

    registry = NodeKindRegistry()
    register_builtin_kinds(registry, config.node_kind_descriptions())
    compiler = GraphCompiler(registry)

    if store is None:
        store = SQLiteStore(str(store_settings["path"]), busy_timeout=float(store_settings["busy_timeout"]))
    if backend is None:
        backend = RenderBackend(
            str(backend_settings["url"]),
            api_key=str(backend_settings["api_key"]),
            timeout=float(backend_settings["timeout_seconds"]),
        )
    if token_cache is None:
        token_cache = TokenCache(
            str(webhook_settings["base_url"]),
            ttl=timedelta(seconds=int(webhook_settings["ttl_seconds"])),
            sweep_interval_seconds=int(webhook_settings["sweep_interval_seconds"]),
        )

    stale_minutes = int(dispatch_settings["stale_after_minutes"])
    batch_limit = int(dispatch_settings["batch_limit"])
    dispatcher = Dispatcher(
        store,
        backend,
        stale_after=timedelta(minutes=stale_minutes) if stale_minutes > 0 else None,
        max_workers=int(dispatch_settings["max_workers"]),
    )
    webhook_tests = WebhookTestService(token_cache, store)
    scheduler = DispatchScheduler(
        dispatcher,
        interval_seconds=int(dispatch_settings["interval_seconds"]),
        limit=batch_limit,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        token_cache.start()
        scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown()
            token_cache.stop()

    app = FastAPI(title="ContentFlow", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins(),
        allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost):\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.token_cache = token_cache

    def build_record(
        request: WorkflowSaveRequest,
        workflow_id: str,
        version: int,
        created_at: datetime | None = None,
    ) -> WorkflowRecord:
        issues = compiler.check(request.board)
        if issues.errors:
            raise HTTPException(status_code=422, detail={"errors": issues.errors})
        definition = compiler.compile(request.board, request.name, version=version)
        now = datetime.now(timezone.utc)
        if issues.warnings:
            logger.info("Workflow %s saved with warnings: %s", workflow_id, "; ".join(issues.warnings))
        return WorkflowRecord(
            id=workflow_id,
            name=request.name,
            version=version,
            board=request.board,
            definition=definition,
            warnings=issues.warnings,
            created_at=created_at or now,
            updated_at=now,
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/node-catalog")
    def node_catalog() -> list[dict[str, str]]:
        return registry.list_specs()

    @app.post("/compile", response_model=CompileResponse)
    def compile_board(request: CompileRequest) -> CompileResponse:
        issues = compiler.check(request.board)
        definition = compiler.compile(request.board, request.name)
        return CompileResponse(definition=definition, warnings=issues.warnings + issues.errors)

    @app.post("/workflows", response_model=WorkflowRecord)
    def create_workflow(request: WorkflowSaveRequest) -> WorkflowRecord:
        record = build_record(request, str(uuid.uuid4()), version=1)
        return store.create_workflow(record)

    @app.get("/workflows", response_model=list[WorkflowRecord])
    def list_workflows() -> list[WorkflowRecord]:
        return store.list_workflows()

    @app.get("/workflows/{workflow_id}", response_model=WorkflowRecord)
    def get_workflow(workflow_id: str) -> WorkflowRecord:
        workflow = store.get_workflow(workflow_id)
        if workflow is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return workflow

    @app.put("/workflows/{workflow_id}", response_model=WorkflowRecord)
    def update_workflow(workflow_id: str, request: WorkflowSaveRequest) -> WorkflowRecord:
        current = store.get_workflow(workflow_id)
        if current is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        record = build_record(request, workflow_id, current.version + 1, created_at=current.created_at)
        updated = store.update_workflow(workflow_id, record)
        if updated is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return updated

    @app.get("/workflows/{workflow_id}/definition", response_model=ExecutionDefinition)
    def get_definition(workflow_id: str) -> ExecutionDefinition:
        definition = store.get_definition(workflow_id)
        if definition is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return definition

    @app.post("/webhook-tests", response_model=ArmedTest)
    def arm_webhook_test(request: ArmRequest) -> ArmedTest:
        try:
            return webhook_tests.arm(request.workflow_id, request.node_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/t/{token}")
    async def capture_webhook_test(token: str, request: Request) -> dict[str, Any]:
        body = await request.body()
        try:
            event = await run_in_threadpool(webhook_tests.capture, token, body, dict(request.headers))
        except TokenError as exc:
            raise HTTPException(status_code=410, detail=str(exc)) from exc
        return {
            "message": "Payload captured successfully",
            "timestamp": event.captured_at.isoformat(),
        }

    @app.get("/workflows/{workflow_id}/captured-events", response_model=list[CapturedEvent])
    def captured_events(workflow_id: str, node_id: str | None = None) -> list[CapturedEvent]:
        return store.list_captured_events(workflow_id, node_id)

    @app.post("/content-plans", response_model=ContentPlan)
    def create_content_plan(request: ContentPlanCreate) -> ContentPlan:
        return store.create_plan(request)

    @app.get("/content-plans", response_model=list[ContentPlan])
    def list_content_plans(status: PlanStatus | None = None) -> list[ContentPlan]:
        return store.list_plans(status)

    @app.get("/content-plans/{plan_id}", response_model=ContentPlan)
    def get_content_plan(plan_id: str) -> ContentPlan:
        plan = store.get_plan(plan_id)
        if plan is None:
            raise HTTPException(status_code=404, detail="Content plan not found")
        return plan

    @app.post("/content-plans/{plan_id}/requeue", response_model=ContentPlan)
    def requeue_content_plan(plan_id: str, request: RequeueRequest | None = None) -> ContentPlan:
        plan = store.get_plan(plan_id)
        if plan is None:
            raise HTTPException(status_code=404, detail="Content plan not found")
        if plan.status not in REQUEUEABLE:
            raise HTTPException(status_code=409, detail=f"Cannot requeue a {plan.status.value} plan")
        requeued = store.requeue_plan(plan_id, request.starts_at if request else None)
        if requeued is None:
            raise HTTPException(status_code=409, detail="Content plan changed state, try again")
        return requeued

    @app.post("/dispatch")
    def dispatch(limit: int = Query(default=batch_limit, ge=1, le=500)) -> dict[str, Any]:
        try:
            return run_dispatch(dispatcher, limit)
        except ClaimFailure as exc:
            logger.exception("Dispatch aborted: could not claim content plans")
            raise HTTPException(
                status_code=503,
                detail={"error": "Claim failed", "message": str(exc)},
            ) from exc

    return app


configure_logging(app_config.log_level())
app = create_app()
