from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

START_NODE_ID = "start"


class BoardNode(BaseModel):
    """A node as authored in the editor.

    Accepts the flat shape ``{id, actionKind, config}`` as well as the
    React-Flow shape ``{id, data: {actionKind, config}, position}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    action_kind: str = Field(default="", alias="actionKind")
    config: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _lift_data(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw
        lifted = dict(raw)
        data = lifted.pop("data", None)
        if isinstance(data, dict):
            for key, value in data.items():
                lifted.setdefault(key, value)
        lifted.pop("position", None)
        if lifted.get("config") is None:
            lifted["config"] = {}
        return lifted


class Connection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str
    target: str
    label: str | None = Field(default=None, validation_alias=AliasChoices("label", "sourceHandle"))


class Board(BaseModel):
    nodes: list[BoardNode] = Field(default_factory=list)
    connections: list[Connection] = Field(
        default_factory=list,
        validation_alias=AliasChoices("connections", "edges"),
    )


class ExecEdge(BaseModel):
    label: str
    target: str


class ExecNode(BaseModel):
    id: str
    kind: str
    cfg: dict[str, Any] = Field(default_factory=dict)
    next: str | None = None
    prev: list[str] = Field(default_factory=list)
    edges: list[ExecEdge] = Field(default_factory=list)
    sub: str | None = None


class ExecutionDefinition(BaseModel):
    id: str
    name: str
    version: int = 1
    root: str = ""
    nodes: dict[str, ExecNode] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _no_start_node(self) -> ExecutionDefinition:
        if START_NODE_ID in self.nodes:
            raise ValueError("Execution definitions never contain the start node")
        return self

    @property
    def is_degenerate(self) -> bool:
        return not self.root


class PlanStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ContentPlanCreate(BaseModel):
    user_id: str
    influencer_id: str
    look_id: str
    prompt: str
    title: str | None = None
    starts_at: datetime
    rrule: str | None = None


class ContentPlan(ContentPlanCreate):
    id: str
    status: PlanStatus = PlanStatus.SCHEDULED
    anchor_at: datetime | None = None
    last_run_at: datetime | None = None
    last_error: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RequeueRequest(BaseModel):
    starts_at: datetime | None = None


class WebhookTestSession(BaseModel):
    token: str
    workflow_id: str
    node_id: str
    expires_at: datetime


class ArmRequest(BaseModel):
    workflow_id: str = Field(min_length=1)
    node_id: str = Field(min_length=1)


class ArmedTest(BaseModel):
    token: str
    webhook_url: str
    expires_at: datetime


class CapturedEvent(BaseModel):
    id: str
    workflow_id: str
    node_id: str
    payload: Any = None
    headers: dict[str, str] = Field(default_factory=dict)
    captured_at: datetime


class PlanResult(BaseModel):
    plan_id: str
    status: Literal["success", "failed"]
    message: str


class RunReport(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    results: list[PlanResult] = Field(default_factory=list)

    @classmethod
    def from_results(cls, results: list[PlanResult]) -> RunReport:
        successful = sum(1 for item in results if item.status == "success")
        return cls(
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )


class CompileRequest(BaseModel):
    name: str = "Untitled"
    board: Board = Field(default_factory=Board)


class CompileResponse(BaseModel):
    definition: ExecutionDefinition
    warnings: list[str] = Field(default_factory=list)


class WorkflowSaveRequest(BaseModel):
    name: str = "Untitled"
    board: Board = Field(default_factory=Board)


class WorkflowRecord(BaseModel):
    id: str
    name: str
    version: int = 1
    board: Board
    definition: ExecutionDefinition
    warnings: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
