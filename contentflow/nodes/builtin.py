from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .base import NodeKindRegistry, NodeKindSpec


class KindConfig(BaseModel):
    # Editors keep UI-only keys in the same blob, so unknown keys pass through.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TriggerConfig(KindConfig):
    subtype: str | None = None
    path: str | None = None
    cron: str | None = None


class FilterConfig(KindConfig):
    expression: str | None = None
    next_true: str | None = Field(default=None, alias="nextTrue")
    next_false: str | None = Field(default=None, alias="nextFalse")


class SwitchCase(BaseModel):
    value: Any = None
    next: str | None = None


class SwitchConfig(KindConfig):
    expression: str | None = None
    cases: list[SwitchCase] = Field(default_factory=list)


class LoopConfig(KindConfig):
    items: str | None = None
    max_iterations: int | None = Field(default=None, ge=1, alias="maxIterations")


class DelayConfig(KindConfig):
    seconds: float | None = Field(default=None, ge=0)
    until: datetime | None = None


class HttpRequestConfig(KindConfig):
    url: str | None = None
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: float | None = Field(default=None, gt=0)


class GenAiConfig(KindConfig):
    model: str | None = None
    prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)


class ReturnConfig(KindConfig):
    value: Any = None


BUILTIN_KINDS: list[tuple[str, str, type[BaseModel] | None]] = [
    ("trigger", "Entry point fired by a webhook, a schedule or a manual run.", TriggerConfig),
    ("action", "Generic action step with opaque configuration.", None),
    ("filter", "Routes to the true or false branch based on an expression.", FilterConfig),
    ("switch", "Routes to the branch whose case value matches.", SwitchConfig),
    ("loop", "Repeats its branch for each item.", LoopConfig),
    ("sequence", "Runs its branches one after another.", None),
    ("delay", "Waits for a duration or until a point in time.", DelayConfig),
    ("http-request", "Calls an HTTP endpoint.", HttpRequestConfig),
    ("gen-ai", "Generates content with a language model.", GenAiConfig),
    ("return", "Ends the run and returns a value.", ReturnConfig),
]


def register_builtin_kinds(
    registry: NodeKindRegistry,
    descriptions: dict[str, str] | None = None,
) -> None:
    overrides = descriptions or {}
    for kind, description, config_model in BUILTIN_KINDS:
        registry.register(
            NodeKindSpec(
                kind=kind,
                description=overrides.get(kind, description),
                config_model=config_model,
            )
        )
