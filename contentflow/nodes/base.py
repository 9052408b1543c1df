from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError


@dataclass(slots=True)
class NodeKindSpec:
    kind: str
    description: str
    config_model: type[BaseModel] | None = None


class NodeKindRegistry:
    def __init__(self) -> None:
        self._kinds: dict[str, NodeKindSpec] = {}

    def register(self, spec: NodeKindSpec) -> None:
        self._kinds[spec.kind] = spec

    def get(self, kind: str) -> NodeKindSpec | None:
        return self._kinds.get(kind)

    def list_kinds(self) -> list[str]:
        return sorted(self._kinds)

    def list_specs(self) -> list[dict[str, str]]:
        return [
            {"kind": self._kinds[key].kind, "description": self._kinds[key].description}
            for key in sorted(self._kinds)
        ]

    def validate_config(self, kind: str, cfg: dict[str, Any]) -> list[str]:
        """Return config errors for ``kind``; unknown kinds carry opaque config."""
        spec = self._kinds.get(kind)
        if spec is None or spec.config_model is None:
            return []
        try:
            spec.config_model.model_validate(cfg)
        except ValidationError as exc:
            errors: list[str] = []
            for error in exc.errors():
                location = ".".join(str(part) for part in error["loc"]) or "cfg"
                errors.append(f"{location}: {error['msg']}")
            return errors
        return []
