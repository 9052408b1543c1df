from __future__ import annotations

import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .models import (
    START_NODE_ID,
    Board,
    BoardNode,
    Connection,
    ExecEdge,
    ExecNode,
    ExecutionDefinition,
)
from .nodes.base import NodeKindRegistry

TRIGGER_SUFFIX = "-trigger"
DEFAULT_TRIGGER_SUBTYPE = "webhook"


@dataclass(slots=True)
class BoardIssues:
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class GraphCompiler:
    """Turns an editor board into an execution definition.

    Compilation never fails: dangling or partially wired boards produce a
    definition with an empty root or unreachable nodes, since the editor
    saves work in progress. Use :meth:`check` to surface problems.
    """

    def __init__(self, registry: NodeKindRegistry | None = None) -> None:
        self.registry = registry

    def compile(
        self,
        board: Board,
        name: str = "Untitled",
        *,
        definition_id: str | None = None,
        version: int = 1,
    ) -> ExecutionDefinition:
        outgoing, incoming = self._adjacency(board.connections)

        nodes: dict[str, ExecNode] = {}
        for node in self._unique_nodes(board.nodes):
            if node.id == START_NODE_ID:
                continue
            nodes[node.id] = self._compile_node(
                node,
                outgoing.get(node.id, []),
                incoming.get(node.id, []),
            )

        root_edges = outgoing.get(START_NODE_ID, [])
        return ExecutionDefinition(
            id=definition_id or str(uuid.uuid4()),
            name=name,
            version=version,
            root=root_edges[0].target if root_edges else "",
            nodes=nodes,
        )

    def check(self, board: Board) -> BoardIssues:
        issues = BoardIssues()
        seen: set[str] = set()
        for node in board.nodes:
            if node.id in seen:
                issues.warnings.append(f"Duplicate node id {node.id!r}; only the first is kept")
            seen.add(node.id)

        for connection in board.connections:
            if connection.source != START_NODE_ID and connection.source not in seen:
                issues.warnings.append(f"Connection from unknown node {connection.source!r}")
            if connection.target == START_NODE_ID:
                issues.warnings.append("Connections into the start node are ignored")
            elif connection.target not in seen:
                issues.warnings.append(f"Connection to unknown node {connection.target!r}")

        definition = self.compile(board, definition_id="check")
        if definition.is_degenerate:
            issues.warnings.append("Board has no connection from the start node")
        else:
            reachable = _reachable(definition)
            for node_id in definition.nodes:
                if node_id not in reachable:
                    issues.warnings.append(f"Node {node_id!r} is not reachable from the start node")

        for node in self._unique_nodes(board.nodes):
            labels = [_edge_label(c, i) for i, c in enumerate(_outgoing_of(board.connections, node.id))]
            duplicates = sorted({label for label in labels if labels.count(label) > 1})
            for label in duplicates:
                issues.warnings.append(f"Node {node.id!r} has several {label!r} branches; later ones are renamed")

        if self.registry is not None:
            for node_id, exec_node in definition.nodes.items():
                for message in self.registry.validate_config(exec_node.kind, exec_node.cfg):
                    issues.errors.append(f"{node_id}: {message}")
        return issues

    def _adjacency(
        self,
        connections: list[Connection],
    ) -> tuple[dict[str, list[ExecEdge]], dict[str, list[str]]]:
        outgoing: dict[str, list[ExecEdge]] = {}
        incoming: dict[str, list[str]] = {}
        authored: dict[str, int] = {}
        seen: set[tuple[str, str, str | None]] = set()

        for connection in connections:
            key = (connection.source, connection.target, connection.label)
            if key in seen:
                continue
            seen.add(key)

            index = authored.get(connection.source, 0)
            authored[connection.source] = index + 1
            edges = outgoing.setdefault(connection.source, [])
            label = _free_label(_edge_label(connection, index), index, {edge.label for edge in edges})
            edges.append(ExecEdge(label=label, target=connection.target))

            sources = incoming.setdefault(connection.target, [])
            if connection.source not in sources:
                sources.append(connection.source)

        return outgoing, incoming

    def _compile_node(
        self,
        node: BoardNode,
        outgoing: list[ExecEdge],
        incoming: list[str],
    ) -> ExecNode:
        cfg = dict(node.config)
        kind, sub = _resolve_kind(node.action_kind, cfg)
        edges = list(outgoing)
        labels = {edge.label for edge in edges}
        for edge in _config_edges(kind, cfg):
            if edge.label not in labels:
                labels.add(edge.label)
                edges.append(edge)

        return ExecNode(
            id=node.id,
            kind=kind,
            cfg=cfg,
            next=outgoing[0].target if outgoing else None,
            prev=list(incoming),
            edges=edges,
            sub=sub,
        )

    @staticmethod
    def _unique_nodes(nodes: list[BoardNode]) -> list[BoardNode]:
        unique: dict[str, BoardNode] = {}
        for node in nodes:
            unique.setdefault(node.id, node)
        return list(unique.values())


def _resolve_kind(action_kind: str, cfg: dict[str, Any]) -> tuple[str, str | None]:
    if not action_kind.endswith(TRIGGER_SUFFIX):
        return action_kind, None
    subtype = cfg.get("subtype")
    if not isinstance(subtype, str) or not subtype:
        subtype = DEFAULT_TRIGGER_SUBTYPE
    return "trigger", subtype.removesuffix(TRIGGER_SUFFIX)


def _edge_label(connection: Connection, index: int) -> str:
    return connection.label or f"branch-{index}"


def _free_label(label: str, index: int, taken: set[str]) -> str:
    # Repeated labels get a numeric suffix.
    candidate = label
    while candidate in taken:
        candidate = f"{label}-{index}"
        index += 1
    return candidate


def _outgoing_of(connections: list[Connection], node_id: str) -> list[Connection]:
    unique: dict[tuple[str, str, str | None], Connection] = {}
    for connection in connections:
        if connection.source == node_id:
            unique.setdefault((connection.source, connection.target, connection.label), connection)
    return list(unique.values())


def _config_edges(kind: str, cfg: dict[str, Any]) -> list[ExecEdge]:
    edges: list[ExecEdge] = []
    if kind == "filter":
        for label, key in (("true", "nextTrue"), ("false", "nextFalse")):
            target = cfg.get(key)
            if isinstance(target, str) and target:
                edges.append(ExecEdge(label=label, target=target))
    elif kind == "switch":
        cases = cfg.get("cases")
        for case in cases if isinstance(cases, list) else []:
            if not isinstance(case, dict):
                continue
            target = case.get("next")
            if isinstance(target, str) and target:
                edges.append(ExecEdge(label=_case_label(case.get("value")), target=target))
    return edges


def _case_label(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _reachable(definition: ExecutionDefinition) -> set[str]:
    reachable: set[str] = set()
    queue = deque([definition.root])
    while queue:
        node_id = queue.popleft()
        node = definition.nodes.get(node_id)
        if node is None or node_id in reachable:
            continue
        reachable.add(node_id)
        queue.extend(edge.target for edge in node.edges)
    return reachable
