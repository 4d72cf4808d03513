"""Core data model for decision graphs.

A decision graph is handled as plain ``dict`` data throughout the pipeline:
``{"nodes": [...], "edges": [...], "meta": {...}}``. Nodes and edges are
ordered mappings so unknown fields at any depth survive every stage
untouched. Typed views exist only at the boundaries:

- Pydantic models (``GraphModel``, ``NodeModel``, ``EdgeModel``,
  ``ViolationModel``) validate the request envelope and allow extra fields.
- ``Violation`` is the frozen record exchanged between the validators,
  the sweep and the router.
- ``GraphIndex`` is an index-addressed arena over the node list used for
  reachability and cycle search.
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

# =============================================================================
# Enumerations
# =============================================================================


class NodeKind(str, Enum):
    """Node kinds of a causal decision graph."""

    GOAL = "goal"
    DECISION = "decision"
    OPTION = "option"
    FACTOR = "factor"
    OUTCOME = "outcome"
    RISK = "risk"
    ACTION = "action"
    CONSTRAINT = "constraint"


class EdgeFormat(str, Enum):
    """Numeric encoding used by the edges of one graph."""

    V1_FLAT = "V1_FLAT"
    LEGACY = "LEGACY"
    NONE = "NONE"


class FactorCategory(str, Enum):
    CONTROLLABLE = "controllable"
    OBSERVABLE = "observable"
    EXTERNAL = "external"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


# Canonical code for a cycle over the full edge set. Older validators emit
# the aliases below; they are folded into the canonical code on entry.
CYCLE_CODE = "GRAPH_CONTAINS_CYCLE"
CYCLE_CODE_ALIASES = frozenset({"CIRCULAR_DEPENDENCY", "CYCLE_DETECTED"})

STRUCTURAL_EDGE_KINDS: frozenset[tuple[str, str]] = frozenset(
    {
        (NodeKind.DECISION.value, NodeKind.OPTION.value),
        (NodeKind.OPTION.value, NodeKind.FACTOR.value),
    }
)


def canonical_code(code: str) -> str:
    """Fold alias violation codes into their canonical spelling."""
    if code in CYCLE_CODE_ALIASES:
        return CYCLE_CODE
    return code


# =============================================================================
# Violations
# =============================================================================

_NODE_PATH_RE = re.compile(r"^nodes(?:ById)?[\[.]([^\].]+)\]?")


@dataclass(frozen=True, slots=True)
class Violation:
    """A data violation raised by a validator.

    Violations are values, never exceptions: they flow from the structural
    validator into the sweep and the router, and out of the topology
    validator into the repair summary.
    """

    code: str
    severity: Severity = Severity.ERROR
    message: str = ""
    affected_node_id: str | None = None
    path: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    @property
    def node_id(self) -> str | None:
        """Node named by this violation, from ``affected_node_id`` or ``path``."""
        if self.affected_node_id:
            return self.affected_node_id
        if self.path:
            match = _NODE_PATH_RE.match(self.path)
            if match:
                return match.group(1)
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "severity": self.severity.value}
        if self.message:
            payload["message"] = self.message
        if self.affected_node_id is not None:
            payload["affected_node_id"] = self.affected_node_id
        if self.path is not None:
            payload["path"] = self.path
        if self.details:
            payload["details"] = dict(self.details)
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Violation:
        severity = data.get("severity", Severity.ERROR.value)
        try:
            parsed_severity = Severity(severity)
        except ValueError:
            parsed_severity = Severity.ERROR
        details = data.get("details") or data.get("context") or {}
        return cls(
            code=canonical_code(str(data["code"])),
            severity=parsed_severity,
            message=str(data.get("message") or ""),
            affected_node_id=data.get("affected_node_id"),
            path=data.get("path"),
            details=dict(details) if isinstance(details, Mapping) else {},
        )


def coerce_violations(items: Iterable[Violation | Mapping[str, Any]]) -> list[Violation]:
    """Accept violations either as ``Violation`` objects or raw mappings."""
    result: list[Violation] = []
    for item in items:
        if isinstance(item, Violation):
            code = canonical_code(item.code)
            result.append(item if code == item.code else replace(item, code=code))
        else:
            result.append(Violation.from_dict(item))
    return result


# =============================================================================
# Boundary models
# =============================================================================


class GraphInputError(ValueError):
    """Raised when a request envelope cannot be loaded as a graph."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid graph input:\n  - " + "\n  - ".join(errors))


class _OpenModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class NodeModel(_OpenModel):
    id: str = Field(..., min_length=1)
    kind: str = Field(..., min_length=1)
    label: str | None = None
    category: str | None = None
    data: dict[str, Any] | None = None


class EdgeModel(_OpenModel):
    from_: str = Field(..., alias="from", min_length=1)
    to: str = Field(..., min_length=1)
    effect_direction: str | None = None


class GraphModel(_OpenModel):
    nodes: list[NodeModel]
    edges: list[EdgeModel] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)


class ViolationModel(_OpenModel):
    code: str = Field(..., min_length=1)
    severity: Severity = Severity.ERROR
    message: str | None = None
    affected_node_id: str | None = None
    path: str | None = None
    details: dict[str, Any] | None = None


def validate_graph_envelope(graph: Any) -> None:
    """Validate that ``graph`` can be processed by the pipeline.

    Only the envelope is checked: node ids, node kinds and edge endpoints
    must be strings and node ids unique. Dangling edges, NaN numbers and
    illegal topology are data violations handled downstream.

    Raises:
        GraphInputError: If the envelope is malformed.
    """
    if not isinstance(graph, Mapping):
        raise GraphInputError([f"graph must be a mapping, got {type(graph).__name__}"])
    try:
        GraphModel.model_validate(graph)
    except ValidationError as exc:
        errors = []
        for error in exc.errors():
            loc = ".".join(str(part) for part in error["loc"]) or "(root)"
            errors.append(f"{loc}: {error['msg']}")
        raise GraphInputError(errors) from exc

    seen: set[str] = set()
    duplicates: list[str] = []
    for node in graph["nodes"]:
        node_id = node["id"]
        if node_id in seen and node_id not in duplicates:
            duplicates.append(node_id)
        seen.add(node_id)
    if duplicates:
        raise GraphInputError([f"duplicate node id: {node_id}" for node_id in duplicates])


def validate_violations(violations: Any) -> list[Violation]:
    """Validate and convert a raw violation list.

    Raises:
        GraphInputError: If any entry is malformed.
    """
    if violations is None:
        return []
    if not isinstance(violations, list):
        raise GraphInputError([f"violations must be a list, got {type(violations).__name__}"])
    errors: list[str] = []
    for index, item in enumerate(violations):
        if isinstance(item, Violation):
            continue
        try:
            ViolationModel.model_validate(item)
        except ValidationError as exc:
            for error in exc.errors():
                loc = ".".join(str(part) for part in error["loc"]) or "(root)"
                errors.append(f"violations.{index}.{loc}: {error['msg']}")
    if errors:
        raise GraphInputError(errors)
    return coerce_violations(violations)


# =============================================================================
# Graph accessors
# =============================================================================


def graph_nodes(graph: Mapping[str, Any]) -> list[dict[str, Any]]:
    return graph.get("nodes") or []


def graph_edges(graph: Mapping[str, Any]) -> list[dict[str, Any]]:
    return graph.get("edges") or []


def node_path(node_id: str, suffix: str = "") -> str:
    return f"nodes[{node_id}]{suffix}"


def edge_path(edge: Mapping[str, Any], suffix: str = "") -> str:
    return f"edges[{edge.get('from')}→{edge.get('to')}]{suffix}"


def factor_category(node: Mapping[str, Any]) -> str | None:
    category = node.get("category")
    return category if isinstance(category, str) else None


# =============================================================================
# Index arena
# =============================================================================


class GraphIndex:
    """Index-addressed adjacency over a graph snapshot.

    Node ids map to stable integer slots; successors and predecessors are
    stored as lists of slots. Edges whose endpoints are unknown are ignored.
    The index is a snapshot: rebuild it after mutating the edge list.
    """

    def __init__(self, graph: Mapping[str, Any]) -> None:
        self.node_ids: list[str] = []
        self.kinds: list[str] = []
        self.node_indices: dict[str, int] = {}
        for node in graph_nodes(graph):
            node_id = node.get("id")
            if not isinstance(node_id, str) or node_id in self.node_indices:
                continue
            self.node_indices[node_id] = len(self.node_ids)
            self.node_ids.append(node_id)
            self.kinds.append(str(node.get("kind", "")))

        self.successors: list[list[int]] = [[] for _ in self.node_ids]
        self.predecessors: list[list[int]] = [[] for _ in self.node_ids]
        for edge in graph_edges(graph):
            src = self.node_indices.get(edge.get("from"))
            dst = self.node_indices.get(edge.get("to"))
            if src is None or dst is None:
                continue
            self.successors[src].append(dst)
            self.predecessors[dst].append(src)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.node_indices

    def kind_of(self, node_id: str) -> str | None:
        index = self.node_indices.get(node_id)
        return None if index is None else self.kinds[index]

    def ids_of_kind(self, kind: NodeKind | str) -> list[str]:
        value = kind.value if isinstance(kind, NodeKind) else kind
        return [node_id for node_id, node_kind in zip(self.node_ids, self.kinds) if node_kind == value]

    def targets_of(self, node_id: str) -> list[str]:
        index = self.node_indices.get(node_id)
        if index is None:
            return []
        return [self.node_ids[slot] for slot in self.successors[index]]

    def sources_of(self, node_id: str) -> list[str]:
        index = self.node_indices.get(node_id)
        if index is None:
            return []
        return [self.node_ids[slot] for slot in self.predecessors[index]]

    def _walk(self, start: Iterable[str], adjacency: list[list[int]]) -> set[str]:
        seen: set[int] = set()
        queue: deque[int] = deque()
        for node_id in start:
            index = self.node_indices.get(node_id)
            if index is not None and index not in seen:
                seen.add(index)
                queue.append(index)
        while queue:
            current = queue.popleft()
            for nxt in adjacency[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return {self.node_ids[index] for index in seen}

    def reachable_from(self, start: Iterable[str]) -> set[str]:
        """Nodes reachable forward from ``start`` (inclusive)."""
        return self._walk(start, self.successors)

    def reaching(self, targets: Iterable[str]) -> set[str]:
        """Nodes with a forward path into ``targets`` (inclusive)."""
        return self._walk(targets, self.predecessors)

    def goal_reaching(self) -> set[str]:
        """Nodes with a forward path to any goal node, goals included."""
        return self.reaching(self.ids_of_kind(NodeKind.GOAL))
