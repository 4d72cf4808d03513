"""Topology validation for packaged decision graphs.

Checks run over the full edge list:

- cycles (depth-first search over sorted ids, so the report does not
  depend on edge order)
- self-loops
- bidirectional pairs, reported once per unordered pair
- edge-kind legality against ``LEGAL_EDGE_KINDS``
- mean/weight outside ``[-1, 1]``

Cycle, self-loop and bidirectional findings are always errors.
``INVALID_EDGE_TYPE`` and ``STRENGTH_OUT_OF_RANGE`` are warnings unless
strict mode is on; in non-strict mode their codes are also listed in
``warnings_only`` so callers can show what strict mode would reject.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ..edge_format import detect_edge_format, edge_mean, is_finite_number
from ..model import CYCLE_CODE, EdgeFormat, NodeKind, Severity, Violation, edge_path, graph_edges, graph_nodes

SELF_LOOP = "SELF_LOOP"
BIDIRECTIONAL_EDGE = "BIDIRECTIONAL_EDGE"
INVALID_EDGE_TYPE = "INVALID_EDGE_TYPE"
STRENGTH_OUT_OF_RANGE = "STRENGTH_OUT_OF_RANGE"

LEGAL_EDGE_KINDS: frozenset[tuple[str, str]] = frozenset(
    {
        (NodeKind.DECISION.value, NodeKind.OPTION.value),
        (NodeKind.OPTION.value, NodeKind.FACTOR.value),
        (NodeKind.FACTOR.value, NodeKind.FACTOR.value),
        (NodeKind.FACTOR.value, NodeKind.OUTCOME.value),
        (NodeKind.FACTOR.value, NodeKind.RISK.value),
        (NodeKind.OUTCOME.value, NodeKind.GOAL.value),
        (NodeKind.RISK.value, NodeKind.GOAL.value),
    }
)

# Codes whose severity follows the strict-mode flag.
STRICT_MODE_CODES = frozenset({INVALID_EDGE_TYPE, STRENGTH_OUT_OF_RANGE})

STRENGTH_MIN = -1.0
STRENGTH_MAX = 1.0


def _edge_key(edge: Mapping[str, Any]) -> tuple[str, str]:
    return str(edge.get("from")), str(edge.get("to"))


def find_cycles(edges: Iterable[Mapping[str, Any]]) -> list[tuple[str, ...]]:
    """Find cycles closed by DFS back edges.

    Self-loops are ignored. Every returned cycle is rotated so that its
    smallest id comes first, and each distinct cycle appears once. The
    traversal visits ids and neighbours in sorted order, which makes the
    result a function of the edge set alone.

    Returns:
        Cycles as tuples of node ids, without repeating the first id.
    """
    adjacency: dict[str, set[str]] = {}
    for edge in edges:
        source, target = _edge_key(edge)
        adjacency.setdefault(source, set())
        adjacency.setdefault(target, set())
        if source != target:
            adjacency[source].add(target)
    ordered = {node: sorted(targets) for node, targets in adjacency.items()}

    white, gray, black = 0, 1, 2
    color = dict.fromkeys(ordered, white)
    found: list[tuple[str, ...]] = []
    seen: set[tuple[str, ...]] = set()

    for root in sorted(ordered):
        if color[root] != white:
            continue
        path: list[str] = [root]
        stack: list[tuple[str, int]] = [(root, 0)]
        color[root] = gray
        while stack:
            node, position = stack[-1]
            neighbours = ordered[node]
            if position >= len(neighbours):
                stack.pop()
                path.pop()
                color[node] = black
                continue
            stack[-1] = (node, position + 1)
            nxt = neighbours[position]
            if color[nxt] == white:
                color[nxt] = gray
                path.append(nxt)
                stack.append((nxt, 0))
            elif color[nxt] == gray:
                cycle = path[path.index(nxt):]
                pivot = cycle.index(min(cycle))
                rotated = tuple(cycle[pivot:] + cycle[:pivot])
                if rotated not in seen:
                    seen.add(rotated)
                    found.append(rotated)
    return found


@dataclass(frozen=True, slots=True)
class TopologyReport:
    """Result of a topology validation pass."""

    errors: tuple[Violation, ...]
    warnings: tuple[Violation, ...]
    warnings_only: tuple[str, ...]
    strict: bool

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def cycles(self) -> list[list[str]]:
        return [list(v.details["cycle"]) for v in self.errors if v.code == CYCLE_CODE]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "strict": self.strict,
            "errors": [v.to_dict() for v in self.errors],
            "warnings": [v.to_dict() for v in self.warnings],
            "warnings_only": list(self.warnings_only),
        }


class TopologyValidator:
    """Validate the topology contract of a graph.

    Args:
        strict: Promote ``INVALID_EDGE_TYPE`` and ``STRENGTH_OUT_OF_RANGE``
            from warnings to errors.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict

    def validate(self, graph: Mapping[str, Any], fmt: EdgeFormat | None = None) -> TopologyReport:
        edges = sorted(graph_edges(graph), key=_edge_key)
        kinds = {node.get("id"): node.get("kind") for node in graph_nodes(graph)}
        if fmt is None:
            fmt = detect_edge_format(edges)

        errors: list[Violation] = []
        flagged: list[Violation] = []

        errors.extend(self._cycles(edges))
        errors.extend(self._self_loops(edges))
        errors.extend(self._bidirectional(edges))
        flagged.extend(self._edge_kinds(edges, kinds))
        flagged.extend(self._ranges(edges, fmt))

        warnings: list[Violation] = []
        warnings_only: list[str] = []
        for violation in flagged:
            if self.strict:
                errors.append(violation)
            else:
                warnings.append(violation)
                if violation.code not in warnings_only:
                    warnings_only.append(violation.code)

        return TopologyReport(
            errors=tuple(errors),
            warnings=tuple(warnings),
            warnings_only=tuple(warnings_only),
            strict=self.strict,
        )

    def _severity(self) -> Severity:
        return Severity.ERROR if self.strict else Severity.WARNING

    def _cycles(self, edges: list[dict[str, Any]]) -> list[Violation]:
        violations = []
        for cycle in find_cycles(edges):
            # Two-node cycles are reported as bidirectional pairs.
            if len(cycle) < 3:
                continue
            violations.append(
                Violation(
                    code=CYCLE_CODE,
                    message="Graph contains a cycle: " + " → ".join([*cycle, cycle[0]]),
                    affected_node_id=cycle[0],
                    details={"cycle": list(cycle)},
                )
            )
        return violations

    def _self_loops(self, edges: list[dict[str, Any]]) -> list[Violation]:
        reported: set[str] = set()
        violations = []
        for edge in edges:
            source, target = _edge_key(edge)
            if source == target and source not in reported:
                reported.add(source)
                violations.append(
                    Violation(
                        code=SELF_LOOP,
                        message=f'Node "{source}" has an edge to itself',
                        affected_node_id=source,
                        path=edge_path(edge),
                    )
                )
        return violations

    def _bidirectional(self, edges: list[dict[str, Any]]) -> list[Violation]:
        pairs = {_edge_key(edge) for edge in edges}
        violations = []
        for source, target in sorted(pairs):
            if source < target and (target, source) in pairs:
                violations.append(
                    Violation(
                        code=BIDIRECTIONAL_EDGE,
                        message=f'Nodes "{source}" and "{target}" have edges in both directions',
                        affected_node_id=source,
                        details={"pair": [source, target]},
                    )
                )
        return violations

    def _edge_kinds(self, edges: list[dict[str, Any]], kinds: Mapping[Any, Any]) -> list[Violation]:
        violations = []
        for edge in edges:
            source, target = _edge_key(edge)
            if source == target or source not in kinds or target not in kinds:
                continue
            pair = (kinds[source], kinds[target])
            if pair not in LEGAL_EDGE_KINDS:
                violations.append(
                    Violation(
                        code=INVALID_EDGE_TYPE,
                        severity=self._severity(),
                        message=f"Invalid edge from {pair[0]} to {pair[1]}",
                        path=edge_path(edge),
                        details={"from_kind": pair[0], "to_kind": pair[1], "from": source, "to": target},
                    )
                )
        return violations

    def _ranges(self, edges: list[dict[str, Any]], fmt: EdgeFormat) -> list[Violation]:
        violations = []
        for edge in edges:
            mean = edge_mean(edge, fmt)
            if mean is None or isinstance(mean, bool) or not isinstance(mean, (int, float)):
                continue
            if is_finite_number(mean) and STRENGTH_MIN <= mean <= STRENGTH_MAX:
                continue
            violations.append(
                Violation(
                    code=STRENGTH_OUT_OF_RANGE,
                    severity=self._severity(),
                    message=f"Edge strength {mean} outside [{STRENGTH_MIN}, {STRENGTH_MAX}]",
                    path=edge_path(edge),
                    details={"value": mean if is_finite_number(mean) else str(mean)},
                )
            )
        return violations


def validate_topology(
    graph: Mapping[str, Any],
    *,
    strict: bool = False,
    fmt: EdgeFormat | None = None,
) -> TopologyReport:
    """Convenience wrapper around ``TopologyValidator``."""
    return TopologyValidator(strict=strict).validate(graph, fmt)
