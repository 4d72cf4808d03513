"""Disconnected-option detection and status-quo wiring.

A "do nothing" option drafted without any intervention edges has no path
to the goal and breaks every downstream comparison. The fixer borrows the
factor targets of a connected donor option and wires the disconnected
option to the same factors with structural edges.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..edge_format import new_structural_edge
from ..model import EdgeFormat, GraphIndex, NodeKind, Violation, graph_edges, node_path
from .records import RepairRecord

logger = logging.getLogger(__name__)

REACHABILITY_CODES = frozenset({"NO_PATH_TO_GOAL", "NO_EFFECT_PATH"})
DROPPABLE_FLAG = "droppable"


@dataclass(slots=True)
class StatusQuoResult:
    engaged: bool = False
    wired: list[str] = field(default_factory=list)
    marked_droppable: list[str] = field(default_factory=list)
    edges_added: int = 0
    repairs: list[RepairRecord] = field(default_factory=list)

    @property
    def fixed(self) -> bool:
        return bool(self.wired)

    def to_dict(self) -> dict[str, Any]:
        return {
            "engaged": self.engaged,
            "fixed": self.fixed,
            "wired": list(self.wired),
            "marked_droppable": list(self.marked_droppable),
            "edges_added": self.edges_added,
            "repairs": [repair.to_dict() for repair in self.repairs],
        }


def find_disconnected_options(graph: dict[str, Any]) -> list[str]:
    """Return options without a forward path to any goal.

    An option is disconnected when it has no outgoing edge, or when none
    of its targets can reach a goal. Labels play no part in the test.
    """
    index = GraphIndex(graph)
    goal_reaching = index.goal_reaching()
    disconnected: list[str] = []
    for option_id in index.ids_of_kind(NodeKind.OPTION):
        targets = index.targets_of(option_id)
        if not targets or not any(target in goal_reaching for target in targets):
            disconnected.append(option_id)
    return disconnected


def fix_status_quo_connectivity(
    graph: dict[str, Any],
    violation_codes: Iterable[str],
    fmt: EdgeFormat,
) -> StatusQuoResult:
    """Wire disconnected options to the factors of a connected donor option.

    Engages only when a reachability-class code is cited. Donor selection
    follows node order, so the result is deterministic. Options without
    any donor are flagged ``droppable`` and receive no edges.

    Args:
        graph: Graph to repair; mutated in place.
        violation_codes: Codes cited for this pass.
        fmt: Locked edge format used for every added edge.

    Returns:
        StatusQuoResult describing wired and droppable options.
    """
    result = StatusQuoResult()
    if not REACHABILITY_CODES.intersection(violation_codes):
        return result
    result.engaged = True

    disconnected = find_disconnected_options(graph)
    if not disconnected:
        return result

    index = GraphIndex(graph)
    disconnected_set = set(disconnected)
    donor_targets: list[str] = []
    donor_id: str | None = None
    for option_id in index.ids_of_kind(NodeKind.OPTION):
        if option_id in disconnected_set:
            continue
        targets = [t for t in index.targets_of(option_id) if index.kind_of(t) == NodeKind.FACTOR.value]
        if targets:
            donor_id = option_id
            donor_targets = list(dict.fromkeys(targets))
            break

    edges = graph_edges(graph)
    existing = {(edge.get("from"), edge.get("to")) for edge in edges}
    nodes_by_id = {node.get("id"): node for node in graph.get("nodes") or []}

    for option_id in disconnected:
        if donor_id is None:
            node = nodes_by_id[option_id]
            if node.get(DROPPABLE_FLAG) is not True:
                node[DROPPABLE_FLAG] = True
                result.marked_droppable.append(option_id)
                result.repairs.append(
                    RepairRecord(
                        "STATUS_QUO_DROPPABLE",
                        node_path(option_id),
                        "Marked droppable: no connected option to copy intervention targets from",
                    )
                )
            continue

        added = 0
        for factor_id in donor_targets:
            if (option_id, factor_id) in existing:
                continue
            edges.append(new_structural_edge(option_id, factor_id, fmt, origin="repair"))
            existing.add((option_id, factor_id))
            added += 1
        if added:
            result.wired.append(option_id)
            result.edges_added += added
            result.repairs.append(
                RepairRecord(
                    "STATUS_QUO_WIRED",
                    node_path(option_id),
                    f"Added {added} structural edge(s) to factors of {donor_id}",
                )
            )

    if result.wired or result.marked_droppable:
        logger.warning(
            "Status quo fix: wired=%s droppable=%s donor=%s",
            result.wired,
            result.marked_droppable,
            donor_id,
        )
    return result


def disconnected_option_violations(option_ids: Iterable[str]) -> list[Violation]:
    """Synthetic residual violations for options still disconnected."""
    return [
        Violation(
            code="NO_PATH_TO_GOAL",
            message=f'Option "{option_id}" has no directed path to goal',
            affected_node_id=option_id,
            path=node_path(option_id),
            details={"source": "disconnected_option_check"},
        )
        for option_id in option_ids
    ]
