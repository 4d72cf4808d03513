"""Unreachable-factor handling.

A factor no option can influence cannot be an intervention lever. Such
factors are reclassified to ``external`` and lose their controllable-only
data. They are never deleted here. When such a factor feeds an outcome or
risk that is itself cut off from the goal, that node is wired to the goal.
A factor still without a forward path to a goal is flagged ``droppable``
so a downstream consumer with more context can decide whether to remove
it.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from ..edge_format import is_finite_number, new_causal_edge
from ..model import EdgeFormat, FactorCategory, GraphIndex, NodeKind, graph_edges, graph_nodes, node_path
from .records import FieldDeletion, RepairRecord
from .sweep import EXTERNAL_FORBIDDEN, strip_data_fields

logger = logging.getLogger(__name__)

STAGE = "unreachable-factors"
DROPPABLE_FLAG = "droppable"
MIN_PRIOR_MARGIN = 0.1


@dataclass(slots=True)
class UnreachableFactorResult:
    reclassified: list[str] = field(default_factory=list)
    wired_to_goal: list[str] = field(default_factory=list)
    marked_droppable: list[str] = field(default_factory=list)
    repairs: list[RepairRecord] = field(default_factory=list)
    field_deletions: list[FieldDeletion] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reclassified": list(self.reclassified),
            "wired_to_goal": list(self.wired_to_goal),
            "marked_droppable": list(self.marked_droppable),
            "repairs": [repair.to_dict() for repair in self.repairs],
            "field_deletions": [deletion.to_dict() for deletion in self.field_deletions],
        }


def synthesize_prior(value: float) -> tuple[float, float]:
    """Derive a uniform prior range from a stripped baseline value.

    Values outside the open unit interval fall back to ``[0, 1]``;
    otherwise the range is ``value ± max(0.1, value / 2)`` clamped to the
    unit interval.
    """
    if value <= 0 or value >= 1:
        return 0.0, 1.0
    margin = max(MIN_PRIOR_MARGIN, value * 0.5)
    return round(max(0.0, value - margin), 6), round(min(1.0, value + margin), 6)


def reachable_factor_ids(index: GraphIndex) -> set[str]:
    """Factors targeted by an option, closed under factor→factor edges."""
    factor = NodeKind.FACTOR.value
    reachable: set[str] = set()
    queue: deque[str] = deque()
    for option_id in index.ids_of_kind(NodeKind.OPTION):
        for target in index.targets_of(option_id):
            if index.kind_of(target) == factor and target not in reachable:
                reachable.add(target)
                queue.append(target)
    while queue:
        current = queue.popleft()
        for target in index.targets_of(current):
            if index.kind_of(target) == factor and target not in reachable:
                reachable.add(target)
                queue.append(target)
    return reachable


def wire_outcome_to_goal(graph: dict[str, Any], index: GraphIndex, factor_id: str, fmt: EdgeFormat) -> str | None:
    """Connect the first outcome or risk fed by ``factor_id`` to the goal.

    Only the first factor→outcome/risk edge is considered, and only when
    its target has no path to a goal of its own. Risks get a negative
    edge.

    Returns:
        The id of the wired outcome or risk, or None.
    """
    goals = index.ids_of_kind(NodeKind.GOAL)
    if not goals:
        return None
    for target in index.targets_of(factor_id):
        kind = index.kind_of(target)
        if kind not in (NodeKind.OUTCOME.value, NodeKind.RISK.value):
            continue
        if target in index.goal_reaching():
            return None
        graph_edges(graph).append(new_causal_edge(target, goals[0], fmt, negative=kind == NodeKind.RISK.value))
        return target
    return None


def handle_unreachable_factors(graph: dict[str, Any], fmt: EdgeFormat) -> UnreachableFactorResult:
    """Reclassify option-unreachable factors and flag goal-unreachable ones.

    Runs on every pass without a violation citation. Factors already
    external, stripped and flagged produce no new records, so a second
    pass over the output is a no-op.

    Args:
        graph: Graph to repair; mutated in place.
        fmt: Locked edge format of any outcome→goal edge this stage adds.

    Returns:
        UnreachableFactorResult listing reclassified and droppable factors.
    """
    index = GraphIndex(graph)
    reachable = reachable_factor_ids(index)
    goal_reaching = index.goal_reaching()
    result = UnreachableFactorResult()

    for node in graph_nodes(graph):
        if node.get("kind") != NodeKind.FACTOR.value or node.get("id") in reachable:
            continue
        node_id = node["id"]

        data = node.get("data")
        original_value = data.get("value") if isinstance(data, dict) else None
        changed_category = node.get("category") != FactorCategory.EXTERNAL.value
        if changed_category:
            node["category"] = FactorCategory.EXTERNAL.value
        deletions = strip_data_fields(
            node,
            EXTERNAL_FORBIDDEN,
            stage=STAGE,
            reason="UNREACHABLE_FACTOR_RECLASSIFIED",
            clear_empty=True,
        )

        if changed_category or deletions:
            action = f'Reclassified unreachable factor "{node.get("label") or node_id}" to external'
            if is_finite_number(original_value) and any(d.field == "data.value" for d in deletions):
                range_min, range_max = synthesize_prior(float(original_value))
                node["prior"] = {"distribution": "uniform", "range_min": range_min, "range_max": range_max}
                action += f" with synthesised prior [{range_min}, {range_max}]"
            result.reclassified.append(node_id)
            result.field_deletions.extend(deletions)
            result.repairs.append(
                RepairRecord("UNREACHABLE_FACTOR_RECLASSIFIED", node_path(node_id, ".category"), action)
            )

        if node_id not in goal_reaching:
            wired = wire_outcome_to_goal(graph, index, node_id, fmt)
            if wired is not None:
                goal_id = index.ids_of_kind(NodeKind.GOAL)[0]
                index = GraphIndex(graph)
                goal_reaching = index.goal_reaching()
                result.wired_to_goal.append(wired)
                result.repairs.append(
                    RepairRecord(
                        "UNREACHABLE_FACTOR_WIRED_TO_GOAL",
                        f"edges[{wired}→{goal_id}]",
                        f'Wired {index.kind_of(wired)} "{wired}" to goal to connect unreachable factor "{node_id}"',
                    )
                )

        if node_id not in goal_reaching and node.get(DROPPABLE_FLAG) is not True:
            node[DROPPABLE_FLAG] = True
            result.marked_droppable.append(node_id)
            result.repairs.append(
                RepairRecord(
                    "UNREACHABLE_FACTOR_RETAINED",
                    node_path(node_id),
                    "Marked droppable: no option edge and no path to goal",
                )
            )

    if result.reclassified or result.marked_droppable or result.wired_to_goal:
        logger.warning(
            "Unreachable factors: reclassified=%s wired_to_goal=%s droppable=%s",
            result.reclassified,
            result.wired_to_goal,
            result.marked_droppable,
        )
    return result
