"""Final graph guards applied before packaging.

External repair gets the first chance to fix cycles. Whatever survives it
(or a skipped or failed escalation) is broken here so the packaged graph
always satisfies the acyclicity invariants.
"""

from __future__ import annotations

import logging
from typing import Any

from ..model import edge_path, graph_edges
from ..validation.topology import find_cycles
from .records import RepairRecord

logger = logging.getLogger(__name__)


def remove_self_loops(graph: dict[str, Any]) -> list[RepairRecord]:
    edges = graph_edges(graph)
    repairs = [
        RepairRecord("SELF_LOOP_REMOVED", edge_path(edge), "Removed self-loop edge")
        for edge in edges
        if edge.get("from") == edge.get("to")
    ]
    if repairs:
        edges[:] = [edge for edge in edges if edge.get("from") != edge.get("to")]
    return repairs


def break_cycles(graph: dict[str, Any]) -> list[RepairRecord]:
    """Remove the closing edge of every cycle until the graph is acyclic.

    Cycles come from ``find_cycles``, whose traversal order depends only on
    the edge set, so the same edges are removed whatever the input order.
    All parallel edges of a closing pair are removed together.
    """
    edges = graph_edges(graph)
    repairs: list[RepairRecord] = []
    while True:
        cycles = find_cycles(edges)
        if not cycles:
            break
        closing = set()
        for cycle in cycles:
            closing.add((cycle[-1], cycle[0]))
        removed = [edge for edge in edges if (edge.get("from"), edge.get("to")) in closing]
        edges[:] = [edge for edge in edges if (edge.get("from"), edge.get("to")) not in closing]
        for edge in removed:
            repairs.append(RepairRecord("CYCLE_BROKEN", edge_path(edge), "Removed edge closing a cycle"))
        logger.warning(
            "Broke %d cycle(s) by removing: %s",
            len(cycles),
            ", ".join(f"{source}→{target}" for source, target in sorted(closing)),
        )
    return repairs


def apply_graph_guards(graph: dict[str, Any]) -> list[RepairRecord]:
    repairs = remove_self_loops(graph)
    repairs.extend(break_cycles(graph))
    return repairs
