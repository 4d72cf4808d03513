"""Deterministic repair sweep.

The sweep applies two layers of fixes to a graph in place:

Bucket A (unconditional)
    Numeric and reference hygiene that never needs a validator citation:
    dangling edges, goal out-edges and decision in-edges are removed, edges
    drafted in the other field family are rewritten into the locked format,
    then structural edges, non-finite numbers and sign/direction
    disagreement are fixed in that order.

Bucket B (citation-gated)
    Factor data fixes applied only to nodes named by a cited violation:
    ``CONTROLLABLE_MISSING_DATA``, ``OBSERVABLE_MISSING_DATA``,
    ``OBSERVABLE_EXTRA_DATA``, ``EXTERNAL_HAS_DATA`` and
    ``CATEGORY_MISMATCH``.

A proactive topology fix also lives here: factor→goal edges are split
through a synthetic outcome node so the causal chain stays
factor→outcome→goal.

Every fix is logged as a ``RepairRecord`` and every removed node field as
a ``FieldDeletion``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..edge_format import (
    canonicalize_structural_edge,
    edge_mean,
    field_names,
    is_non_finite_number,
    is_structural_kind_pair,
    lock_edge_fields,
    patch_edge_numeric,
    set_edge_mean,
)
from ..model import (
    EdgeFormat,
    FactorCategory,
    GraphIndex,
    NodeKind,
    Violation,
    edge_path,
    graph_edges,
    graph_nodes,
    node_path,
)
from .records import FieldDeletion, RepairRecord

logger = logging.getLogger(__name__)

STAGE = "deterministic-sweep"

BUCKET_A_CODES = frozenset(
    {
        "NAN_VALUE",
        "SIGN_MISMATCH",
        "STRUCTURAL_EDGE_NOT_CANONICAL_ERROR",
        "INVALID_EDGE_REF",
        "GOAL_HAS_OUTGOING",
        "DECISION_HAS_INCOMING",
        "NODE_LIMIT_EXCEEDED",
        "EDGE_LIMIT_EXCEEDED",
    }
)

BUCKET_B_CODES = frozenset(
    {
        "CATEGORY_MISMATCH",
        "CONTROLLABLE_MISSING_DATA",
        "OBSERVABLE_MISSING_DATA",
        "OBSERVABLE_EXTRA_DATA",
        "EXTERNAL_HAS_DATA",
    }
)

# Topological problems the sweep cannot fix; these go to external repair.
ESCALATION_CODES = frozenset(
    {
        "NO_PATH_TO_GOAL",
        "NO_EFFECT_PATH",
        "UNREACHABLE_FROM_DECISION",
        "MISSING_BRIDGE",
        "MISSING_GOAL",
        "MISSING_DECISION",
        "INVALID_EDGE_TYPE",
        "GRAPH_CONTAINS_CYCLE",
        "OPTIONS_IDENTICAL",
        "GOAL_NUMBER_AS_FACTOR",
        "INSUFFICIENT_OPTIONS",
        "INVALID_INTERVENTION_REF",
    }
)

NEUTRAL_MEAN = 0.5
NEUTRAL_STD = 0.1
NEUTRAL_EXISTENCE = 0.8
NEUTRAL_FACTOR_VALUE = 0.5

CONTROLLABLE_DEFAULTS: tuple[tuple[str, Any], ...] = (
    ("value", 0.5),
    ("extractionType", "inferred"),
    ("factor_type", "other"),
    ("uncertainty_drivers", ["Not provided"]),
)
OBSERVABLE_FORBIDDEN = ("factor_type", "uncertainty_drivers")
EXTERNAL_FORBIDDEN = ("value", "factor_type", "uncertainty_drivers")
# Keys that keep a node ``data`` object meaningful after stripping.
DATA_ANCHOR_KEYS = ("interventions", "operator", "value")

SPLIT_STD = 0.15
SPLIT_EXISTENCE = 0.9
SPLIT_BRIDGE_MEAN = 0.5


@dataclass(frozen=True, slots=True)
class BucketSummary:
    a: int
    b: int
    c: int

    def to_dict(self) -> dict[str, int]:
        return {"a": self.a, "b": self.b, "c": self.c}


@dataclass(slots=True)
class SweepResult:
    """Outcome of one sweep pass."""

    repairs: list[RepairRecord] = field(default_factory=list)
    field_deletions: list[FieldDeletion] = field(default_factory=list)
    buckets: BucketSummary = BucketSummary(0, 0, 0)
    cited_b_codes: tuple[str, ...] = ()
    factor_goal_splits: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "repairs": [repair.to_dict() for repair in self.repairs],
            "field_deletions": [deletion.to_dict() for deletion in self.field_deletions],
            "bucket_summary": self.buckets.to_dict(),
            "cited_b_codes": list(self.cited_b_codes),
            "factor_goal_splits": self.factor_goal_splits,
        }


def partition_buckets(violations: Iterable[Violation]) -> BucketSummary:
    counts = {"a": 0, "b": 0, "c": 0}
    for violation in violations:
        if violation.code in BUCKET_A_CODES:
            counts["a"] += 1
        elif violation.code in BUCKET_B_CODES:
            counts["b"] += 1
        elif violation.code in ESCALATION_CODES:
            counts["c"] += 1
    return BucketSummary(**counts)


# =============================================================================
# Field stripping
# =============================================================================


def strip_data_fields(
    node: dict[str, Any],
    fields: Iterable[str],
    *,
    stage: str,
    reason: str,
    clear_empty: bool,
) -> list[FieldDeletion]:
    """Remove ``fields`` from ``node["data"]`` and record each deletion.

    When ``clear_empty`` is set and something was removed, a ``data``
    object left without any anchor key is dropped entirely instead of
    being kept as an invalid shell.
    """
    data = node.get("data")
    if not isinstance(data, dict):
        return []
    node_id = str(node.get("id"))
    deletions: list[FieldDeletion] = []
    for name in fields:
        if name in data:
            del data[name]
            deletions.append(FieldDeletion(stage, node_id, f"data.{name}", reason))
    if deletions and clear_empty and not any(key in data for key in DATA_ANCHOR_KEYS):
        del node["data"]
        deletions.append(FieldDeletion(stage, node_id, "data", reason))
    return deletions


# =============================================================================
# Bucket A
# =============================================================================


def remove_dangling_edges(graph: dict[str, Any]) -> list[RepairRecord]:
    node_ids = {node.get("id") for node in graph_nodes(graph)}
    edges = graph_edges(graph)
    kept: list[dict[str, Any]] = []
    repairs: list[RepairRecord] = []
    for edge in edges:
        missing = [end for end in (edge.get("from"), edge.get("to")) if end not in node_ids]
        if missing:
            repairs.append(
                RepairRecord(
                    "INVALID_EDGE_REF",
                    edge_path(edge),
                    f"Removed edge referencing missing node(s): {', '.join(map(str, missing))}",
                )
            )
            continue
        kept.append(edge)
    edges[:] = kept
    return repairs


def remove_goal_outgoing(graph: dict[str, Any]) -> list[RepairRecord]:
    goals = {node.get("id") for node in graph_nodes(graph) if node.get("kind") == NodeKind.GOAL.value}
    return _remove_edges(
        graph,
        lambda edge: edge.get("from") in goals,
        "GOAL_HAS_OUTGOING",
        "Removed outgoing edge from goal node",
    )


def remove_decision_incoming(graph: dict[str, Any]) -> list[RepairRecord]:
    decisions = {node.get("id") for node in graph_nodes(graph) if node.get("kind") == NodeKind.DECISION.value}
    return _remove_edges(
        graph,
        lambda edge: edge.get("to") in decisions,
        "DECISION_HAS_INCOMING",
        "Removed incoming edge to decision node",
    )


def _remove_edges(
    graph: dict[str, Any],
    predicate: Callable[[dict[str, Any]], bool],
    code: str,
    action: str,
) -> list[RepairRecord]:
    edges = graph_edges(graph)
    kept: list[dict[str, Any]] = []
    repairs: list[RepairRecord] = []
    for edge in edges:
        if predicate(edge):
            repairs.append(RepairRecord(code, edge_path(edge), action))
        else:
            kept.append(edge)
    edges[:] = kept
    return repairs


def lock_edge_formats(graph: dict[str, Any], fmt: EdgeFormat) -> list[RepairRecord]:
    """Move every edge drafted in the other field family into ``fmt``."""
    repairs: list[RepairRecord] = []
    for edge in graph_edges(graph):
        rewrite = lock_edge_fields(edge, fmt)
        if not rewrite:
            continue
        parts = [f"{old}→{new}" for old, new in rewrite.renamed]
        parts.extend(f"dropped {name}" for name in rewrite.dropped)
        repairs.append(
            RepairRecord(
                "EDGE_FORMAT_NORMALIZED",
                edge_path(edge),
                f"Rewrote to {fmt.value} fields: {', '.join(parts)}",
            )
        )
    if repairs:
        logger.info("Rewrote %d edge(s) into the locked %s format", len(repairs), fmt.value)
    return repairs


def canonicalize_structural_edges(graph: dict[str, Any], fmt: EdgeFormat) -> list[RepairRecord]:
    index = GraphIndex(graph)
    repairs: list[RepairRecord] = []
    for edge in graph_edges(graph):
        if not is_structural_kind_pair(index.kind_of(edge.get("from")), index.kind_of(edge.get("to"))):
            continue
        if canonicalize_structural_edge(edge, fmt):
            repairs.append(
                RepairRecord(
                    "STRUCTURAL_EDGE_NOT_CANONICAL_ERROR",
                    edge_path(edge),
                    "Set structural edge to canonical certainty",
                )
            )
    return repairs


def fix_non_finite_values(graph: dict[str, Any], fmt: EdgeFormat) -> list[RepairRecord]:
    """Replace NaN and infinite edge numbers and factor values with neutral defaults."""
    names = field_names(fmt)
    replacements = (
        (names.mean, NEUTRAL_MEAN),
        (names.std, NEUTRAL_STD),
        (names.existence, NEUTRAL_EXISTENCE),
    )
    repairs: list[RepairRecord] = []
    for edge in graph_edges(graph):
        for name, neutral in replacements:
            if name is None or not is_non_finite_number(edge.get(name)):
                continue
            old = edge[name]
            edge[name] = neutral
            repairs.append(RepairRecord("NAN_VALUE", edge_path(edge, f".{name}"), f"Replaced {old} with {neutral}"))

    for node in graph_nodes(graph):
        if node.get("kind") != NodeKind.FACTOR.value:
            continue
        data = node.get("data")
        if isinstance(data, dict) and is_non_finite_number(data.get("value")):
            old = data["value"]
            data["value"] = NEUTRAL_FACTOR_VALUE
            repairs.append(
                RepairRecord(
                    "NAN_VALUE",
                    node_path(str(node.get("id")), ".data.value"),
                    f"Replaced {old} with {NEUTRAL_FACTOR_VALUE}",
                )
            )
    return repairs


def fix_sign_mismatch(graph: dict[str, Any], fmt: EdgeFormat) -> list[RepairRecord]:
    """Make the sign of each edge mean agree with ``effect_direction``.

    A stated direction wins over the mean: a positive edge with a negative
    mean is flipped and vice versa. A negative direction on a zero mean
    cannot be honoured by a flip, so the direction becomes positive. An
    edge without a direction takes it from the sign of its mean.
    """
    mean_name = field_names(fmt).mean
    repairs: list[RepairRecord] = []
    for edge in graph_edges(graph):
        direction = edge.get("effect_direction")
        mean = edge_mean(edge, fmt)
        if isinstance(mean, bool) or not isinstance(mean, (int, float)) or is_non_finite_number(mean):
            continue
        if direction is None:
            derived = "negative" if mean < 0 else "positive"
            edge["effect_direction"] = derived
            repairs.append(
                RepairRecord(
                    "SIGN_MISMATCH",
                    edge_path(edge, ".effect_direction"),
                    f'Set missing effect_direction to "{derived}" from mean {mean}',
                )
            )
            continue
        negative = direction == "negative"
        if negative and mean == 0:
            edge["effect_direction"] = "positive"
            repairs.append(
                RepairRecord(
                    "SIGN_MISMATCH",
                    edge_path(edge, ".effect_direction"),
                    'Set effect_direction from "negative" to "positive" for zero mean',
                )
            )
        elif (negative and mean > 0) or (not negative and mean < 0):
            set_edge_mean(edge, fmt, -mean)
            repairs.append(
                RepairRecord(
                    "SIGN_MISMATCH",
                    edge_path(edge, f".{mean_name}"),
                    f'Flipped mean from {mean} to {-mean} to match effect_direction="{direction}"',
                )
            )
    return repairs


def apply_bucket_a(graph: dict[str, Any], fmt: EdgeFormat) -> list[RepairRecord]:
    """Run every unconditional fix over ``graph`` in place."""
    repairs: list[RepairRecord] = []
    repairs.extend(remove_dangling_edges(graph))
    repairs.extend(remove_goal_outgoing(graph))
    repairs.extend(remove_decision_incoming(graph))
    repairs.extend(lock_edge_formats(graph, fmt))
    repairs.extend(canonicalize_structural_edges(graph, fmt))
    repairs.extend(fix_non_finite_values(graph, fmt))
    repairs.extend(fix_sign_mismatch(graph, fmt))
    return repairs


# =============================================================================
# Bucket B
# =============================================================================


def cited_nodes(violations: Iterable[Violation]) -> dict[str, set[str]]:
    """Map each Bucket B code to the node ids its violations name."""
    cited: dict[str, set[str]] = defaultdict(set)
    for violation in violations:
        if violation.code not in BUCKET_B_CODES:
            continue
        node_id = violation.node_id
        if node_id is not None:
            cited[violation.code].add(node_id)
    return cited


def _cited_factors(graph: Mapping[str, Any], node_ids: set[str]) -> list[dict[str, Any]]:
    return [
        node
        for node in graph_nodes(graph)
        if node.get("id") in node_ids and node.get("kind") == NodeKind.FACTOR.value
    ]


def fix_category_mismatch(graph: dict[str, Any], node_ids: set[str]) -> list[RepairRecord]:
    index = GraphIndex(graph)
    repairs: list[RepairRecord] = []
    for node in _cited_factors(graph, node_ids):
        node_id = node["id"]
        targeted = any(index.kind_of(source) == NodeKind.OPTION.value for source in index.sources_of(node_id))
        category = FactorCategory.CONTROLLABLE.value if targeted else FactorCategory.EXTERNAL.value
        if node.get("category") == category:
            continue
        previous = node.get("category")
        node["category"] = category
        repairs.append(
            RepairRecord(
                "CATEGORY_MISMATCH",
                node_path(node_id, ".category"),
                f"Set category from {previous!r} to {category!r} based on option edges",
            )
        )
    return repairs


def fix_controllable_missing_data(graph: dict[str, Any], node_ids: set[str]) -> list[RepairRecord]:
    repairs: list[RepairRecord] = []
    for node in _cited_factors(graph, node_ids):
        data = node.get("data")
        if not isinstance(data, dict):
            data = {}
            node["data"] = data
        filled = []
        for name, default in CONTROLLABLE_DEFAULTS:
            if name not in data:
                data[name] = list(default) if isinstance(default, list) else default
                filled.append(name)
        if filled:
            repairs.append(
                RepairRecord(
                    "CONTROLLABLE_MISSING_DATA",
                    node_path(node["id"], ".data"),
                    f"Filled missing {', '.join(filled)}",
                )
            )
    return repairs


def fix_observable_missing_data(graph: dict[str, Any], node_ids: set[str]) -> list[RepairRecord]:
    repairs: list[RepairRecord] = []
    for node in _cited_factors(graph, node_ids):
        data = node.get("data")
        if not isinstance(data, dict):
            data = {}
            node["data"] = data
        filled = []
        observed = data.get("observed_state")
        if not isinstance(observed, dict):
            observed = {}
            data["observed_state"] = observed
        if "value" not in observed:
            observed["value"] = NEUTRAL_FACTOR_VALUE
            filled.append("observed_state.value")
        if "value" in data and "extractionType" not in data:
            data["extractionType"] = "observed"
            filled.append("extractionType")
        if filled:
            repairs.append(
                RepairRecord(
                    "OBSERVABLE_MISSING_DATA",
                    node_path(node["id"], ".data"),
                    f"Filled missing {', '.join(filled)}",
                )
            )
    return repairs


def fix_observable_extra_data(
    graph: dict[str, Any], node_ids: set[str]
) -> tuple[list[RepairRecord], list[FieldDeletion]]:
    repairs: list[RepairRecord] = []
    deletions: list[FieldDeletion] = []
    for node in _cited_factors(graph, node_ids):
        removed = strip_data_fields(
            node, OBSERVABLE_FORBIDDEN, stage=STAGE, reason="OBSERVABLE_EXTRA_DATA", clear_empty=False
        )
        if removed:
            deletions.extend(removed)
            repairs.append(
                RepairRecord(
                    "OBSERVABLE_EXTRA_DATA",
                    node_path(node["id"], ".data"),
                    f"Removed {', '.join(item.field for item in removed)}",
                )
            )
    return repairs, deletions


def fix_external_has_data(
    graph: dict[str, Any], node_ids: set[str]
) -> tuple[list[RepairRecord], list[FieldDeletion]]:
    repairs: list[RepairRecord] = []
    deletions: list[FieldDeletion] = []
    for node in _cited_factors(graph, node_ids):
        removed = strip_data_fields(
            node, EXTERNAL_FORBIDDEN, stage=STAGE, reason="EXTERNAL_HAS_DATA", clear_empty=True
        )
        if removed:
            deletions.extend(removed)
            repairs.append(
                RepairRecord(
                    "EXTERNAL_HAS_DATA",
                    node_path(node["id"], ".data"),
                    f"Removed {', '.join(item.field for item in removed)}",
                )
            )
    return repairs, deletions


def apply_bucket_b(
    graph: dict[str, Any], violations: Iterable[Violation]
) -> tuple[list[RepairRecord], list[FieldDeletion], tuple[str, ...]]:
    """Apply citation-gated factor fixes.

    Returns:
        Tuple of (repairs, field deletions, cited Bucket B codes).
    """
    cited = cited_nodes(violations)
    repairs: list[RepairRecord] = []
    deletions: list[FieldDeletion] = []

    if cited.get("CATEGORY_MISMATCH"):
        repairs.extend(fix_category_mismatch(graph, cited["CATEGORY_MISMATCH"]))
    if cited.get("CONTROLLABLE_MISSING_DATA"):
        repairs.extend(fix_controllable_missing_data(graph, cited["CONTROLLABLE_MISSING_DATA"]))
    if cited.get("OBSERVABLE_MISSING_DATA"):
        repairs.extend(fix_observable_missing_data(graph, cited["OBSERVABLE_MISSING_DATA"]))
    if cited.get("OBSERVABLE_EXTRA_DATA"):
        extra_repairs, extra_deletions = fix_observable_extra_data(graph, cited["OBSERVABLE_EXTRA_DATA"])
        repairs.extend(extra_repairs)
        deletions.extend(extra_deletions)
    if cited.get("EXTERNAL_HAS_DATA"):
        ext_repairs, ext_deletions = fix_external_has_data(graph, cited["EXTERNAL_HAS_DATA"])
        repairs.extend(ext_repairs)
        deletions.extend(ext_deletions)

    return repairs, deletions, tuple(sorted(cited))


# =============================================================================
# Factor→goal split
# =============================================================================


def split_factor_goal_edges(graph: dict[str, Any], fmt: EdgeFormat) -> list[RepairRecord]:
    """Route every factor→goal edge through a synthetic outcome node.

    The factor→outcome edge keeps the original numbers; the outcome→goal
    edge gets moderate defaults. One outcome node is created per factor.
    """
    nodes = graph_nodes(graph)
    edges = graph_edges(graph)
    by_id = {node.get("id"): node for node in nodes}
    pairs = {(edge.get("from"), edge.get("to")) for edge in edges}
    names = field_names(fmt)

    kept: list[dict[str, Any]] = []
    repairs: list[RepairRecord] = []
    for edge in edges:
        source = by_id.get(edge.get("from"))
        target = by_id.get(edge.get("to"))
        if not (
            source is not None
            and target is not None
            and source.get("kind") == NodeKind.FACTOR.value
            and target.get("kind") == NodeKind.GOAL.value
        ):
            kept.append(edge)
            continue

        factor_id = source["id"]
        outcome_id = f"out_{factor_id}_impact"
        existing = by_id.get(outcome_id)
        if existing is not None and existing.get("kind") != NodeKind.OUTCOME.value:
            kept.append(edge)
            continue
        if existing is None:
            outcome = {
                "id": outcome_id,
                "kind": NodeKind.OUTCOME.value,
                "label": f"{source.get('label') or factor_id} Impact",
            }
            nodes.append(outcome)
            by_id[outcome_id] = outcome

        provenance = {"source": "synthetic", "quote": "Split factor→goal into factor→outcome→goal"}
        if (factor_id, outcome_id) not in pairs:
            mean = edge.get(names.mean) if names.mean else None
            std = edge.get(names.std) if names.std else None
            existence = edge.get(names.existence) if names.existence else None
            kept.append(
                patch_edge_numeric(
                    {
                        "from": factor_id,
                        "to": outcome_id,
                        "effect_direction": edge.get("effect_direction", "positive"),
                        "origin": "repair",
                        "provenance": dict(provenance),
                    },
                    fmt,
                    mean=NEUTRAL_MEAN if mean is None else mean,
                    std=SPLIT_STD if std is None else std,
                    existence=SPLIT_EXISTENCE if existence is None else existence,
                )
            )
            pairs.add((factor_id, outcome_id))
        if (outcome_id, target["id"]) not in pairs:
            kept.append(
                patch_edge_numeric(
                    {
                        "from": outcome_id,
                        "to": target["id"],
                        "effect_direction": "positive",
                        "origin": "repair",
                        "provenance": dict(provenance),
                    },
                    fmt,
                    mean=SPLIT_BRIDGE_MEAN,
                    std=SPLIT_STD,
                    existence=SPLIT_EXISTENCE,
                )
            )
            pairs.add((outcome_id, target["id"]))
        repairs.append(
            RepairRecord(
                "FACTOR_GOAL_EDGE_SPLIT",
                edge_path(edge),
                f"Split factor→goal into factor→{outcome_id}→{target['id']} via synthetic outcome node",
            )
        )
    edges[:] = kept
    return repairs


# =============================================================================
# Entry point
# =============================================================================


def run_sweep(
    graph: dict[str, Any],
    violations: list[Violation],
    fmt: EdgeFormat,
    *,
    split_factor_goal: bool = True,
) -> SweepResult:
    """Run Bucket A, Bucket B and the factor→goal split over ``graph`` in place.

    Args:
        graph: Graph to repair; mutated in place.
        violations: Violations cited for this request.
        fmt: Locked edge format.
        split_factor_goal: Whether factor→goal edges are split.

    Returns:
        SweepResult with every repair and field deletion.
    """
    buckets = partition_buckets(violations)
    logger.info(
        "Sweep routing: %d violation(s), bucket A=%d B=%d C=%d",
        len(violations),
        buckets.a,
        buckets.b,
        buckets.c,
    )
    for violation in violations[:30]:
        if violation.code in BUCKET_A_CODES or violation.code in BUCKET_B_CODES:
            action = "fixed"
        else:
            action = "forwarded"
        logger.debug("Violation %s at %s: %s", violation.code, violation.node_id or violation.path, action)

    result = SweepResult(buckets=buckets)
    result.repairs.extend(apply_bucket_a(graph, fmt))
    b_repairs, b_deletions, cited = apply_bucket_b(graph, violations)
    result.repairs.extend(b_repairs)
    result.field_deletions.extend(b_deletions)
    result.cited_b_codes = cited

    if split_factor_goal:
        split = split_factor_goal_edges(graph, fmt)
        result.repairs.extend(split)
        result.factor_goal_splits = len(split)
        if split:
            logger.info("Split %d factor→goal edge(s) via synthetic outcome nodes", len(split))

    return result
