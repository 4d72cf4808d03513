"""Deterministic structural validator.

Local implementation of the structural validator contract
(``{graph} -> {ok, violations}``). It is used whenever no external
validator is configured, and as the fallback when the external one times
out. Checks are grouped in tiers:

1. Structural counts and references
2. Topology (goal/decision edges, edge-kind legality, cycles)
3. Reachability (from the decision, to the goal)
4. Factor data consistency per inferred category
5. Semantic integrity (effect paths, duplicate options, goal numbers)
6. Numeric sanity (non-finite values, sign/direction agreement)
7. Advisory warnings

Factor categories are inferred from structure: a factor targeted by an
option is controllable; otherwise it is observable when it carries a
value and external when it does not.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..edge_format import (
    detect_edge_format,
    edge_mean,
    field_names,
    is_canonical_structural,
    is_finite_number,
    is_non_finite_number,
)
from ..model import (
    CYCLE_CODE,
    EdgeFormat,
    FactorCategory,
    GraphIndex,
    NodeKind,
    Severity,
    Violation,
    coerce_violations,
    edge_path,
    graph_edges,
    graph_nodes,
    node_path,
)
from .topology import find_cycles

NODE_LIMIT = 50
EDGE_LIMIT = 200
MIN_OPTIONS = 2
MAX_OPTIONS = 6
LOW_CONFIDENCE_THRESHOLD = 0.3
LOW_STD_THRESHOLD = 0.05

# (from_kind, to_kind, required target category)
ALLOWED_EDGES: tuple[tuple[str, str, frozenset[str] | None], ...] = (
    ("decision", "option", None),
    ("option", "factor", frozenset({"controllable"})),
    ("factor", "factor", frozenset({"observable", "external"})),
    ("factor", "outcome", None),
    ("factor", "risk", None),
    ("outcome", "goal", None),
    ("risk", "goal", None),
)

_REACHABILITY_EXEMPT_KINDS = frozenset({NodeKind.ACTION.value, NodeKind.CONSTRAINT.value})

GOAL_NUMBER_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"goal of (?:reaching |achieving )?[£$€]?[\d,]+[km]?",
        r"target (?:of )?[£$€][\d,]+[km]?",
        r"(?:revenue|sales|MRR|ARR)\s*target\s*(?:of\s*)?[\d,]+[km]?",
        r"target\s*(?:of\s*)?[\d,]+[km]?\s*(?:revenue|sales|MRR|ARR)",
        r"^[£$€][\d,]+[km]?\s*(?:MRR|ARR|revenue|sales)?$",
        r"^\d+[km]\s*(?:MRR|ARR|revenue|sales|target|goal)",
        r"[£$€]\d+[km]?\s*(?:revenue|sales)?\s*target",
    )
)

GOAL_REFERENCE_EXCLUSIONS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(?:share|fraction|portion|percentage|%)\s+of\s+[£$€]?[\d,]+[km]?\s*(?:target|goal)?",
        r"progress\s+(?:toward|towards|to)\s+[£$€]?[\d,]+[km]?",
        r"(?:relative|compared)\s+to\s+[£$€]?[\d,]+[km]?\s*(?:target|goal)?",
        r"as\s+(?:%|percent|percentage|fraction|share)\s+of\s+[£$€]?[\d,]+[km]?",
    )
)


def is_goal_number_label(label: str) -> bool:
    """True when a factor label reads like a goal target ("£20k MRR")."""
    if not label:
        return False
    if any(pattern.search(label) for pattern in GOAL_REFERENCE_EXCLUSIONS):
        return False
    return any(pattern.search(label) for pattern in GOAL_NUMBER_PATTERNS)


@dataclass(frozen=True, slots=True)
class FactorInfo:
    category: str
    explicit: str | None
    has_option_edge: bool


@dataclass(frozen=True, slots=True)
class StructuralValidation:
    """Validator response: ``ok`` is true when no error-severity violation exists."""

    ok: bool
    violations: tuple[Violation, ...]

    @property
    def errors(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == Severity.WARNING]

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "violations": [v.to_dict() for v in self.violations]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StructuralValidation:
        violations = tuple(coerce_violations(data.get("violations") or []))
        ok = data.get("ok")
        if not isinstance(ok, bool):
            ok = not any(v.severity == Severity.ERROR for v in violations)
        return cls(ok=ok, violations=violations)


def infer_factor_categories(graph: Mapping[str, Any], index: GraphIndex) -> dict[str, FactorInfo]:
    infos: dict[str, FactorInfo] = {}
    for node in graph_nodes(graph):
        if node.get("kind") != NodeKind.FACTOR.value:
            continue
        node_id = node["id"]
        has_option_edge = any(index.kind_of(src) == NodeKind.OPTION.value for src in index.sources_of(node_id))
        data = node.get("data") if isinstance(node.get("data"), dict) else {}
        if has_option_edge:
            category = FactorCategory.CONTROLLABLE.value
        elif data.get("value") is not None:
            category = FactorCategory.OBSERVABLE.value
        else:
            category = FactorCategory.EXTERNAL.value
        explicit = node.get("category") if isinstance(node.get("category"), str) else None
        infos[node_id] = FactorInfo(category=category, explicit=explicit, has_option_edge=has_option_edge)
    return infos


def _issue(
    severity: Severity,
    code: str,
    message: str,
    *,
    node_id: str | None = None,
    path: str | None = None,
    **details: Any,
) -> Violation:
    return Violation(
        code=code,
        severity=severity,
        message=message,
        affected_node_id=node_id,
        path=path if path is not None else (node_path(node_id) if node_id else None),
        details=details,
    )


def _error(code: str, message: str, **kwargs: Any) -> Violation:
    return _issue(Severity.ERROR, code, message, **kwargs)


def _warning(code: str, message: str, **kwargs: Any) -> Violation:
    return _issue(Severity.WARNING, code, message, **kwargs)


# =============================================================================
# Tier 1: Structural
# =============================================================================


def _validate_structure(graph: Mapping[str, Any], index: GraphIndex) -> list[Violation]:
    issues: list[Violation] = []
    goals = index.ids_of_kind(NodeKind.GOAL)
    decisions = index.ids_of_kind(NodeKind.DECISION)
    options = index.ids_of_kind(NodeKind.OPTION)
    bridges = index.ids_of_kind(NodeKind.OUTCOME) + index.ids_of_kind(NodeKind.RISK)

    if len(goals) != 1:
        issues.append(
            _error("MISSING_GOAL", f"Graph must have exactly one goal node, found {len(goals)}", count=len(goals))
        )
    if len(decisions) != 1:
        issues.append(
            _error(
                "MISSING_DECISION",
                f"Graph must have exactly one decision node, found {len(decisions)}",
                count=len(decisions),
            )
        )
    if not MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
        issues.append(
            _error(
                "INSUFFICIENT_OPTIONS",
                f"Graph must have {MIN_OPTIONS}-{MAX_OPTIONS} options, found {len(options)}",
                count=len(options),
            )
        )
    if not bridges:
        issues.append(_error("MISSING_BRIDGE", "Graph must have at least one outcome or risk node"))

    nodes = graph_nodes(graph)
    edges = graph_edges(graph)
    if len(nodes) > NODE_LIMIT:
        issues.append(
            _error("NODE_LIMIT_EXCEEDED", f"Graph has {len(nodes)} nodes (limit {NODE_LIMIT})", count=len(nodes))
        )
    if len(edges) > EDGE_LIMIT:
        issues.append(
            _error("EDGE_LIMIT_EXCEEDED", f"Graph has {len(edges)} edges (limit {EDGE_LIMIT})", count=len(edges))
        )

    for edge in edges:
        missing = [end for end in (edge.get("from"), edge.get("to")) if end not in index]
        if missing:
            issues.append(
                _error(
                    "INVALID_EDGE_REF",
                    f"Edge references missing node(s): {', '.join(map(str, missing))}",
                    path=edge_path(edge),
                    missing=[str(m) for m in missing],
                )
            )
    return issues


# =============================================================================
# Tier 2: Topology
# =============================================================================


def _validate_topology(graph: Mapping[str, Any], index: GraphIndex, factors: dict[str, FactorInfo]) -> list[Violation]:
    issues: list[Violation] = []
    for edge in graph_edges(graph):
        source, target = edge.get("from"), edge.get("to")
        from_kind, to_kind = index.kind_of(source), index.kind_of(target)
        if from_kind is None or to_kind is None:
            continue
        if from_kind == NodeKind.GOAL.value:
            issues.append(_error("GOAL_HAS_OUTGOING", f'Goal "{source}" has an outgoing edge', path=edge_path(edge)))
        if to_kind == NodeKind.DECISION.value:
            issues.append(
                _error("DECISION_HAS_INCOMING", f'Decision "{target}" has an incoming edge', path=edge_path(edge))
            )

        allowed = False
        for rule_from, rule_to, categories in ALLOWED_EDGES:
            if rule_from != from_kind or rule_to != to_kind:
                continue
            if categories is not None and (target not in factors or factors[target].category not in categories):
                continue
            allowed = True
            break
        if not allowed:
            issues.append(
                _error(
                    "INVALID_EDGE_TYPE",
                    f"Invalid edge from {from_kind} to {to_kind}",
                    path=edge_path(edge),
                    from_kind=from_kind,
                    to_kind=to_kind,
                )
            )

    self_loops = sorted({str(e.get("from")) for e in graph_edges(graph) if e.get("from") == e.get("to")})
    for node_id in self_loops:
        issues.append(_error(CYCLE_CODE, f'Node "{node_id}" has an edge to itself', node_id=node_id, cycle=[node_id]))
    for cycle in find_cycles(graph_edges(graph)):
        issues.append(
            _error(
                CYCLE_CODE,
                "Graph contains a cycle: " + " → ".join([*cycle, cycle[0]]),
                node_id=cycle[0],
                cycle=list(cycle),
            )
        )
    return issues


# =============================================================================
# Tier 3: Reachability
# =============================================================================


def _validate_reachability(index: GraphIndex, factors: dict[str, FactorInfo]) -> list[Violation]:
    issues: list[Violation] = []
    decisions = index.ids_of_kind(NodeKind.DECISION)
    goals = index.ids_of_kind(NodeKind.GOAL)
    goal_reaching = index.goal_reaching() if goals else set()

    if decisions:
        from_decision = index.reachable_from(decisions)
        for node_id, kind in zip(index.node_ids, index.kinds):
            if node_id in from_decision or kind in _REACHABILITY_EXEMPT_KINDS:
                continue
            if kind == NodeKind.FACTOR.value and not factors[node_id].has_option_edge and node_id in goal_reaching:
                continue
            if kind in (NodeKind.OUTCOME.value, NodeKind.RISK.value):
                continue
            issues.append(
                _error(
                    "UNREACHABLE_FROM_DECISION",
                    f'Node "{node_id}" is not reachable from the decision',
                    node_id=node_id,
                )
            )

    if goals:
        for node_id, kind in zip(index.node_ids, index.kinds):
            if kind in (NodeKind.DECISION.value, NodeKind.GOAL.value) or kind in _REACHABILITY_EXEMPT_KINDS:
                continue
            if node_id not in goal_reaching:
                issues.append(
                    _error("NO_PATH_TO_GOAL", f'Node "{node_id}" has no directed path to goal', node_id=node_id)
                )
    return issues


# =============================================================================
# Tier 4: Factor data
# =============================================================================


def _validate_factor_data(graph: Mapping[str, Any], factors: dict[str, FactorInfo]) -> list[Violation]:
    issues: list[Violation] = []
    for node in graph_nodes(graph):
        info = factors.get(node.get("id"))
        if info is None:
            continue
        node_id = node["id"]
        data = node.get("data") if isinstance(node.get("data"), dict) else {}

        if info.category == FactorCategory.CONTROLLABLE.value:
            required = ("value", "extractionType", "factor_type", "uncertainty_drivers")
            missing = [name for name in required if data.get(name) is None]
            if missing:
                issues.append(
                    _error(
                        "CONTROLLABLE_MISSING_DATA",
                        f'Controllable factor "{node_id}" missing required data: {", ".join(missing)}',
                        node_id=node_id,
                        missing=missing,
                    )
                )
        elif info.category == FactorCategory.OBSERVABLE.value:
            missing = [name for name in ("value", "extractionType") if data.get(name) is None]
            if missing:
                issues.append(
                    _error(
                        "OBSERVABLE_MISSING_DATA",
                        f'Observable factor "{node_id}" missing required data: {", ".join(missing)}',
                        node_id=node_id,
                        missing=missing,
                    )
                )
            extra = [name for name in ("factor_type", "uncertainty_drivers") if name in data]
            if extra:
                issues.append(
                    _error(
                        "OBSERVABLE_EXTRA_DATA",
                        f'Observable factor "{node_id}" should not have: {", ".join(extra)}',
                        node_id=node_id,
                        extra=extra,
                    )
                )
        else:
            extra = [name for name in ("value", "factor_type", "uncertainty_drivers") if name in data]
            if extra:
                issues.append(
                    _error(
                        "EXTERNAL_HAS_DATA",
                        f'External factor "{node_id}" should not have: {", ".join(extra)}',
                        node_id=node_id,
                        extra=extra,
                    )
                )

        if info.explicit and info.explicit != info.category:
            issues.append(
                _error(
                    "CATEGORY_MISMATCH",
                    f'Factor "{node_id}" declares category "{info.explicit}" but structure indicates "{info.category}"',
                    node_id=node_id,
                    explicit=info.explicit,
                    inferred=info.category,
                )
            )
        if info.category == FactorCategory.CONTROLLABLE.value and data.get("uncertainty_drivers") == []:
            issues.append(
                _warning(
                    "EMPTY_UNCERTAINTY_DRIVERS",
                    f'Controllable factor "{node_id}" has no uncertainty drivers',
                    node_id=node_id,
                )
            )
    return issues


# =============================================================================
# Tier 5: Semantic
# =============================================================================


def intervention_signature(interventions: Mapping[str, Any]) -> str:
    parts = []
    for factor_id in sorted(interventions):
        value = interventions[factor_id]
        rendered = f"{value:.4f}" if is_finite_number(value) else str(value)
        parts.append(f"{factor_id}:{rendered}")
    return "|".join(parts)


def _validate_semantic(
    graph: Mapping[str, Any], index: GraphIndex, factors: dict[str, FactorInfo], fmt: EdgeFormat
) -> list[Violation]:
    issues: list[Violation] = []
    goals = index.ids_of_kind(NodeKind.GOAL)
    goal_reaching = index.goal_reaching() if goals else set()
    nodes_by_id = {node.get("id"): node for node in graph_nodes(graph)}
    options = index.ids_of_kind(NodeKind.OPTION)

    if goals:
        for option_id in options:
            targets = index.targets_of(option_id)
            effective = [
                t
                for t in targets
                if t in factors and factors[t].category == FactorCategory.CONTROLLABLE.value and t in goal_reaching
            ]
            if not effective:
                issues.append(
                    _error(
                        "NO_EFFECT_PATH",
                        f'Option "{option_id}" has no controllable factors with path to goal',
                        node_id=option_id,
                        targets=targets,
                    )
                )

    signatures: dict[str, list[str]] = {}
    for option_id in options:
        data = nodes_by_id[option_id].get("data")
        interventions = data.get("interventions") if isinstance(data, dict) else None
        if not isinstance(interventions, dict):
            continue
        signatures.setdefault(intervention_signature(interventions), []).append(option_id)

        for factor_id in interventions:
            target_kind = index.kind_of(factor_id)
            if target_kind != NodeKind.FACTOR.value:
                reason = "non-existent node" if target_kind is None else f"non-factor node (kind: {target_kind})"
                issues.append(
                    _error(
                        "INVALID_INTERVENTION_REF",
                        f'Option "{option_id}" intervention references {reason}: {factor_id}',
                        node_id=option_id,
                        path=node_path(option_id, ".data.interventions"),
                        factor_id=factor_id,
                    )
                )
    for signature, option_ids in signatures.items():
        if len(option_ids) > 1:
            issues.append(
                _error(
                    "OPTIONS_IDENTICAL",
                    f"Options have identical intervention signatures: {', '.join(option_ids)}",
                    node_id=option_ids[0],
                    option_ids=option_ids,
                    signature=signature,
                )
            )

    for factor_id, info in factors.items():
        label = nodes_by_id[factor_id].get("label") or factor_id
        declared_controllable = info.explicit == FactorCategory.CONTROLLABLE.value
        if is_goal_number_label(str(label)) and not (info.has_option_edge or declared_controllable):
            issues.append(
                _error(
                    "GOAL_NUMBER_AS_FACTOR",
                    f'Factor "{label}" appears to be a goal target value, not a causal factor',
                    node_id=factor_id,
                    label=label,
                )
            )

    if fmt != EdgeFormat.NONE:
        for edge in graph_edges(graph):
            pair = (index.kind_of(edge.get("from")), index.kind_of(edge.get("to")))
            if pair == (NodeKind.OPTION.value, NodeKind.FACTOR.value) and not is_canonical_structural(edge, fmt):
                issues.append(
                    _error(
                        "STRUCTURAL_EDGE_NOT_CANONICAL_ERROR",
                        "Option→factor edge must carry canonical structural values",
                        path=edge_path(edge),
                    )
                )
            elif pair == (NodeKind.DECISION.value, NodeKind.OPTION.value) and not is_canonical_structural(edge, fmt):
                issues.append(
                    _warning(
                        "STRUCTURAL_EDGE_NOT_CANONICAL",
                        "Decision→option edge does not carry canonical structural values",
                        path=edge_path(edge),
                    )
                )
    return issues


# =============================================================================
# Tier 6 and 7: Numeric and advisory
# =============================================================================


def _validate_numeric(graph: Mapping[str, Any], index: GraphIndex, fmt: EdgeFormat) -> list[Violation]:
    issues: list[Violation] = []
    names = field_names(fmt)
    structural_pairs = {
        (NodeKind.DECISION.value, NodeKind.OPTION.value),
        (NodeKind.OPTION.value, NodeKind.FACTOR.value),
    }
    for edge in graph_edges(graph):
        for name in (names.mean, names.std, names.existence):
            if name is not None and is_non_finite_number(edge.get(name)):
                issues.append(
                    _error("NAN_VALUE", f"Edge field {name} is not a finite number", path=edge_path(edge, f".{name}"))
                )

        mean = edge_mean(edge, fmt)
        direction = edge.get("effect_direction")
        if is_finite_number(mean) and direction is not None:
            if (direction == "negative" and mean >= 0) or (direction != "negative" and mean < 0):
                issues.append(
                    _error(
                        "SIGN_MISMATCH",
                        f'Edge mean {mean} contradicts effect_direction="{direction}"',
                        path=edge_path(edge),
                    )
                )

        pair = (index.kind_of(edge.get("from")), index.kind_of(edge.get("to")))
        existence = edge.get(names.existence) if names.existence else None
        if is_finite_number(existence) and not 0 <= existence <= 1:
            issues.append(
                _warning("PROBABILITY_OUT_OF_RANGE", f"Edge existence {existence} outside [0, 1]", path=edge_path(edge))
            )
        if pair in structural_pairs:
            continue
        if is_finite_number(existence) and existence < LOW_CONFIDENCE_THRESHOLD:
            issues.append(
                _warning(
                    "LOW_EDGE_CONFIDENCE",
                    f"Edge existence {existence} below {LOW_CONFIDENCE_THRESHOLD}",
                    path=edge_path(edge),
                )
            )
        std = edge.get(names.std) if names.std else None
        if is_finite_number(std) and std < LOW_STD_THRESHOLD:
            issues.append(
                _warning(
                    "LOW_STD_NON_STRUCTURAL",
                    f"Causal edge std {std} below {LOW_STD_THRESHOLD}",
                    path=edge_path(edge),
                )
            )
        if is_finite_number(mean) and pair == (NodeKind.OUTCOME.value, NodeKind.GOAL.value) and mean < 0:
            issues.append(
                _warning("OUTCOME_NEGATIVE_POLARITY", "Outcome→goal edge has negative strength", path=edge_path(edge))
            )
        if is_finite_number(mean) and pair == (NodeKind.RISK.value, NodeKind.GOAL.value) and mean > 0:
            issues.append(
                _warning("RISK_POSITIVE_POLARITY", "Risk→goal edge has positive strength", path=edge_path(edge))
            )

    for node in graph_nodes(graph):
        data = node.get("data")
        if node.get("kind") != NodeKind.FACTOR.value or not isinstance(data, dict):
            continue
        if is_non_finite_number(data.get("value")):
            issues.append(
                _error("NAN_VALUE", "Factor value is not a finite number", path=node_path(node["id"], ".data.value"))
            )
    return issues


def validate_graph_structure(graph: Mapping[str, Any], fmt: EdgeFormat | None = None) -> StructuralValidation:
    """Run every validation tier over ``graph``.

    Args:
        graph: Graph to validate; never mutated.
        fmt: Edge format; detected when omitted.

    Returns:
        StructuralValidation with violations in tier order.
    """
    if fmt is None:
        fmt = detect_edge_format(graph_edges(graph))
    index = GraphIndex(graph)
    factors = infer_factor_categories(graph, index)

    violations: list[Violation] = []
    violations.extend(_validate_structure(graph, index))
    violations.extend(_validate_topology(graph, index, factors))
    violations.extend(_validate_reachability(index, factors))
    violations.extend(_validate_factor_data(graph, factors))
    violations.extend(_validate_semantic(graph, index, factors, fmt))
    violations.extend(_validate_numeric(graph, index, fmt))

    ok = not any(v.severity == Severity.ERROR for v in violations)
    return StructuralValidation(ok=ok, violations=tuple(violations))


class LocalStructuralValidator:
    """Async wrapper exposing ``validate_graph_structure`` as a validator adapter."""

    async def validate(self, graph: Mapping[str, Any]) -> StructuralValidation:
        return validate_graph_structure(graph)
