"""Field-preservation contracts of the deterministic repair stages.

Each stage publishes, as plain data, which fields it may drop, which it
may modify, whether it may remove whole nodes or edges and whether it may
clear the ``data`` object of an external factor. Any field present on the
stage input that is not covered by these tables must come out unchanged.

``check_contract_compliance`` compares a deep-copied baseline with the
stage output and reports every undeclared change. Keys prefixed with
``_sentinel_`` are canaries: tests plant them at every depth and they must
survive every stage, whatever the tables allow.

Contract violations are defects, not runtime outcomes. The orchestrator
raises ``FieldContractError`` when assertions are enabled and otherwise
logs them and lists them in the repair summary.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..model import FactorCategory, NodeKind, graph_edges, graph_nodes

SENTINEL_PREFIX = "_sentinel_"

V1_EDGE_FIELDS = ("strength_mean", "strength_std", "belief_exists")
LEGACY_EDGE_FIELDS = ("weight", "belief")


class ViolationKind(str, Enum):
    UNEXPECTED_DROP = "unexpected_drop"
    UNEXPECTED_MODIFICATION = "unexpected_modification"
    CANARY_LOST = "canary_lost"


@dataclass(frozen=True, slots=True)
class FieldScope:
    """Field names per location in a graph."""

    top_level: tuple[str, ...] = ()
    node: tuple[str, ...] = ()
    node_data: tuple[str, ...] = ()
    edge: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AllowedRemovals:
    nodes: bool = False
    edges: bool = False


@dataclass(frozen=True, slots=True)
class AllowedDataClear:
    external_factors: bool = False


@dataclass(frozen=True, slots=True)
class StageContract:
    """Declared field behaviour of one pipeline stage."""

    name: str
    allowed_drops: FieldScope = FieldScope()
    allowed_modifications: FieldScope = FieldScope()
    preservation_guarantees: FieldScope = FieldScope()
    allowed_removals: AllowedRemovals = AllowedRemovals()
    allowed_data_clear: AllowedDataClear = AllowedDataClear()

    def to_dict(self) -> dict[str, Any]:
        def scope(value: FieldScope) -> dict[str, list[str]]:
            return {
                "top_level": list(value.top_level),
                "node": list(value.node),
                "node_data": list(value.node_data),
                "edge": list(value.edge),
            }

        return {
            "name": self.name,
            "allowed_drops": scope(self.allowed_drops),
            "allowed_modifications": scope(self.allowed_modifications),
            "preservation_guarantees": scope(self.preservation_guarantees),
            "allowed_removals": {"nodes": self.allowed_removals.nodes, "edges": self.allowed_removals.edges},
            "allowed_data_clear": {"external_factors": self.allowed_data_clear.external_factors},
        }


@dataclass(frozen=True, slots=True)
class ContractViolation:
    kind: ViolationKind
    location: str
    field: str
    stage: str
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": self.kind.value,
            "location": self.location,
            "field": self.field,
            "stage": self.stage,
            "detail": self.detail,
        }


class FieldContractError(AssertionError):
    """Raised when a stage breaks its declared field-preservation contract."""

    def __init__(self, stage: str, violations: list[ContractViolation]) -> None:
        self.stage = stage
        self.violations = violations
        lines = [f"{v.kind.value} at {v.location}.{v.field}" for v in violations[:10]]
        super().__init__(f"Stage {stage!r} broke its field contract:\n  - " + "\n  - ".join(lines))


# =============================================================================
# Stage contracts
# =============================================================================

_IDENTITY = FieldScope(
    top_level=("meta",),
    node=("id", "kind", "label"),
    edge=("id", "from", "to", "provenance"),
)

SWEEP_CONTRACT = StageContract(
    name="deterministic-sweep",
    allowed_drops=FieldScope(
        node_data=("value", "factor_type", "uncertainty_drivers"),
        edge=(*V1_EDGE_FIELDS, *LEGACY_EDGE_FIELDS),
    ),
    allowed_modifications=FieldScope(
        node=("category",),
        node_data=("value", "extractionType", "factor_type", "observed_state"),
        edge=(*V1_EDGE_FIELDS, *LEGACY_EDGE_FIELDS, "effect_direction"),
    ),
    preservation_guarantees=_IDENTITY,
    allowed_removals=AllowedRemovals(nodes=False, edges=True),
    allowed_data_clear=AllowedDataClear(external_factors=True),
)

UNREACHABLE_CONTRACT = StageContract(
    name="unreachable-factors",
    allowed_drops=FieldScope(node_data=("value", "factor_type", "uncertainty_drivers")),
    allowed_modifications=FieldScope(node=("category", "droppable", "prior")),
    preservation_guarantees=_IDENTITY,
    allowed_data_clear=AllowedDataClear(external_factors=True),
)

STATUS_QUO_CONTRACT = StageContract(
    name="status-quo",
    allowed_modifications=FieldScope(node=("droppable",)),
    preservation_guarantees=_IDENTITY,
)

GUARDS_CONTRACT = StageContract(
    name="graph-guards",
    preservation_guarantees=_IDENTITY,
    allowed_removals=AllowedRemovals(nodes=False, edges=True),
)

STAGE_CONTRACTS: dict[str, StageContract] = {
    contract.name: contract
    for contract in (SWEEP_CONTRACT, UNREACHABLE_CONTRACT, STATUS_QUO_CONTRACT, GUARDS_CONTRACT)
}


# =============================================================================
# Compliance check
# =============================================================================


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    return a == b


def _is_container(value: Any) -> bool:
    return isinstance(value, (Mapping, list))


def _missing_canaries(before: Any, after: Any, path: str) -> Iterable[tuple[str, str, str]]:
    """Yield (location, key, detail) for every canary lost under ``before``."""
    if isinstance(before, Mapping):
        after_map = after if isinstance(after, Mapping) else {}
        for key, value in before.items():
            if isinstance(key, str) and key.startswith(SENTINEL_PREFIX):
                if key not in after_map:
                    yield path, key, "canary dropped"
                elif not _same(after_map[key], value):
                    yield path, key, "canary modified"
            elif _is_container(value) and key in after_map:
                yield from _missing_canaries(value, after_map[key], f"{path}.{key}")
    elif isinstance(before, list) and isinstance(after, list):
        for position, (item_before, item_after) in enumerate(zip(before, after)):
            yield from _missing_canaries(item_before, item_after, f"{path}[{position}]")


class _Checker:
    def __init__(self, contract: StageContract) -> None:
        self.contract = contract
        self.violations: list[ContractViolation] = []

    def add(self, kind: ViolationKind, location: str, name: str, detail: str = "") -> None:
        self.violations.append(ContractViolation(kind, location, name, self.contract.name, detail))

    def compare(
        self,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        location: str,
        drops: tuple[str, ...],
        modifications: tuple[str, ...],
        skip: tuple[str, ...] = (),
    ) -> None:
        for key, value in before.items():
            if key in skip:
                continue
            canary = isinstance(key, str) and key.startswith(SENTINEL_PREFIX)
            if key not in after:
                if canary:
                    self.add(ViolationKind.CANARY_LOST, location, key, "canary dropped")
                elif key not in drops:
                    self.add(ViolationKind.UNEXPECTED_DROP, location, key)
                continue
            new = after[key]
            if canary:
                if not _same(new, value):
                    self.add(ViolationKind.CANARY_LOST, location, key, "canary modified")
            elif key in modifications:
                if _is_container(value):
                    self.lost_canaries(value, new, f"{location}.{key}")
            elif _is_container(value):
                self.compare_nested(value, new, location, str(key))
            elif not _same(new, value):
                self.add(ViolationKind.UNEXPECTED_MODIFICATION, location, key, f"{value!r} -> {new!r}")

    def compare_nested(self, before: Any, after: Any, location: str, key: str) -> None:
        """Report every change below a container field no table covers."""
        where = f"{location}.{key}"
        if isinstance(before, Mapping) and isinstance(after, Mapping):
            for name, value in before.items():
                canary = isinstance(name, str) and name.startswith(SENTINEL_PREFIX)
                if name not in after:
                    if canary:
                        self.add(ViolationKind.CANARY_LOST, where, name, "canary dropped")
                        continue
                    self.add(ViolationKind.UNEXPECTED_MODIFICATION, where, name, "nested field dropped")
                    self.lost_canaries(value, {}, f"{where}.{name}")
                elif canary:
                    if not _same(after[name], value):
                        self.add(ViolationKind.CANARY_LOST, where, name, "canary modified")
                elif _is_container(value):
                    self.compare_nested(value, after[name], where, str(name))
                elif not _same(after[name], value):
                    self.add(ViolationKind.UNEXPECTED_MODIFICATION, where, name, f"{value!r} -> {after[name]!r}")
            return
        if isinstance(before, list) and isinstance(after, list) and len(before) == len(after):
            for position, (item_before, item_after) in enumerate(zip(before, after)):
                name = f"{key}[{position}]"
                if _is_container(item_before):
                    self.compare_nested(item_before, item_after, location, name)
                elif not _same(item_after, item_before):
                    self.add(
                        ViolationKind.UNEXPECTED_MODIFICATION, location, name, f"{item_before!r} -> {item_after!r}"
                    )
            return
        self.lost_canaries(before, after, where)
        self.add(ViolationKind.UNEXPECTED_MODIFICATION, location, key, f"{before!r} -> {after!r}")

    def lost_canaries(self, before: Any, after: Any, location: str) -> None:
        for where, name, detail in _missing_canaries(before, after, location):
            self.add(ViolationKind.CANARY_LOST, where, name, detail)

    def guarantee(
        self,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        location: str,
        names: tuple[str, ...],
    ) -> None:
        for name in names:
            if name not in before:
                continue
            if name not in after:
                self.add(ViolationKind.UNEXPECTED_DROP, location, name, "guaranteed field dropped")
            elif not _same(after[name], before[name]):
                self.add(ViolationKind.UNEXPECTED_MODIFICATION, location, name, "guaranteed field changed")


def _edge_key(edge: Mapping[str, Any]) -> Any:
    if "id" in edge:
        return ("id", edge["id"])
    return (edge.get("from"), edge.get("to"))


def _edge_location(edge: Mapping[str, Any]) -> str:
    if "id" in edge:
        return f"edges[{edge['id']}]"
    return f"edges[{edge.get('from')}→{edge.get('to')}]"


def check_contract_compliance(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    contract: StageContract,
    *,
    skip_data_for_node_ids: Iterable[str] = (),
) -> list[ContractViolation]:
    """Compare a stage's input snapshot with its output.

    Args:
        before: Deep copy of the graph taken before the stage ran.
        after: The graph after the stage.
        contract: Declared field behaviour of the stage.
        skip_data_for_node_ids: Nodes whose ``data`` comparison is skipped.

    Returns:
        Every undeclared drop, modification or lost canary, in graph order.
    """
    checker = _Checker(contract)
    skip_data = set(skip_data_for_node_ids)

    checker.compare(
        before,
        after,
        "graph",
        contract.allowed_drops.top_level,
        contract.allowed_modifications.top_level,
        skip=("nodes", "edges"),
    )
    checker.guarantee(before, after, "graph", contract.preservation_guarantees.top_level)

    after_nodes: dict[Any, dict[str, Any]] = {}
    for node in graph_nodes(after):
        after_nodes.setdefault(node.get("id"), node)
    for node in graph_nodes(before):
        node_id = node.get("id")
        location = f"nodes[{node_id}]"
        out = after_nodes.get(node_id)
        if out is None:
            if not contract.allowed_removals.nodes:
                checker.add(ViolationKind.UNEXPECTED_DROP, location, "*", "node removed")
            continue
        checker.compare(
            node,
            out,
            location,
            contract.allowed_drops.node,
            contract.allowed_modifications.node,
            skip=("data",),
        )
        checker.guarantee(node, out, location, contract.preservation_guarantees.node)

        data = node.get("data")
        if not isinstance(data, Mapping) or node_id in skip_data:
            continue
        out_data = out.get("data")
        if not isinstance(out_data, Mapping):
            cleared_external = (
                contract.allowed_data_clear.external_factors
                and out.get("kind") == NodeKind.FACTOR.value
                and out.get("category") == FactorCategory.EXTERNAL.value
            )
            if not cleared_external:
                checker.add(ViolationKind.UNEXPECTED_DROP, location, "data", "data object dropped")
                checker.lost_canaries(data, {}, f"{location}.data")
            continue
        checker.compare(
            data,
            out_data,
            f"{location}.data",
            contract.allowed_drops.node_data,
            contract.allowed_modifications.node_data,
        )

    after_edges: dict[Any, dict[str, Any]] = {}
    for edge in graph_edges(after):
        after_edges.setdefault(_edge_key(edge), edge)
    for edge in graph_edges(before):
        location = _edge_location(edge)
        out = after_edges.get(_edge_key(edge))
        if out is None:
            if not contract.allowed_removals.edges:
                checker.add(ViolationKind.UNEXPECTED_DROP, location, "*", "edge removed")
            continue
        checker.compare(edge, out, location, contract.allowed_drops.edge, contract.allowed_modifications.edge)
        checker.guarantee(edge, out, location, contract.preservation_guarantees.edge)

    return checker.violations
