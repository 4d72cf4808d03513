"""Tests for the topology validator and the final graph guards."""

from __future__ import annotations

import random
from typing import Any

import pytest

from decision_graph.model import CYCLE_CODE, EdgeFormat
from decision_graph.repair.guards import apply_graph_guards, break_cycles, remove_self_loops
from decision_graph.validation.topology import (
    BIDIRECTIONAL_EDGE,
    INVALID_EDGE_TYPE,
    SELF_LOOP,
    STRENGTH_OUT_OF_RANGE,
    STRICT_MODE_CODES,
    TopologyValidator,
    find_cycles,
    validate_topology,
)


def _factor_graph(pairs: list[tuple[str, str]]) -> dict[str, Any]:
    ids = sorted({node for pair in pairs for node in pair})
    return {
        "nodes": [{"id": node_id, "kind": "factor", "category": "observable"} for node_id in ids],
        "edges": [
            {"from": source, "to": target, "strength_mean": 0.5, "strength_std": 0.1, "belief_exists": 0.9}
            for source, target in pairs
        ],
    }


def _codes(violations: Any) -> list[str]:
    return [violation.code for violation in violations]


# -----------------------------------------------------------------------------
# Cycle search
# -----------------------------------------------------------------------------


class TestFindCycles:
    def test_three_node_cycle_found_once(self) -> None:
        graph = _factor_graph([("a", "b"), ("b", "c"), ("c", "a")])
        assert find_cycles(graph["edges"]) == [("a", "b", "c")]

    def test_rotation_starts_at_smallest_id(self) -> None:
        graph = _factor_graph([("z", "m"), ("m", "q"), ("q", "z")])
        assert find_cycles(graph["edges"]) == [("m", "q", "z")]

    def test_self_loops_ignored(self) -> None:
        assert find_cycles([{"from": "a", "to": "a"}]) == []

    def test_acyclic(self, clean_graph: dict[str, Any]) -> None:
        assert find_cycles(clean_graph["edges"]) == []

    @pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
    def test_order_independent(self, seed: int) -> None:
        pairs = [("a", "b"), ("b", "c"), ("c", "a"), ("c", "d"), ("d", "e"), ("e", "c"), ("x", "a")]
        shuffled = list(pairs)
        random.Random(seed).shuffle(shuffled)
        assert find_cycles(_factor_graph(shuffled)["edges"]) == find_cycles(_factor_graph(pairs)["edges"])


# -----------------------------------------------------------------------------
# Validator
# -----------------------------------------------------------------------------


class TestTopologyValidator:
    def test_clean_graph_valid(self, clean_graph: dict[str, Any]) -> None:
        report = validate_topology(clean_graph, strict=True)
        assert report.valid
        assert report.warnings == ()
        assert report.warnings_only == ()

    def test_cycle_reported_with_canonical_code(self) -> None:
        report = validate_topology(_factor_graph([("a", "b"), ("b", "c"), ("c", "a")]))
        assert _codes(report.errors) == [CYCLE_CODE]
        assert report.cycles == [["a", "b", "c"]]
        assert not report.valid

    def test_self_loop(self) -> None:
        report = validate_topology(_factor_graph([("a", "a"), ("a", "b")]))
        assert _codes(report.errors) == [SELF_LOOP]
        assert report.errors[0].node_id == "a"

    def test_bidirectional_pair_reported_once(self) -> None:
        report = validate_topology(_factor_graph([("b", "a"), ("a", "b"), ("a", "b")]))
        assert _codes(report.errors) == [BIDIRECTIONAL_EDGE]
        assert report.errors[0].details == {"pair": ["a", "b"]}

    def test_edge_kind_is_warning_unless_strict(self, clean_graph: dict[str, Any]) -> None:
        clean_graph["edges"].append(
            {"from": "opt_a", "to": "goal_1", "strength_mean": 0.4, "strength_std": 0.1, "belief_exists": 0.9}
        )

        lenient = TopologyValidator().validate(clean_graph)
        assert lenient.valid
        assert _codes(lenient.warnings) == [INVALID_EDGE_TYPE]
        assert lenient.warnings_only == (INVALID_EDGE_TYPE,)

        strict = TopologyValidator(strict=True).validate(clean_graph)
        assert not strict.valid
        assert _codes(strict.errors) == [INVALID_EDGE_TYPE]
        assert strict.errors[0].is_error
        assert strict.warnings_only == ()

    def test_strength_out_of_range(self, clean_graph: dict[str, Any]) -> None:
        clean_graph["edges"][4]["strength_mean"] = 1.5
        report = validate_topology(clean_graph)
        assert _codes(report.warnings) == [STRENGTH_OUT_OF_RANGE]
        assert set(report.warnings_only) <= STRICT_MODE_CODES

    def test_legacy_weight_range(self, legacy_graph: dict[str, Any]) -> None:
        legacy_graph["edges"][4]["weight"] = -2.0
        report = validate_topology(legacy_graph, strict=True, fmt=EdgeFormat.LEGACY)
        assert _codes(report.errors) == [STRENGTH_OUT_OF_RANGE]

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_report_independent_of_edge_order(self, clean_graph: dict[str, Any], seed: int) -> None:
        clean_graph["edges"].append(dict(clean_graph["edges"][4], **{"from": "out_revenue", "to": "fac_price"}))
        expected = validate_topology(clean_graph).to_dict()
        random.Random(seed).shuffle(clean_graph["edges"])
        assert validate_topology(clean_graph).to_dict() == expected


# -----------------------------------------------------------------------------
# Graph guards
# -----------------------------------------------------------------------------


class TestGraphGuards:
    def test_remove_self_loops(self) -> None:
        graph = _factor_graph([("a", "a"), ("a", "b")])
        repairs = remove_self_loops(graph)
        assert _codes(repairs) == ["SELF_LOOP_REMOVED"]
        assert [(e["from"], e["to"]) for e in graph["edges"]] == [("a", "b")]

    def test_break_cycle_removes_closing_edge(self) -> None:
        graph = _factor_graph([("a", "b"), ("b", "c"), ("c", "a")])
        repairs = break_cycles(graph)
        assert [r.path for r in repairs] == ["edges[c→a]"]
        assert find_cycles(graph["edges"]) == []

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_same_edges_removed_for_any_order(self, seed: int) -> None:
        pairs = [("a", "b"), ("b", "c"), ("c", "a"), ("c", "d"), ("d", "b")]
        shuffled = list(pairs)
        random.Random(seed).shuffle(shuffled)
        reference = _factor_graph(pairs)
        candidate = _factor_graph(shuffled)

        break_cycles(reference)
        break_cycles(candidate)

        def remaining(graph: dict[str, Any]) -> set[tuple[str, str]]:
            return {(edge["from"], edge["to"]) for edge in graph["edges"]}

        assert remaining(candidate) == remaining(reference)
        assert validate_topology(candidate).valid

    def test_guards_leave_valid_topology(self) -> None:
        graph = _factor_graph([("a", "a"), ("a", "b"), ("b", "a"), ("b", "c"), ("c", "a")])
        apply_graph_guards(graph)
        assert validate_topology(graph).valid
