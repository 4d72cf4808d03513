"""Tests for disconnected-option detection and status-quo wiring."""

from __future__ import annotations

from typing import Any

from decision_graph.model import EdgeFormat
from decision_graph.repair.status_quo import (
    disconnected_option_violations,
    find_disconnected_options,
    fix_status_quo_connectivity,
)


def _add_status_quo(graph: dict[str, Any], make_structural_edge: Any, label: str = "Do nothing") -> None:
    graph["nodes"].append({"id": "opt_sq", "kind": "option", "label": label})
    graph["edges"].append(make_structural_edge("dec_1", "opt_sq"))


def _targets(graph: dict[str, Any], source: str) -> list[str]:
    return [edge["to"] for edge in graph["edges"] if edge["from"] == source]


class TestFindDisconnectedOptions:
    def test_clean_graph_has_none(self, clean_graph: dict[str, Any]) -> None:
        assert find_disconnected_options(clean_graph) == []

    def test_option_without_edges(self, clean_graph: dict[str, Any], make_structural_edge: Any) -> None:
        _add_status_quo(clean_graph, make_structural_edge)
        assert find_disconnected_options(clean_graph) == ["opt_sq"]

    def test_option_whose_targets_never_reach_goal(
        self, clean_graph: dict[str, Any], make_structural_edge: Any
    ) -> None:
        clean_graph["nodes"].append({"id": "fac_dead", "kind": "factor", "category": "controllable"})
        _add_status_quo(clean_graph, make_structural_edge)
        clean_graph["edges"].append(make_structural_edge("opt_sq", "fac_dead"))
        assert find_disconnected_options(clean_graph) == ["opt_sq"]

    def test_labels_play_no_part(self, clean_graph: dict[str, Any], make_structural_edge: Any) -> None:
        clean_graph["nodes"][2]["label"] = "Status quo"
        _add_status_quo(clean_graph, make_structural_edge, label="Aggressive expansion")
        assert find_disconnected_options(clean_graph) == ["opt_sq"]


class TestFixStatusQuoConnectivity:
    def test_wires_disconnected_option_to_donor_factors(
        self, clean_graph: dict[str, Any], make_structural_edge: Any
    ) -> None:
        _add_status_quo(clean_graph, make_structural_edge)

        result = fix_status_quo_connectivity(clean_graph, ["NO_PATH_TO_GOAL"], EdgeFormat.V1_FLAT)

        assert result.engaged
        assert result.fixed
        assert result.wired == ["opt_sq"]
        assert result.edges_added == 1
        assert _targets(clean_graph, "opt_sq") == ["fac_price"]
        added = clean_graph["edges"][-1]
        assert added == {
            "from": "opt_sq",
            "to": "fac_price",
            "origin": "repair",
            "effect_direction": "positive",
            "strength_mean": 1.0,
            "strength_std": 0.01,
            "belief_exists": 1.0,
        }
        assert find_disconnected_options(clean_graph) == []

    def test_no_effect_path_also_engages(self, clean_graph: dict[str, Any], make_structural_edge: Any) -> None:
        _add_status_quo(clean_graph, make_structural_edge)
        result = fix_status_quo_connectivity(clean_graph, ["NO_EFFECT_PATH"], EdgeFormat.V1_FLAT)
        assert result.wired == ["opt_sq"]

    def test_not_engaged_without_citation(self, clean_graph: dict[str, Any], make_structural_edge: Any) -> None:
        _add_status_quo(clean_graph, make_structural_edge)
        edge_count = len(clean_graph["edges"])

        result = fix_status_quo_connectivity(clean_graph, ["SIGN_MISMATCH"], EdgeFormat.V1_FLAT)

        assert not result.engaged
        assert len(clean_graph["edges"]) == edge_count

    def test_legacy_format_edges(self, legacy_graph: dict[str, Any]) -> None:
        legacy_graph["nodes"].append({"id": "opt_sq", "kind": "option", "label": "Do nothing"})
        legacy_graph["edges"].append({"from": "dec_1", "to": "opt_sq", "weight": 1.0, "belief": 1.0})

        fix_status_quo_connectivity(legacy_graph, ["NO_PATH_TO_GOAL"], EdgeFormat.LEGACY)

        added = legacy_graph["edges"][-1]
        assert added["weight"] == 1.0
        assert added["belief"] == 1.0
        assert "strength_mean" not in added

    def test_marks_droppable_without_donor(self, clean_graph: dict[str, Any]) -> None:
        clean_graph["edges"] = [
            edge for edge in clean_graph["edges"] if edge["from"] not in ("opt_a", "opt_b")
        ]

        result = fix_status_quo_connectivity(clean_graph, ["NO_PATH_TO_GOAL"], EdgeFormat.V1_FLAT)

        assert result.wired == []
        assert result.marked_droppable == ["opt_a", "opt_b"]
        assert all(node.get("droppable") is True for node in clean_graph["nodes"] if node["kind"] == "option")
        assert not result.fixed

    def test_idempotent(self, clean_graph: dict[str, Any], make_structural_edge: Any) -> None:
        _add_status_quo(clean_graph, make_structural_edge)
        fix_status_quo_connectivity(clean_graph, ["NO_PATH_TO_GOAL"], EdgeFormat.V1_FLAT)
        second = fix_status_quo_connectivity(clean_graph, ["NO_PATH_TO_GOAL"], EdgeFormat.V1_FLAT)
        assert second.engaged
        assert second.repairs == []


def test_disconnected_option_violations() -> None:
    (violation,) = disconnected_option_violations(["opt_sq"])
    assert violation.code == "NO_PATH_TO_GOAL"
    assert violation.node_id == "opt_sq"
    assert violation.details == {"source": "disconnected_option_check"}
