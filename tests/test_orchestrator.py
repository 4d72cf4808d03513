"""Tests for the repair orchestrator pipeline."""

from __future__ import annotations

import asyncio
import copy
import math
import random
from typing import Any

import pytest

from decision_graph.canonical import canonical_json_dumps, normalize_for_hash
from decision_graph.config import RepairConfig
from decision_graph.model import GraphInputError
from decision_graph.repair.orchestrator import PipelineState, RepairOrchestrator
from decision_graph.validation.topology import validate_topology

V1_FIELDS = ("strength_mean", "strength_std", "belief_exists")
LEGACY_FIELDS = ("weight", "belief")


def _run(graph: dict[str, Any], violations: Any = None, **kwargs: Any) -> Any:
    config = kwargs.pop("config", None)
    orchestrator = RepairOrchestrator(config, **kwargs)
    return asyncio.run(orchestrator.run(graph, violations, brief="Should we raise prices?"))


def _node(graph: dict[str, Any], node_id: str) -> dict[str, Any]:
    return next(node for node in graph["nodes"] if node["id"] == node_id)


def _pairs(graph: dict[str, Any]) -> set[tuple[str, str]]:
    return {(edge["from"], edge["to"]) for edge in graph["edges"]}


def _states(outcome: Any) -> list[str]:
    return outcome.summary.to_dict()["state_history"]


@pytest.fixture
def broken_graph(clean_graph: dict[str, Any], make_edge: Any, make_structural_edge: Any) -> dict[str, Any]:
    """Clean graph with one instance of every deterministic repair."""
    clean_graph["edges"][4]["strength_mean"] = math.nan
    clean_graph["edges"][8]["strength_mean"] = 0.5
    clean_graph["nodes"].append({"id": "opt_sq", "kind": "option", "label": "Do nothing"})
    clean_graph["edges"].append(make_structural_edge("dec_1", "opt_sq"))
    clean_graph["edges"].append(make_edge("fac_market", "goal_1", 0.3, exists=0.7))
    clean_graph["edges"].append(make_edge("out_revenue", "fac_price", 0.2))
    clean_graph["nodes"].append(
        {
            "id": "fac_orphan",
            "kind": "factor",
            "label": "Office location",
            "category": "controllable",
            "data": {"value": 0.6, "extractionType": "explicit", "factor_type": "cost", "uncertainty_drivers": []},
        }
    )
    return clean_graph


class _StaticValidator:
    def __init__(self, response: Any) -> None:
        self.response = response
        self.calls = 0

    async def validate(self, graph: Any) -> Any:
        self.calls += 1
        return self.response


class _SlowValidator:
    async def validate(self, graph: Any) -> Any:
        await asyncio.sleep(5)
        return {"ok": True, "violations": []}


class _BrokenValidator:
    async def validate(self, graph: Any) -> Any:
        raise RuntimeError("validator down")


# -----------------------------------------------------------------------------
# Clean input
# -----------------------------------------------------------------------------


class TestCleanGraph:
    def test_clean_graph_passes_through(self, clean_graph: dict[str, Any], tripwire: Any) -> None:
        expected = copy.deepcopy(clean_graph)

        outcome = _run(clean_graph, repair_adapter=tripwire)

        assert outcome.graph is clean_graph
        assert clean_graph == expected
        summary = outcome.summary.to_dict()
        assert summary["repairs_applied"] == 0
        assert summary["llm_skip_reason"] == "no_errors"
        assert summary["llm_repair_called"] is False
        assert summary["remaining_violations"] == []
        assert summary["topology"]["valid"] is True
        assert _states(outcome) == [
            "Received",
            "FormatLocked",
            "SweepApplied",
            "ReachabilityFixed",
            "Validated",
            "Packaged",
        ]
        assert outcome.summary.state == PipelineState.PACKAGED

    def test_outcome_payload_shape(self, clean_graph: dict[str, Any]) -> None:
        payload = _run(clean_graph).to_dict()
        assert set(payload) == {"graph", "repair_summary"}
        assert payload["repair_summary"]["edge_format"] == "V1_FLAT"
        assert payload["repair_summary"]["node_counts"] == {"before": 8, "after": 8}

    def test_missing_edges_defaulted(self, clean_graph: dict[str, Any]) -> None:
        del clean_graph["edges"]
        outcome = _run(clean_graph)
        assert clean_graph["edges"] == []
        assert outcome.summary.edge_format.value == "NONE"

    @pytest.mark.parametrize(
        "graph",
        [
            {"edges": []},
            {"nodes": [{"id": "a"}]},
            {"nodes": [{"id": "a", "kind": "goal"}, {"id": "a", "kind": "option"}], "edges": []},
            {"nodes": [], "edges": [{"from": "a"}]},
        ],
    )
    def test_malformed_envelope_rejected(self, graph: dict[str, Any]) -> None:
        with pytest.raises(GraphInputError):
            _run(graph)

    def test_malformed_violations_rejected(self, clean_graph: dict[str, Any]) -> None:
        with pytest.raises(GraphInputError):
            _run(clean_graph, [{"severity": "error"}])


# -----------------------------------------------------------------------------
# Deterministic repair
# -----------------------------------------------------------------------------


@pytest.mark.integration
class TestDeterministicRepair:
    def test_every_stage_applies(self, broken_graph: dict[str, Any]) -> None:
        outcome = _run(broken_graph)
        summary = outcome.summary.to_dict()
        counts = summary["repair_counts"]

        assert counts["NAN_VALUE"] == 1
        assert counts["SIGN_MISMATCH"] == 1
        assert counts["FACTOR_GOAL_EDGE_SPLIT"] == 1
        assert counts["UNREACHABLE_FACTOR_RECLASSIFIED"] == 1
        assert counts["STATUS_QUO_WIRED"] == 1
        assert counts["CYCLE_BROKEN"] == 1
        assert summary["disconnected_options_before"] == ["opt_sq"]
        assert summary["disconnected_options_after"] == []
        assert summary["unreachable_factors"]["reclassified"] == ["fac_orphan"]
        assert summary["llm_repair_needed"] is True
        assert summary["llm_skip_reason"] == "adapter_unavailable"
        assert summary["topology"]["valid"] is True
        assert _node(outcome.graph, "fac_orphan")["droppable"] is True

    def test_idempotent_byte_identical(self, broken_graph: dict[str, Any]) -> None:
        first = _run(broken_graph).graph
        snapshot = canonical_json_dumps(normalize_for_hash(first))

        second = _run(copy.deepcopy(first)).graph

        assert canonical_json_dumps(normalize_for_hash(second)) == snapshot

    def test_signs_agree_with_direction(self, broken_graph: dict[str, Any]) -> None:
        graph = _run(broken_graph).graph
        for edge in graph["edges"]:
            mean = edge.get("strength_mean")
            if edge.get("effect_direction") == "negative":
                assert mean < 0, edge
            elif edge.get("effect_direction") == "positive":
                assert mean >= 0, edge
        assert _pairs(graph) >= {("risk_churn", "goal_1")}
        risk_edge = next(e for e in graph["edges"] if (e["from"], e["to"]) == ("risk_churn", "goal_1"))
        assert risk_edge["strength_mean"] == -0.5

    def test_zero_mean_with_negative_direction(self, clean_graph: dict[str, Any]) -> None:
        clean_graph["edges"][8]["strength_mean"] = 0.0

        outcome = _run(clean_graph, [])

        edge = next(e for e in outcome.graph["edges"] if (e["from"], e["to"]) == ("risk_churn", "goal_1"))
        assert edge["effect_direction"] == "positive"
        assert edge["strength_mean"] == 0.0
        assert outcome.summary.to_dict()["repair_counts"] == {"SIGN_MISMATCH": 1}

    def test_no_invalid_topology_for_any_edge_order(self, broken_graph: dict[str, Any]) -> None:
        reference = _run(copy.deepcopy(broken_graph)).graph
        for seed in range(5):
            shuffled = copy.deepcopy(broken_graph)
            random.Random(seed).shuffle(shuffled["edges"])
            graph = _run(shuffled).graph
            assert validate_topology(graph).valid
            assert _pairs(graph) == _pairs(reference)

    def test_cited_violations_gate_bucket_b(self, clean_graph: dict[str, Any], make_edge: Any) -> None:
        clean_graph["nodes"].append(
            {
                "id": "fac_demand",
                "kind": "factor",
                "label": "Demand",
                "category": "observable",
                "data": {"value": 0.4, "extractionType": "observed", "factor_type": "demand"},
            }
        )
        clean_graph["edges"].append(make_edge("fac_price", "fac_demand", 0.3))
        clean_graph["edges"].append(make_edge("fac_demand", "out_revenue", 0.5))

        uncited = _run(copy.deepcopy(clean_graph), [])
        assert _node(uncited.graph, "fac_demand")["data"]["factor_type"] == "demand"
        assert uncited.summary.violations_after == ["OBSERVABLE_EXTRA_DATA"]

        cited = _run(clean_graph, [{"code": "OBSERVABLE_EXTRA_DATA", "affected_node_id": "fac_demand"}])
        assert _node(cited.graph, "fac_demand")["data"] == {"value": 0.4, "extractionType": "observed"}
        assert cited.summary.violations_before == ["OBSERVABLE_EXTRA_DATA"]
        assert cited.summary.violations_after == []


# -----------------------------------------------------------------------------
# Edge format lock
# -----------------------------------------------------------------------------


class TestFormatLock:
    def test_legacy_graph_stays_legacy(self, legacy_graph: dict[str, Any]) -> None:
        legacy_graph["edges"][8]["weight"] = 0.5
        legacy_graph["nodes"].append({"id": "opt_sq", "kind": "option", "label": "Do nothing"})
        legacy_graph["edges"].append({"from": "dec_1", "to": "opt_sq", "weight": 1.0, "belief": 1.0})
        legacy_graph["edges"].append(
            {"from": "fac_market", "to": "goal_1", "weight": 0.3, "belief": 0.7, "effect_direction": "positive"}
        )

        outcome = _run(legacy_graph)

        assert outcome.summary.edge_format.value == "LEGACY"
        assert ("opt_sq", "fac_price") in _pairs(outcome.graph)
        assert ("out_fac_market_impact", "goal_1") in _pairs(outcome.graph)
        for edge in outcome.graph["edges"]:
            assert not any(name in edge for name in V1_FIELDS), edge
            assert "weight" in edge, edge

    def test_mixed_format_edges_rewritten(self, clean_graph: dict[str, Any]) -> None:
        clean_graph["edges"][6] = {
            "from": "fac_market",
            "to": "out_revenue",
            "effect_direction": "positive",
            "weight": math.nan,
            "belief": 0.7,
        }
        clean_graph["edges"][7]["weight"] = 0.2

        outcome = _run(clean_graph, [])

        assert outcome.summary.edge_format.value == "V1_FLAT"
        edge = next(e for e in outcome.graph["edges"] if (e["from"], e["to"]) == ("fac_market", "out_revenue"))
        assert edge["strength_mean"] == 0.5
        assert edge["belief_exists"] == 0.7
        for edge in outcome.graph["edges"]:
            assert not any(name in edge for name in LEGACY_FIELDS), edge
        counts = outcome.summary.to_dict()["repair_counts"]
        assert counts["EDGE_FORMAT_NORMALIZED"] == 2
        assert counts["NAN_VALUE"] == 1

    def test_v1_graph_never_gains_legacy_fields(self, broken_graph: dict[str, Any]) -> None:
        graph = _run(broken_graph).graph
        for edge in graph["edges"]:
            assert not any(name in edge for name in LEGACY_FIELDS), edge
            assert "strength_mean" in edge, edge


# -----------------------------------------------------------------------------
# External collaborators
# -----------------------------------------------------------------------------


class TestExternalRepair:
    def test_escalation_and_post_repair_sweep(
        self, clean_graph: dict[str, Any], make_edge: Any, recording_adapter: Any
    ) -> None:
        clean_graph["edges"].append(make_edge("out_revenue", "fac_price", 0.2))

        def repair(graph: dict[str, Any]) -> dict[str, Any]:
            graph["edges"] = [e for e in graph["edges"] if (e["from"], e["to"]) != ("out_revenue", "fac_price")]
            graph["edges"][4]["strength_mean"] = math.nan
            return {"graph": graph}

        adapter = recording_adapter([repair])
        outcome = _run(clean_graph, repair_adapter=adapter)
        summary = outcome.summary.to_dict()

        assert len(adapter.requests) == 1
        assert "GRAPH_CONTAINS_CYCLE" in [v.code for v in adapter.requests[0].violations]
        assert summary["llm_repair_called"] is True
        assert summary["llm_failure_reason"] is None
        assert summary["repair_counts"] == {"NAN_VALUE": 1}
        assert outcome.graph["edges"][4]["strength_mean"] == 0.5
        assert _states(outcome) == [
            "Received",
            "FormatLocked",
            "SweepApplied",
            "ReachabilityFixed",
            "Escalating",
            "Repaired",
            "Validated",
            "Packaged",
        ]

    def test_failed_repair_keeps_deterministic_fixes(
        self, broken_graph: dict[str, Any], recording_adapter: Any
    ) -> None:
        adapter = recording_adapter([RuntimeError("model overloaded")])

        outcome = _run(broken_graph, repair_adapter=adapter)
        summary = outcome.summary.to_dict()

        assert summary["llm_failure_reason"] == "adapter_error: RuntimeError: model overloaded"
        assert summary["repair_counts"]["SIGN_MISMATCH"] == 1
        assert summary["topology"]["valid"] is True
        assert "Repaired" not in summary["state_history"]


class TestExternalValidator:
    def test_external_violations_used(self, clean_graph: dict[str, Any]) -> None:
        validator = _StaticValidator(
            {"ok": False, "violations": [{"code": "CIRCULAR_DEPENDENCY", "affected_node_id": "fac_price"}]}
        )

        outcome = _run(clean_graph, validator=validator)

        assert outcome.summary.violations_before == ["GRAPH_CONTAINS_CYCLE"]
        assert outcome.summary.routing.skip_reason == "adapter_unavailable"
        assert validator.calls == 2
        assert outcome.summary.violations_after == []

    def test_timeout_falls_back_to_local(self, broken_graph: dict[str, Any]) -> None:
        reference = _run(copy.deepcopy(broken_graph)).graph
        config = RepairConfig(validator_timeout_s=0.01)

        outcome = _run(broken_graph, validator=_SlowValidator(), config=config)

        assert outcome.summary.validator_failures
        assert outcome.summary.validator_failures[0] == "validator timed out after 0.01s"
        assert outcome.graph == reference

    def test_validator_error_falls_back(self, clean_graph: dict[str, Any]) -> None:
        outcome = _run(clean_graph, validator=_BrokenValidator())
        assert outcome.summary.validator_failures[0] == "validator_error: RuntimeError: validator down"
        assert outcome.summary.routing.skip_reason == "no_errors"

    def test_unusable_validator_response(self, clean_graph: dict[str, Any]) -> None:
        outcome = _run(clean_graph, validator=_StaticValidator(["not", "a", "mapping"]))
        assert outcome.summary.validator_failures[0].startswith("AdapterResponseError:")
