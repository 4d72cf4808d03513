# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for test suite.

This module provides:
- Deterministic test environment setup
- Graph builders for clean and deliberately broken decision graphs
- Stub adapters, including a network tripwire that fails on any call
"""
from __future__ import annotations

import copy
import os
from collections.abc import Callable
from typing import Any

import pytest

from decision_graph.adapters import RepairRequest


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism.

    Sets environment variables to ensure reproducible test execution.
    """
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


@pytest.fixture(autouse=True)
def _isolate_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer DECISION_GRAPH_* overrides out of the tests."""
    for key in list(os.environ):
        if key.startswith("DECISION_GRAPH_"):
            monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Graph builders
# ---------------------------------------------------------------------------


STRUCTURAL_V1 = {"strength_mean": 1.0, "strength_std": 0.01, "belief_exists": 1.0, "effect_direction": "positive"}


def _edge(source: str, target: str, mean: float, std: float = 0.1, exists: float = 0.9, **extra: Any) -> dict:
    edge = {
        "from": source,
        "to": target,
        "strength_mean": mean,
        "strength_std": std,
        "belief_exists": exists,
        "effect_direction": "negative" if mean < 0 else "positive",
    }
    edge.update(extra)
    return edge


def _structural(source: str, target: str) -> dict:
    return {"from": source, "to": target, **STRUCTURAL_V1}


def build_clean_graph() -> dict[str, Any]:
    """A V1_FLAT graph that passes the structural and topology validators."""
    return {
        "nodes": [
            {"id": "goal_1", "kind": "goal", "label": "Grow revenue"},
            {"id": "dec_1", "kind": "decision", "label": "Pricing strategy"},
            {"id": "opt_a", "kind": "option", "label": "Raise prices", "data": {"interventions": {"fac_price": 0.8}}},
            {"id": "opt_b", "kind": "option", "label": "Hold prices", "data": {"interventions": {"fac_price": 0.5}}},
            {
                "id": "fac_price",
                "kind": "factor",
                "label": "Price level",
                "category": "controllable",
                "data": {
                    "value": 0.5,
                    "extractionType": "explicit",
                    "factor_type": "price",
                    "uncertainty_drivers": ["Competitor response"],
                },
            },
            {"id": "fac_market", "kind": "factor", "label": "Market demand", "category": "external"},
            {"id": "out_revenue", "kind": "outcome", "label": "Revenue"},
            {"id": "risk_churn", "kind": "risk", "label": "Customer churn"},
        ],
        "edges": [
            _structural("dec_1", "opt_a"),
            _structural("dec_1", "opt_b"),
            _structural("opt_a", "fac_price"),
            _structural("opt_b", "fac_price"),
            _edge("fac_price", "out_revenue", 0.6),
            _edge("fac_price", "risk_churn", 0.4, exists=0.8),
            _edge("fac_market", "out_revenue", 0.3, exists=0.7),
            _edge("out_revenue", "goal_1", 0.7, exists=0.95),
            _edge("risk_churn", "goal_1", -0.5),
        ],
        "meta": {"source": "test"},
    }


def build_legacy_graph() -> dict[str, Any]:
    """The clean graph re-encoded with LEGACY weight/belief fields."""
    graph = build_clean_graph()
    for edge in graph["edges"]:
        edge["weight"] = edge.pop("strength_mean")
        edge["belief"] = edge.pop("belief_exists")
        edge.pop("strength_std")
    return graph


def add_sentinels(graph: dict[str, Any]) -> dict[str, Any]:
    """Plant ``_sentinel_*`` canaries at every depth of ``graph``."""
    graph["_sentinel_graph"] = "g"
    graph.setdefault("meta", {})["_sentinel_meta"] = "m"
    for node in graph["nodes"]:
        node["_sentinel_node"] = f"n:{node['id']}"
        if isinstance(node.get("data"), dict):
            node["data"]["_sentinel_data"] = f"d:{node['id']}"
    for edge in graph["edges"]:
        edge["_sentinel_edge"] = f"e:{edge['from']}>{edge['to']}"
        edge.setdefault("provenance", {"source": "brief"})["_sentinel_prov"] = "p"
    return graph


@pytest.fixture
def clean_graph() -> dict[str, Any]:
    return build_clean_graph()


@pytest.fixture
def legacy_graph() -> dict[str, Any]:
    return build_legacy_graph()


@pytest.fixture
def make_edge() -> Callable[..., dict]:
    return _edge


@pytest.fixture
def make_structural_edge() -> Callable[[str, str], dict]:
    return _structural


# ---------------------------------------------------------------------------
# Adapter stubs
# ---------------------------------------------------------------------------


class NetworkTripwire:
    """Repair adapter that fails the test if it is ever called."""

    async def repair(self, request: RepairRequest) -> dict[str, Any]:
        pytest.fail(f"external repair must not be called (attempt {request.attempt})")


class RecordingAdapter:
    """Repair adapter returning scripted graphs and recording every request."""

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.requests: list[RepairRequest] = []

    async def repair(self, request: RepairRequest) -> Any:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(copy.deepcopy(request.graph))
        return response


@pytest.fixture
def tripwire() -> NetworkTripwire:
    return NetworkTripwire()


@pytest.fixture
def recording_adapter() -> Callable[[list[Any]], RecordingAdapter]:
    return RecordingAdapter


@pytest.fixture
def sentinel_graph() -> dict[str, Any]:
    return add_sentinels(build_clean_graph())
