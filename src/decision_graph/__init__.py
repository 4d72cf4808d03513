"""decision_graph: deterministic repair and topology validation for causal decision graphs.

A drafted decision graph (goals, decisions, options, factors, outcomes,
risks) is turned into a graph that satisfies a closed set of topological
and numeric invariants, with an audit trail of every change.

Public API
----------
- :func:`repair_graph` / :func:`repair_graph_async` - Run the repair pipeline
- :func:`load_graph` - Load a graph from a JSON/YAML file
- :func:`validate_graph_structure` - Deterministic structural validator
- :func:`validate_topology` - Topology validator for packaged graphs
- :class:`RepairService` - Cached, rate-limited pipeline entry point

Example
-------
>>> from decision_graph import load_graph, repair_graph
>>> graph = load_graph("draft.json")
>>> response = repair_graph(graph, brief="Should we expand to a second site?")
>>> response["repair_summary"]["remaining_violations"]
[]
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API
from decision_graph.adapters import (
    AdapterError,
    AdapterFormatMismatch,
    AdapterResponseError,
    AdapterTimeoutError,
    RepairAdapter,
    RepairRequest,
    StructuralValidatorAdapter,
)
from decision_graph.api import load_graph, load_violations, repair_graph, repair_graph_async
from decision_graph.cache import CacheStats, ResponseCache
from decision_graph.config import RepairConfig, RepairConfigError, load_repair_config
from decision_graph.edge_format import detect_edge_format
from decision_graph.model import EdgeFormat, GraphInputError, NodeKind, Severity, Violation
from decision_graph.ratelimit import RateLimiter, RateLimitExceeded
from decision_graph.repair import (
    FieldContractError,
    PipelineState,
    RepairOrchestrator,
    RepairOutcome,
    RepairSummary,
)
from decision_graph.service import RepairService, ServiceResult
from decision_graph.validation import (
    StructuralValidation,
    TopologyReport,
    TopologyValidator,
    validate_graph_structure,
    validate_topology,
)

__all__ = [
    "__version__",
    # Pipeline
    "PipelineState",
    "RepairOrchestrator",
    "RepairOutcome",
    "RepairSummary",
    "repair_graph",
    "repair_graph_async",
    "load_graph",
    "load_violations",
    # Model
    "EdgeFormat",
    "NodeKind",
    "Severity",
    "Violation",
    "detect_edge_format",
    # Validation
    "StructuralValidation",
    "TopologyReport",
    "TopologyValidator",
    "validate_graph_structure",
    "validate_topology",
    # Adapters
    "RepairAdapter",
    "RepairRequest",
    "StructuralValidatorAdapter",
    # Service
    "CacheStats",
    "RateLimiter",
    "RepairConfig",
    "RepairService",
    "ResponseCache",
    "ServiceResult",
    "load_repair_config",
    # Errors
    "AdapterError",
    "AdapterFormatMismatch",
    "AdapterResponseError",
    "AdapterTimeoutError",
    "FieldContractError",
    "GraphInputError",
    "RateLimitExceeded",
    "RepairConfigError",
]
