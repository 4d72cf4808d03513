"""Validators for decision graphs.

- structural: deterministic local structural validator
- topology: cycle, self-loop, bidirectional, edge-kind and range checks
"""

from .structural import LocalStructuralValidator, StructuralValidation, validate_graph_structure
from .topology import TopologyReport, TopologyValidator, find_cycles, validate_topology

__all__ = [
    "LocalStructuralValidator",
    "StructuralValidation",
    "TopologyReport",
    "TopologyValidator",
    "find_cycles",
    "validate_graph_structure",
    "validate_topology",
]
