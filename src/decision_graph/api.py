"""Public API for decision graph repair.

This module provides:
- load_document: Load a JSON or YAML document by file suffix
- load_graph: Load a graph (bare, or under a ``graph`` key of a request)
- load_violations: Load a violation list (bare, or under ``violations``)
- repair_graph_async: Run the repair pipeline in the current event loop
- repair_graph: Synchronous wrapper for scripts and the CLI

The pipeline mutates the graph passed in; callers that need the original
keep their own copy. ``RepairService`` adds caching and rate limiting on
top of the same pipeline.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import yaml

from .adapters import RepairAdapter, StructuralValidatorAdapter
from .config import RepairConfig
from .model import GraphInputError
from .repair.orchestrator import RepairOrchestrator


def load_document(path: Path | str) -> Any:
    """Load a YAML (.yaml, .yml) or JSON (.json) document.

    JSON input may contain ``NaN`` and ``Infinity`` literals, which drafted
    graphs carry and the sweep repairs.

    Raises:
        FileNotFoundError: If the file does not exist.
        GraphInputError: If the suffix is unsupported or parsing fails.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    try:
        if suffix in (".yaml", ".yml"):
            return yaml.safe_load(text)
        if suffix == ".json":
            return json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise GraphInputError([f"{path}: {exc}"]) from exc
    raise GraphInputError([f"Unsupported file extension: {suffix}. Use .yaml, .yml, or .json"])


def load_graph(path: Path | str) -> dict[str, Any]:
    """Load a graph document, unwrapping a ``{"graph": ...}`` request envelope."""
    data = load_document(path)
    if isinstance(data, dict) and isinstance(data.get("graph"), dict):
        data = data["graph"]
    if not isinstance(data, dict):
        raise GraphInputError([f"graph document must contain a mapping, got {type(data).__name__}"])
    return data


def load_violations(path: Path | str) -> list[Any]:
    """Load a violation list, unwrapping a ``{"violations": [...]}`` document."""
    data = load_document(path)
    if isinstance(data, dict):
        data = data.get("violations")
    if not isinstance(data, list):
        raise GraphInputError([f"violations document must contain a list, got {type(data).__name__}"])
    return data


async def repair_graph_async(
    graph: dict[str, Any],
    violations: list[Any] | None = None,
    *,
    brief: str = "",
    config: RepairConfig | None = None,
    repair_adapter: RepairAdapter | None = None,
    validator: StructuralValidatorAdapter | None = None,
) -> dict[str, Any]:
    """Repair ``graph`` in place.

    Args:
        graph: Graph to repair.
        violations: Cited violations; None runs the validator first.
        brief: Original decision brief for external repair.
        config: Pipeline configuration.
        repair_adapter: External repair capability.
        validator: External structural validator.

    Returns:
        ``{"graph": graph, "repair_summary": {...}}``.
    """
    orchestrator = RepairOrchestrator(config, repair_adapter=repair_adapter, validator=validator)
    outcome = await orchestrator.run(graph, violations, brief=brief)
    return outcome.to_dict()


def repair_graph(
    graph: dict[str, Any],
    violations: list[Any] | None = None,
    *,
    brief: str = "",
    config: RepairConfig | None = None,
    repair_adapter: RepairAdapter | None = None,
    validator: StructuralValidatorAdapter | None = None,
) -> dict[str, Any]:
    """Synchronous ``repair_graph_async``; must not be called from a running loop."""
    return asyncio.run(
        repair_graph_async(
            graph,
            violations,
            brief=brief,
            config=config,
            repair_adapter=repair_adapter,
            validator=validator,
        )
    )
