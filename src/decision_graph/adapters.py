"""Interfaces to the external collaborators of the repair pipeline.

Two capabilities are consumed through narrow async contracts:

- ``RepairAdapter``: ``RepairRequest -> {"graph": ...}``. Implementations
  typically wrap an LLM call; they must return a graph in the request's
  edge format or raise.
- ``StructuralValidatorAdapter``: ``graph -> {"ok": bool, "violations": [...]}``.

Every failure of these collaborators surfaces as an ``AdapterError``
subclass (or whatever the implementation raises) and is converted into a
recorded skip/failure reason by the caller; none of them abort a request.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from jsonschema import Draft202012Validator

from .canonical import normalize_for_hash
from .edge_format import detect_edge_format
from .model import EdgeFormat, Violation

GRAPH_SCHEMA_PATH = Path(__file__).parent / "schemas" / "graph.schema.json"

ESCALATION_NOTICE = (
    "The previous repair attempt did not resolve every topology error. "
    "This is the final attempt: fix the listed violations without changing unrelated nodes or edges."
)


class AdapterError(Exception):
    """Raised when an external adapter fails."""


class AdapterTimeoutError(AdapterError):
    """Raised when an adapter call exceeds its configured timeout."""

    def __init__(self, operation: str, timeout_s: float) -> None:
        self.operation = operation
        self.timeout_s = timeout_s
        super().__init__(f"{operation} timed out after {timeout_s:g}s")


class AdapterFormatMismatch(AdapterError):
    """Raised when an adapter returns a graph in a different edge format."""

    def __init__(self, expected: EdgeFormat, actual: EdgeFormat) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"adapter returned {actual.value} edges, expected {expected.value}")


class AdapterResponseError(AdapterError):
    """Raised when an adapter response does not match the graph schema."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("malformed adapter response: " + "; ".join(errors[:5]))


@dataclass(frozen=True, slots=True)
class RepairRequest:
    """Request handed to a ``RepairAdapter``.

    ``graph`` is a deep copy: adapters may mutate it freely.
    """

    graph: dict[str, Any]
    brief: str
    edge_format: EdgeFormat
    attempt: int
    violations: tuple[Violation, ...] = ()
    escalation_notice: str | None = None
    prompt_context: str = field(default="", compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "graph": self.graph,
            "brief": self.brief,
            "edge_format": self.edge_format.value,
            "attempt": self.attempt,
            "violations": [v.to_dict() for v in self.violations],
            "escalation_notice": self.escalation_notice,
        }


@runtime_checkable
class RepairAdapter(Protocol):
    async def repair(self, request: RepairRequest) -> Mapping[str, Any]:
        """Return ``{"graph": repaired_graph}`` in ``request.edge_format``."""
        ...


@runtime_checkable
class StructuralValidatorAdapter(Protocol):
    async def validate(self, graph: Mapping[str, Any]) -> Any:
        """Return ``{"ok": bool, "violations": [...]}`` or a ``StructuralValidation``."""
        ...


# =============================================================================
# Prompt context
# =============================================================================


def format_violations_for_repair(violations: Iterable[Violation]) -> str:
    lines = []
    for i, violation in enumerate(violations, start=1):
        location = violation.path or (f"nodes[{violation.node_id}]" if violation.node_id else "graph")
        lines.append(f"{i}. [{violation.code}] at {location}: {violation.message or violation.code}")
    return "\n".join(lines)


def build_repair_prompt_context(
    brief: str,
    graph: Mapping[str, Any],
    violations: Iterable[Violation],
    *,
    edge_format: EdgeFormat,
    escalation_notice: str | None = None,
) -> str:
    """Assemble the text context an LLM-backed adapter sends with a repair call."""
    graph_json = json.dumps(normalize_for_hash(graph), indent=2, ensure_ascii=False)
    sections = [
        "## Original Brief",
        brief or "(no brief provided)",
        "",
        "## Failed Graph (JSON)",
        graph_json,
        "",
        "## Validation Errors",
        format_violations_for_repair(violations) or "(none)",
        "",
        "## Instructions",
        f"Return the complete repaired graph using {edge_format.value} edge fields only. "
        "Keep every node id and every unknown field you do not need to change.",
    ]
    if escalation_notice:
        sections.extend(["", "## Escalation", escalation_notice])
    return "\n".join(sections)


def make_repair_request(
    graph: Mapping[str, Any],
    brief: str,
    edge_format: EdgeFormat,
    attempt: int,
    violations: Iterable[Violation],
) -> RepairRequest:
    violations = tuple(violations)
    notice = ESCALATION_NOTICE if attempt > 1 else None
    snapshot = copy.deepcopy(dict(graph))
    return RepairRequest(
        graph=snapshot,
        brief=brief,
        edge_format=edge_format,
        attempt=attempt,
        violations=violations,
        escalation_notice=notice,
        prompt_context=build_repair_prompt_context(
            brief, snapshot, violations, edge_format=edge_format, escalation_notice=notice
        ),
    )


# =============================================================================
# Response validation
# =============================================================================


@lru_cache(maxsize=1)
def get_graph_schema() -> dict[str, Any]:
    return json.loads(GRAPH_SCHEMA_PATH.read_text(encoding="utf-8"))


def validate_graph_schema(data: Any) -> list[str]:
    """Validate ``data`` against the graph JSON Schema (Draft 2020-12).

    Returns:
        List of "path: message" strings, empty when valid.
    """
    validator = Draft202012Validator(get_graph_schema())
    errors = []
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"{path}: {error.message}")
    return errors


def accept_repair_response(response: Any, expected_format: EdgeFormat) -> dict[str, Any]:
    """Check an adapter response and return the repaired graph.

    Raises:
        AdapterResponseError: If the response is not ``{"graph": <graph>}``.
        AdapterFormatMismatch: If the graph uses another edge format.
    """
    if not isinstance(response, Mapping) or "graph" not in response:
        raise AdapterResponseError(["(root): response must be a mapping with a 'graph' key"])
    graph = response["graph"]
    errors = validate_graph_schema(graph)
    if errors:
        raise AdapterResponseError(errors)
    actual = detect_edge_format(graph["edges"])
    if actual != expected_format:
        raise AdapterFormatMismatch(expected_format, actual)
    return dict(graph)
