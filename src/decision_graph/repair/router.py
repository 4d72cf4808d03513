"""Violation routing and escalation to external repair.

After the deterministic stages, residual error codes are split into codes
the sweep owns (numeric and reference hygiene) and escalation-required
topology codes. Only the latter justify an external repair call. The
adapter is called once, and at most once more with an escalation notice
if topology errors survive the first attempt.

Adapter timeouts, errors and malformed or format-mismatched responses
never propagate: they are recorded as the failure reason and the graph
keeps every deterministic repair already applied.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..adapters import (
    AdapterError,
    AdapterTimeoutError,
    RepairAdapter,
    accept_repair_response,
    make_repair_request,
)
from ..model import EdgeFormat, Violation
from .sweep import BUCKET_A_CODES, BUCKET_B_CODES, ESCALATION_CODES

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

# Skip reasons recorded when no external call is made.
SKIP_NO_ERRORS = "no_errors"
SKIP_NO_ESCALATION = "no_escalation_required"
SKIP_NO_ADAPTER = "adapter_unavailable"

Revalidate = Callable[[dict[str, Any]], Awaitable[list[Violation]]]
PostRepair = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class ViolationPartition:
    resolved_by_sweep: tuple[str, ...]
    escalation_required: tuple[str, ...]
    other: tuple[str, ...]

    @property
    def needs_escalation(self) -> bool:
        return bool(self.escalation_required)


def partition_violations(violations: list[Violation]) -> ViolationPartition:
    """Partition the codes of error-severity violations (warnings are tolerated)."""
    resolved: list[str] = []
    escalate: list[str] = []
    other: list[str] = []
    for violation in violations:
        if not violation.is_error:
            continue
        code = violation.code
        if code in ESCALATION_CODES:
            bucket = escalate
        elif code in BUCKET_A_CODES or code in BUCKET_B_CODES:
            bucket = resolved
        else:
            bucket = other
        if code not in bucket:
            bucket.append(code)
    return ViolationPartition(tuple(resolved), tuple(escalate), tuple(other))


@dataclass(slots=True)
class AttemptRecord:
    attempt: int
    outcome: str
    detail: str = ""
    remaining_codes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "outcome": self.outcome,
            "detail": self.detail,
            "remaining_codes": list(self.remaining_codes),
        }


@dataclass(slots=True)
class RoutingDecision:
    """Audit trail of the escalation decision."""

    llm_repair_needed: bool = False
    llm_repair_called: bool = False
    skip_reason: str | None = None
    failure_reason: str | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    escalation_codes: list[str] = field(default_factory=list)
    remaining_codes: list[str] = field(default_factory=list)
    remaining_violations: list[Violation] = field(default_factory=list)
    graph_replaced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "llm_repair_needed": self.llm_repair_needed,
            "llm_repair_called": self.llm_repair_called,
            "skip_reason": self.skip_reason,
            "failure_reason": self.failure_reason,
            "attempts": [record.to_dict() for record in self.attempts],
            "escalation_codes": list(self.escalation_codes),
            "remaining_codes": list(self.remaining_codes),
            "graph_replaced": self.graph_replaced,
        }


def _error_codes(violations: list[Violation]) -> list[str]:
    return list(dict.fromkeys(v.code for v in violations if v.is_error))


def replace_graph_contents(graph: dict[str, Any], repaired: dict[str, Any]) -> None:
    """Swap the repaired graph into the request-owned graph object.

    Top-level keys absent from the repaired graph are kept so request
    metadata survives an adapter that only returns nodes and edges.
    """
    for key, value in repaired.items():
        graph[key] = value


class ViolationRouter:
    """Decide on and drive external repair for residual violations.

    Args:
        adapter: External repair capability, or None when unavailable.
        timeout_s: Per-call timeout.
        max_attempts: Upper bound on adapter calls (at most 2).
    """

    def __init__(
        self,
        adapter: RepairAdapter | None,
        *,
        timeout_s: float,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.adapter = adapter
        self.timeout_s = timeout_s
        self.max_attempts = max(1, min(max_attempts, MAX_ATTEMPTS))

    async def route(
        self,
        graph: dict[str, Any],
        violations: list[Violation],
        *,
        brief: str,
        edge_format: EdgeFormat,
        revalidate: Revalidate,
        post_repair: PostRepair | None = None,
    ) -> RoutingDecision:
        """Route residual violations, calling the adapter when required.

        Args:
            graph: Request-owned graph; replaced in place on successful repair.
            violations: Residual violations after the deterministic stages.
            brief: Original decision brief.
            edge_format: Locked edge format the adapter must preserve.
            revalidate: Coroutine returning fresh violations for a graph.
            post_repair: Deterministic fixes re-applied to adapter output.

        Returns:
            RoutingDecision describing what happened and why.
        """
        decision = RoutingDecision()
        current = list(violations)
        partition = partition_violations(current)
        decision.escalation_codes = list(partition.escalation_required)
        decision.remaining_codes = _error_codes(current)
        decision.remaining_violations = [v for v in current if v.is_error]

        if not decision.remaining_codes:
            decision.skip_reason = SKIP_NO_ERRORS
            logger.info("Escalation skipped: no errors remain")
            return decision
        if not partition.needs_escalation:
            decision.skip_reason = SKIP_NO_ESCALATION
            logger.info("Escalation skipped: residual codes %s are not topological", decision.remaining_codes)
            return decision

        decision.llm_repair_needed = True
        if self.adapter is None:
            decision.skip_reason = SKIP_NO_ADAPTER
            logger.warning("Escalation required for %s but no repair adapter is configured", decision.escalation_codes)
            return decision

        for attempt in range(1, self.max_attempts + 1):
            request = make_repair_request(graph, brief, edge_format, attempt, decision.remaining_violations)
            decision.llm_repair_called = True
            logger.info("External repair attempt %d for codes %s", attempt, decision.escalation_codes)
            try:
                response = await asyncio.wait_for(self.adapter.repair(request), timeout=self.timeout_s)
                repaired = accept_repair_response(response, edge_format)
            except asyncio.TimeoutError:
                error = AdapterTimeoutError("repair", self.timeout_s)
                decision.failure_reason = f"timeout: {error}"
                decision.attempts.append(AttemptRecord(attempt, "timeout", str(error), decision.remaining_codes))
                logger.warning("External repair attempt %d timed out after %ss", attempt, self.timeout_s)
                break
            except AdapterError as exc:
                decision.failure_reason = f"{type(exc).__name__}: {exc}"
                decision.attempts.append(AttemptRecord(attempt, "rejected", str(exc), decision.remaining_codes))
                logger.warning("External repair attempt %d rejected: %s", attempt, exc)
                break
            except Exception as exc:
                decision.failure_reason = f"adapter_error: {type(exc).__name__}: {exc}"
                decision.attempts.append(AttemptRecord(attempt, "error", str(exc), decision.remaining_codes))
                logger.warning("External repair attempt %d failed: %s", attempt, exc)
                break

            replace_graph_contents(graph, repaired)
            decision.graph_replaced = True
            if post_repair is not None:
                post_repair(graph)

            current = await revalidate(graph)
            partition = partition_violations(current)
            decision.remaining_codes = _error_codes(current)
            decision.remaining_violations = [v for v in current if v.is_error]
            decision.attempts.append(AttemptRecord(attempt, "repaired", "", decision.remaining_codes))
            if not partition.needs_escalation:
                decision.failure_reason = None
                break
            decision.escalation_codes = list(partition.escalation_required)
            decision.failure_reason = "unresolved_after_repair"

        return decision
