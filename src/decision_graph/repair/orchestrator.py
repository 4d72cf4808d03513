"""Repair orchestrator.

Sequences the repair stages over one request-owned graph and records the
Repair Summary. Per request the pipeline moves through::

    Received → FormatLocked → SweepApplied → ReachabilityFixed
             → [Escalating → Repaired] → Validated → Packaged

Stages run sequentially and mutate the graph in place. Only the optional
external validator call and the external repair call may suspend; both
are bounded by configured timeouts and their failures are recorded, not
raised. Data problems never raise either: they end up as violations and
topology errors in the summary.

Each deterministic stage is checked against its field-preservation
contract (see ``contract``). Breaches raise ``FieldContractError`` when
``contract_assertions`` is enabled and are otherwise logged and listed.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..adapters import AdapterError, AdapterResponseError, RepairAdapter, StructuralValidatorAdapter
from ..config import RepairConfig
from ..edge_format import detect_edge_format, formats_present
from ..model import (
    EdgeFormat,
    Violation,
    graph_edges,
    graph_nodes,
    validate_graph_envelope,
    validate_violations,
)
from ..validation.structural import StructuralValidation, validate_graph_structure
from ..validation.topology import TopologyReport, TopologyValidator
from .contract import (
    GUARDS_CONTRACT,
    STATUS_QUO_CONTRACT,
    SWEEP_CONTRACT,
    UNREACHABLE_CONTRACT,
    ContractViolation,
    FieldContractError,
    StageContract,
    check_contract_compliance,
)
from .guards import apply_graph_guards
from .records import FieldDeletion, RepairRecord
from .router import RoutingDecision, ViolationRouter, partition_violations
from .status_quo import (
    REACHABILITY_CODES,
    StatusQuoResult,
    disconnected_option_violations,
    find_disconnected_options,
    fix_status_quo_connectivity,
)
from .sweep import BucketSummary, apply_bucket_a, run_sweep
from .unreachable import UnreachableFactorResult, handle_unreachable_factors

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "Received"
    FORMAT_LOCKED = "FormatLocked"
    SWEEP_APPLIED = "SweepApplied"
    REACHABILITY_FIXED = "ReachabilityFixed"
    ESCALATING = "Escalating"
    REPAIRED = "Repaired"
    VALIDATED = "Validated"
    PACKAGED = "Packaged"


@dataclass(slots=True)
class RepairSummary:
    """Audit record of one pipeline run."""

    edge_format: EdgeFormat = EdgeFormat.NONE
    repairs: list[RepairRecord] = field(default_factory=list)
    field_deletions: list[FieldDeletion] = field(default_factory=list)
    bucket_summary: BucketSummary = BucketSummary(0, 0, 0)
    unreachable_factors: UnreachableFactorResult = field(default_factory=UnreachableFactorResult)
    status_quo: StatusQuoResult = field(default_factory=StatusQuoResult)
    routing: RoutingDecision = field(default_factory=RoutingDecision)
    violations_before: list[str] = field(default_factory=list)
    violations_after: list[str] = field(default_factory=list)
    disconnected_options_before: list[str] = field(default_factory=list)
    disconnected_options_after: list[str] = field(default_factory=list)
    nodes_before: int = 0
    nodes_after: int = 0
    edges_before: int = 0
    edges_after: int = 0
    state_history: list[PipelineState] = field(default_factory=list)
    topology: TopologyReport | None = None
    contract_violations: list[ContractViolation] = field(default_factory=list)
    validator_failures: list[str] = field(default_factory=list)

    @property
    def state(self) -> PipelineState | None:
        return self.state_history[-1] if self.state_history else None

    @property
    def remaining_violations(self) -> list[str]:
        codes = list(self.violations_after)
        if self.topology is not None:
            codes.extend(v.code for v in self.topology.errors)
        return list(dict.fromkeys(codes))

    def to_dict(self) -> dict[str, Any]:
        counts = Counter(repair.code for repair in self.repairs)
        return {
            "edge_format": self.edge_format.value,
            "repairs_applied": len(self.repairs),
            "repair_counts": dict(sorted(counts.items())),
            "repairs": [repair.to_dict() for repair in self.repairs],
            "field_deletions": [deletion.to_dict() for deletion in self.field_deletions],
            "bucket_summary": self.bucket_summary.to_dict(),
            "unreachable_factors": self.unreachable_factors.to_dict(),
            "status_quo": self.status_quo.to_dict(),
            "llm_repair_needed": self.routing.llm_repair_needed,
            "llm_repair_called": self.routing.llm_repair_called,
            "llm_skip_reason": self.routing.skip_reason,
            "llm_failure_reason": self.routing.failure_reason,
            "routing": self.routing.to_dict(),
            "remaining_violations": self.remaining_violations,
            "violations_before": list(self.violations_before),
            "violations_after": list(self.violations_after),
            "disconnected_options_before": list(self.disconnected_options_before),
            "disconnected_options_after": list(self.disconnected_options_after),
            "node_counts": {"before": self.nodes_before, "after": self.nodes_after},
            "edge_counts": {"before": self.edges_before, "after": self.edges_after},
            "state_history": [state.value for state in self.state_history],
            "topology": self.topology.to_dict() if self.topology is not None else None,
            "contract_violations": [violation.to_dict() for violation in self.contract_violations],
            "validator_failures": list(self.validator_failures),
        }


@dataclass(frozen=True, slots=True)
class RepairOutcome:
    graph: dict[str, Any]
    summary: RepairSummary

    def to_dict(self) -> dict[str, Any]:
        return {"graph": self.graph, "repair_summary": self.summary.to_dict()}


def _error_codes(violations: list[Violation]) -> list[str]:
    return list(dict.fromkeys(v.code for v in violations if v.is_error))


def _coerce_validation(result: Any) -> list[Violation]:
    if isinstance(result, StructuralValidation):
        return list(result.violations)
    if isinstance(result, Mapping):
        return validate_violations(result.get("violations") or [])
    raise AdapterResponseError([f"(root): expected a validation mapping, got {type(result).__name__}"])


class RepairOrchestrator:
    """Run the repair pipeline for one request at a time.

    Args:
        config: Pipeline configuration; defaults apply when omitted.
        repair_adapter: External repair capability, or None.
        validator: External structural validator, or None to use the
            deterministic local validator.
    """

    def __init__(
        self,
        config: RepairConfig | None = None,
        *,
        repair_adapter: RepairAdapter | None = None,
        validator: StructuralValidatorAdapter | None = None,
    ) -> None:
        self.config = config or RepairConfig()
        self.repair_adapter = repair_adapter
        self.validator = validator

    async def run(
        self,
        graph: dict[str, Any],
        violations: list[Any] | None = None,
        *,
        brief: str = "",
    ) -> RepairOutcome:
        """Repair ``graph`` in place and package it with its summary.

        Args:
            graph: Request-owned graph, mutated in place.
            violations: Violations cited by an upstream validator. When
                None, the configured validator is run to obtain them.
            brief: Original decision brief, forwarded to external repair.

        Returns:
            RepairOutcome holding the same graph object and its summary.

        Raises:
            GraphInputError: If the envelope cannot be processed.
            FieldContractError: If a stage breaks its field contract and
                contract assertions are enabled.
        """
        validate_graph_envelope(graph)
        summary = RepairSummary()
        self._transition(summary, PipelineState.RECEIVED)
        graph.setdefault("edges", [])
        summary.nodes_before = len(graph_nodes(graph))
        summary.edges_before = len(graph_edges(graph))

        if violations is None:
            cited = await self._validate(graph, summary)
        else:
            cited = validate_violations(violations)
        summary.violations_before = _error_codes(cited)

        fmt = detect_edge_format(graph_edges(graph))
        summary.edge_format = fmt
        present = formats_present(graph_edges(graph))
        if len(present) > 1:
            logger.warning(
                "Mixed edge formats %s; rewriting every edge to %s",
                sorted(item.value for item in present),
                fmt.value,
            )
        self._transition(summary, PipelineState.FORMAT_LOCKED, format=fmt.value)

        # Sweep: Bucket A, Bucket B, factor→goal split.
        baseline = copy.deepcopy(graph)
        sweep = run_sweep(graph, cited, fmt, split_factor_goal=self.config.split_factor_goal_edges)
        summary.repairs.extend(sweep.repairs)
        summary.field_deletions.extend(sweep.field_deletions)
        summary.bucket_summary = sweep.buckets
        self._check_contract(summary, baseline, graph, SWEEP_CONTRACT, sweep.field_deletions)
        self._transition(summary, PipelineState.SWEEP_APPLIED, repairs=len(sweep.repairs))

        baseline = copy.deepcopy(graph)
        unreachable = handle_unreachable_factors(graph, fmt)
        summary.unreachable_factors = unreachable
        summary.repairs.extend(unreachable.repairs)
        summary.field_deletions.extend(unreachable.field_deletions)
        self._check_contract(summary, baseline, graph, UNREACHABLE_CONTRACT, unreachable.field_deletions)

        summary.disconnected_options_before = find_disconnected_options(graph)
        codes = {v.code for v in cited}
        if summary.disconnected_options_before and not REACHABILITY_CODES.intersection(codes):
            logger.info(
                "Disconnected option(s) %s found without a reachability citation",
                summary.disconnected_options_before,
            )
            codes.add("NO_PATH_TO_GOAL")
        baseline = copy.deepcopy(graph)
        status_quo = fix_status_quo_connectivity(graph, codes, fmt)
        summary.status_quo = status_quo
        summary.repairs.extend(status_quo.repairs)
        self._check_contract(summary, baseline, graph, STATUS_QUO_CONTRACT, ())
        summary.disconnected_options_after = find_disconnected_options(graph)
        self._transition(summary, PipelineState.REACHABILITY_FIXED)

        residual = await self._residual_violations(graph, summary)
        if partition_violations(residual).needs_escalation and self.repair_adapter is not None:
            self._transition(summary, PipelineState.ESCALATING)

        def reapply_bucket_a(repaired: dict[str, Any]) -> None:
            repaired.setdefault("edges", [])
            summary.repairs.extend(apply_bucket_a(repaired, fmt))

        async def revalidate(repaired: dict[str, Any]) -> list[Violation]:
            return await self._residual_violations(repaired, summary)

        router = ViolationRouter(
            self.repair_adapter,
            timeout_s=self.config.adapter_timeout_s,
            max_attempts=self.config.max_repair_attempts,
        )
        summary.routing = await router.route(
            graph,
            residual,
            brief=brief,
            edge_format=fmt,
            revalidate=revalidate,
            post_repair=reapply_bucket_a,
        )
        if summary.routing.graph_replaced:
            self._transition(summary, PipelineState.REPAIRED)

        baseline = copy.deepcopy(graph)
        summary.repairs.extend(apply_graph_guards(graph))
        self._check_contract(summary, baseline, graph, GUARDS_CONTRACT, ())

        summary.topology = TopologyValidator(strict=self.config.strict_topology).validate(graph, fmt)
        summary.violations_after = _error_codes(list(validate_graph_structure(graph, fmt).violations))
        self._transition(summary, PipelineState.VALIDATED, valid=summary.topology.valid)

        summary.nodes_after = len(graph_nodes(graph))
        summary.edges_after = len(graph_edges(graph))
        self._transition(
            summary,
            PipelineState.PACKAGED,
            repairs=len(summary.repairs),
            remaining=len(summary.remaining_violations),
        )
        return RepairOutcome(graph=graph, summary=summary)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, summary: RepairSummary, state: PipelineState, **context: Any) -> None:
        summary.state_history.append(state)
        if context:
            details = " ".join(f"{key}={value}" for key, value in context.items())
            logger.info("Repair pipeline → %s (%s)", state.value, details)
        else:
            logger.info("Repair pipeline → %s", state.value)

    async def _validate(self, graph: dict[str, Any], summary: RepairSummary) -> list[Violation]:
        """Run the external validator, falling back to the local one on failure."""
        if self.validator is None:
            return list(validate_graph_structure(graph).violations)
        timeout = self.config.validator_timeout_s
        try:
            result = await asyncio.wait_for(self.validator.validate(copy.deepcopy(graph)), timeout=timeout)
            return _coerce_validation(result)
        except asyncio.TimeoutError:
            reason = f"validator timed out after {timeout:g}s"
        except AdapterError as exc:
            reason = f"{type(exc).__name__}: {exc}"
        except Exception as exc:
            reason = f"validator_error: {type(exc).__name__}: {exc}"
        summary.validator_failures.append(reason)
        logger.warning("Structural validator failed (%s); using local validator", reason)
        return list(validate_graph_structure(graph).violations)

    async def _residual_violations(self, graph: dict[str, Any], summary: RepairSummary) -> list[Violation]:
        """Fresh violations plus synthetic ones for options still disconnected."""
        violations = await self._validate(graph, summary)
        cited = {(v.code, v.node_id) for v in violations}
        extra = [
            v
            for v in disconnected_option_violations(find_disconnected_options(graph))
            if (v.code, v.node_id) not in cited
        ]
        return violations + extra

    def _check_contract(
        self,
        summary: RepairSummary,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        contract: StageContract,
        deletions: Iterable[FieldDeletion],
    ) -> None:
        cleared = [deletion.node_id for deletion in deletions if deletion.field == "data"]
        violations = check_contract_compliance(before, after, contract, skip_data_for_node_ids=cleared)
        if not violations:
            return
        if self.config.contract_assertions:
            raise FieldContractError(contract.name, violations)
        for violation in violations:
            logger.error(
                "Field contract violation in %s: %s at %s.%s",
                contract.name,
                violation.kind.value,
                violation.location,
                violation.field,
            )
        summary.contract_violations.extend(violations)
