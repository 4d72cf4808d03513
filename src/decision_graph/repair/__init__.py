"""Repair stages of the decision graph pipeline.

- sweep: Bucket A (unconditional) and Bucket B (citation-gated) fixes
- unreachable: reclassification of factors no option can influence
- status_quo: wiring of disconnected options
- router: escalation of residual topology errors to external repair
- guards: final self-loop and cycle removal
- contract: declared field-preservation contracts per stage
- orchestrator: state machine and Repair Summary
"""

from .contract import STAGE_CONTRACTS, ContractViolation, FieldContractError, StageContract, check_contract_compliance
from .orchestrator import PipelineState, RepairOrchestrator, RepairOutcome, RepairSummary
from .records import FieldDeletion, RepairRecord
from .router import RoutingDecision, ViolationRouter, partition_violations
from .status_quo import find_disconnected_options, fix_status_quo_connectivity
from .sweep import SweepResult, run_sweep
from .unreachable import handle_unreachable_factors

__all__ = [
    "STAGE_CONTRACTS",
    "ContractViolation",
    "FieldContractError",
    "FieldDeletion",
    "PipelineState",
    "RepairOrchestrator",
    "RepairOutcome",
    "RepairRecord",
    "RepairSummary",
    "RoutingDecision",
    "StageContract",
    "SweepResult",
    "ViolationRouter",
    "check_contract_compliance",
    "find_disconnected_options",
    "fix_status_quo_connectivity",
    "handle_unreachable_factors",
    "partition_violations",
    "run_sweep",
]
