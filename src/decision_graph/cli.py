"""decision-graph CLI: repair and validate decision graphs.

Commands:
    repair: Run the repair pipeline and print ``{graph, repair_summary}``.
    validate: Run the local structural validator.
    topology: Run the topology validator.

Output is canonical JSON on stdout. Exit codes: 0 on success (or a clean
validation), 2 when validation reports errors, 1 on unreadable input.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from . import __version__
from .api import load_graph, load_violations, repair_graph
from .canonical import canonical_json_dumps, normalize_for_hash
from .config import RepairConfigError, load_repair_config
from .model import GraphInputError, validate_graph_envelope
from .validation.structural import validate_graph_structure
from .validation.topology import validate_topology

if TYPE_CHECKING:
    from collections.abc import Sequence


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the decision-graph CLI."""
    parser = argparse.ArgumentParser(
        prog="decision-graph",
        description="Deterministic repair and topology validation for causal decision graphs",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level written to stderr (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    repair_parser = subparsers.add_parser("repair", help="Repair a graph and print it with its repair summary")
    repair_parser.add_argument("input", type=Path, help="Graph or request document (.json, .yaml, .yml)")
    repair_parser.add_argument("--brief", default="", help="Original decision brief")
    repair_parser.add_argument(
        "--violations",
        type=Path,
        default=None,
        help="Violation list document; the local validator runs when omitted",
    )
    repair_parser.add_argument("--config", type=Path, default=None, help="Path to repair.yaml")
    repair_parser.add_argument("--out", type=Path, default=None, help="Write output here instead of stdout")

    validate_parser = subparsers.add_parser("validate", help="Run the structural validator")
    validate_parser.add_argument("input", type=Path, help="Graph document")

    topology_parser = subparsers.add_parser("topology", help="Run the topology validator")
    topology_parser.add_argument("input", type=Path, help="Graph document")
    topology_parser.add_argument(
        "--strict",
        action="store_true",
        help="Treat invalid edge kinds and out-of-range strengths as errors",
    )

    return parser


def _emit(payload: Any, out: Path | None = None) -> None:
    text = canonical_json_dumps(normalize_for_hash(payload))
    if out is None:
        sys.stdout.write(text + "\n")
    else:
        out.write_text(text + "\n", encoding="utf-8")


def cmd_repair(
    input_path: Path,
    brief: str,
    violations_path: Path | None,
    config_path: Path | None,
    out: Path | None,
) -> int:
    """Repair a graph with the local validator and no external adapter.

    Returns:
        0 on success, 1 on unreadable input or configuration.
    """
    try:
        config = load_repair_config(config_path)
        graph = load_graph(input_path)
        violations = load_violations(violations_path) if violations_path is not None else None
        response = repair_graph(graph, violations, brief=brief, config=config)
    except (OSError, GraphInputError, RepairConfigError) as e:
        sys.stderr.write(f"Error: {e}\n")
        return 1
    _emit(response, out)
    return 0


def cmd_validate(input_path: Path) -> int:
    """Print the structural validation result.

    Returns:
        0 when the graph has no errors, 2 otherwise, 1 on unreadable input.
    """
    try:
        graph = load_graph(input_path)
        validate_graph_envelope(graph)
    except (OSError, GraphInputError) as e:
        sys.stderr.write(f"Error: {e}\n")
        return 1
    result = validate_graph_structure(graph)
    _emit(result.to_dict())
    return 0 if result.ok else 2


def cmd_topology(input_path: Path, strict: bool) -> int:
    """Print the topology report.

    Returns:
        0 when the graph is valid, 2 otherwise, 1 on unreadable input.
    """
    try:
        graph = load_graph(input_path)
        validate_graph_envelope(graph)
    except (OSError, GraphInputError) as e:
        sys.stderr.write(f"Error: {e}\n")
        return 1
    report = validate_topology(graph, strict=strict)
    _emit(report.to_dict())
    return 0 if report.valid else 2


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the decision-graph CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), stream=sys.stderr)

    if args.command == "repair":
        return cmd_repair(
            input_path=args.input,
            brief=args.brief,
            violations_path=args.violations,
            config_path=args.config,
            out=args.out,
        )

    if args.command == "validate":
        return cmd_validate(args.input)

    if args.command == "topology":
        return cmd_topology(args.input, args.strict)

    # Should not reach here due to required=True on subparsers
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
