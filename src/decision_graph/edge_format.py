"""Edge format negotiation.

Every graph encodes edge numbers in exactly one of two field families:

- ``V1_FLAT``: ``strength_mean``, ``strength_std``, ``belief_exists``
- ``LEGACY``: ``weight``, ``belief``

``detect_edge_format`` inspects the edge list once and the result is
threaded through every later write, so synthetic and rewritten edges use
the same field names as the drafted ones. An edge drafted in the other
family is moved into the locked one by ``lock_edge_fields``.
``patch_edge_numeric`` and ``canonicalize_structural_edge`` write numbers
in place and never touch unrelated keys.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .model import STRUCTURAL_EDGE_KINDS, EdgeFormat

V1_FIELDS: tuple[str, ...] = ("strength_mean", "strength_std", "belief_exists")
LEGACY_FIELDS: tuple[str, ...] = ("weight", "belief")

# Certainty value carried by decision→option and option→factor edges.
STRUCTURAL_MEAN = 1.0
STRUCTURAL_STD = 0.01
STRUCTURAL_EXISTENCE = 1.0

# Weak causal link added when wiring an outcome or risk to the goal.
CAUSAL_MEAN = 0.3
CAUSAL_STD = 0.2
CAUSAL_EXISTENCE = 0.7


@dataclass(frozen=True, slots=True)
class FieldNames:
    """Field names of the numeric channel for one edge format."""

    mean: str | None
    std: str | None
    existence: str | None


_FIELD_NAMES: dict[EdgeFormat, FieldNames] = {
    EdgeFormat.V1_FLAT: FieldNames(mean="strength_mean", std="strength_std", existence="belief_exists"),
    EdgeFormat.LEGACY: FieldNames(mean="weight", std=None, existence="belief"),
    EdgeFormat.NONE: FieldNames(mean=None, std=None, existence=None),
}


def field_names(fmt: EdgeFormat) -> FieldNames:
    return _FIELD_NAMES[fmt]


def detect_edge_format(edges: Iterable[Mapping[str, Any]]) -> EdgeFormat:
    """Detect the numeric encoding of an edge list.

    Any V1_FLAT field anywhere wins, including on an edge that also carries
    LEGACY fields left over from an earlier conversion.

    Args:
        edges: Edge mappings.

    Returns:
        The detected format, ``EdgeFormat.NONE`` when no edge is numeric.
    """
    has_legacy = False
    for edge in edges:
        if any(name in edge for name in V1_FIELDS):
            return EdgeFormat.V1_FLAT
        if any(name in edge for name in LEGACY_FIELDS):
            has_legacy = True
    return EdgeFormat.LEGACY if has_legacy else EdgeFormat.NONE


def formats_present(edges: Iterable[Mapping[str, Any]]) -> set[EdgeFormat]:
    """Return every numeric field family that appears on any edge."""
    present: set[EdgeFormat] = set()
    for edge in edges:
        if any(name in edge for name in V1_FIELDS):
            present.add(EdgeFormat.V1_FLAT)
        elif any(name in edge for name in LEGACY_FIELDS):
            present.add(EdgeFormat.LEGACY)
    return present


# Foreign field → locked field. ``None`` means the foreign field has no
# counterpart and is dropped.
_FOREIGN_FIELDS: dict[EdgeFormat, dict[str, str | None]] = {
    EdgeFormat.V1_FLAT: {"weight": "strength_mean", "belief": "belief_exists"},
    EdgeFormat.LEGACY: {"strength_mean": "weight", "belief_exists": "belief", "strength_std": None},
    EdgeFormat.NONE: {},
}


@dataclass(frozen=True, slots=True)
class FieldRewrite:
    """Changes made by ``lock_edge_fields`` to one edge."""

    renamed: tuple[tuple[str, str], ...] = ()
    dropped: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.renamed or self.dropped)


def lock_edge_fields(edge: dict[str, Any], fmt: EdgeFormat) -> FieldRewrite:
    """Rewrite the numeric fields of ``edge`` into the family of ``fmt``.

    A foreign field moves to its locked name unless the edge already
    carries that name, in which case it is residue and is dropped. Every
    other key is left alone.
    """
    renamed: list[tuple[str, str]] = []
    dropped: list[str] = []
    for foreign, locked in _FOREIGN_FIELDS[fmt].items():
        if foreign not in edge:
            continue
        value = edge.pop(foreign)
        if locked is None or locked in edge:
            dropped.append(foreign)
        else:
            edge[locked] = value
            renamed.append((foreign, locked))
    return FieldRewrite(tuple(renamed), tuple(dropped))


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def is_non_finite_number(value: Any) -> bool:
    return isinstance(value, float) and not math.isfinite(value)


def edge_mean(edge: Mapping[str, Any], fmt: EdgeFormat) -> Any:
    """Raw mean/weight value of ``edge`` under ``fmt``, or ``None``."""
    name = _FIELD_NAMES[fmt].mean
    if name is None:
        return None
    return edge.get(name)


def set_edge_mean(edge: dict[str, Any], fmt: EdgeFormat, value: float) -> None:
    name = _FIELD_NAMES[fmt].mean
    if name is not None:
        edge[name] = value


def patch_edge_numeric(
    edge: dict[str, Any],
    fmt: EdgeFormat,
    *,
    mean: float | None = None,
    std: float | None = None,
    existence: float | None = None,
) -> dict[str, Any]:
    """Write numeric values into ``edge`` using the field names of ``fmt``.

    Values passed as ``None`` are left alone. LEGACY has no std field, so a
    ``std`` value is ignored there. ``EdgeFormat.NONE`` writes nothing, which
    keeps a graph without numeric edges in that format.

    Returns:
        The same ``edge`` mapping, mutated in place.
    """
    names = _FIELD_NAMES[fmt]
    for name, value in ((names.mean, mean), (names.std, std), (names.existence, existence)):
        if name is not None and value is not None:
            edge[name] = value
    return edge


def is_structural_kind_pair(from_kind: str | None, to_kind: str | None) -> bool:
    return (from_kind, to_kind) in STRUCTURAL_EDGE_KINDS


def is_canonical_structural(edge: Mapping[str, Any], fmt: EdgeFormat) -> bool:
    """True when ``edge`` already carries the structural certainty value."""
    names = _FIELD_NAMES[fmt]
    expected = ((names.mean, STRUCTURAL_MEAN), (names.std, STRUCTURAL_STD), (names.existence, STRUCTURAL_EXISTENCE))
    for name, value in expected:
        if name is None:
            continue
        current = edge.get(name)
        if not is_finite_number(current) or current != value:
            return False
    if fmt != EdgeFormat.NONE and edge.get("effect_direction", "positive") != "positive":
        return False
    return True


def canonicalize_structural_edge(edge: dict[str, Any], fmt: EdgeFormat) -> bool:
    """Force ``edge`` to structural certainty in place.

    Custom fields, ids and provenance are preserved. Under
    ``EdgeFormat.NONE`` this is a no-op.

    Returns:
        True if any field changed.
    """
    if fmt == EdgeFormat.NONE or is_canonical_structural(edge, fmt):
        return False
    patch_edge_numeric(
        edge,
        fmt,
        mean=STRUCTURAL_MEAN,
        std=STRUCTURAL_STD,
        existence=STRUCTURAL_EXISTENCE,
    )
    if "effect_direction" in edge:
        edge["effect_direction"] = "positive"
    return True


def new_structural_edge(source: str, target: str, fmt: EdgeFormat, **extra: Any) -> dict[str, Any]:
    """Build a fresh structural edge in the locked format."""
    edge: dict[str, Any] = {"from": source, "to": target}
    edge.update(extra)
    if fmt != EdgeFormat.NONE:
        edge["effect_direction"] = "positive"
    patch_edge_numeric(
        edge,
        fmt,
        mean=STRUCTURAL_MEAN,
        std=STRUCTURAL_STD,
        existence=STRUCTURAL_EXISTENCE,
    )
    return edge


def new_causal_edge(source: str, target: str, fmt: EdgeFormat, *, negative: bool = False) -> dict[str, Any]:
    """Build a weak causal edge in the locked format, signed by ``negative``."""
    edge: dict[str, Any] = {
        "from": source,
        "to": target,
        "effect_direction": "negative" if negative else "positive",
        "origin": "repair",
    }
    if fmt == EdgeFormat.NONE:
        del edge["effect_direction"]
    return patch_edge_numeric(
        edge,
        fmt,
        mean=-CAUSAL_MEAN if negative else CAUSAL_MEAN,
        std=CAUSAL_STD,
        existence=CAUSAL_EXISTENCE,
    )
