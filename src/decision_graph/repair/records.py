"""Audit records produced by the repair stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class RepairRecord:
    """One applied fix.

    Attributes:
        code: Violation or repair code that triggered the fix.
        path: Location in the graph, e.g. ``edges[a→b].strength_mean``.
        action: Human-readable description of what changed.
    """

    code: str
    path: str
    action: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "path": self.path, "action": self.action}


@dataclass(frozen=True, slots=True)
class FieldDeletion:
    """A field removed from a node while repairing it."""

    stage: str
    node_id: str
    field: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "node_id": self.node_id,
            "field": self.field,
            "reason": self.reason,
        }
