"""Canonical serialization and hashing helpers.

Graphs are hashed for the response cache and compared byte-for-byte in
idempotence checks, so every serialization path goes through
``canonical_json_dumps``: sorted keys, compact separators, no NaN.
"""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping
from typing import Any


def canonical_json_dumps(data: Any) -> str:
    """Serialize ``data`` as compact JSON with sorted keys.

    Non-ASCII text is written as-is. NaN and infinity raise ``ValueError``;
    pass the value through ``normalize_for_hash`` first when it may hold them.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def normalize_for_hash(value: Any) -> Any:
    """Replace non-finite floats with string markers so they can be hashed.

    Raw drafted graphs routinely carry NaN and infinity, which strict JSON
    cannot represent. Mapping keys are coerced to ``str`` the same way
    ``json.dumps`` would.
    """
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return "__nan__"
        return "__inf__" if value > 0 else "__-inf__"
    if isinstance(value, Mapping):
        return {str(key): normalize_for_hash(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_for_hash(item) for item in value]
    return value


def request_hash(graph: Mapping[str, Any], violations: list[Any] | None, brief: str) -> str:
    """Compute the cache key for a repair request.

    Args:
        graph: Raw input graph.
        violations: Violations as plain mappings, or None when not supplied.
        brief: Original decision brief text.

    Returns:
        64-character hex digest of the normalized request.
    """
    payload = normalize_for_hash({"graph": graph, "violations": violations, "brief": brief})
    return sha256_bytes(canonical_json_dumps(payload).encode("utf-8"))
