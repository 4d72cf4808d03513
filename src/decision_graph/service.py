"""Request envelope around the repair pipeline.

A request is handled as: rate limit → boundary validation → cache lookup
→ pipeline → cache store. The pipeline works on a deep copy of the
caller's graph, so the cache key always describes the raw input and the
caller's object is never touched.

Only a completed pipeline run is stored. If the awaiting task is
cancelled, ``asyncio.CancelledError`` propagates out of the pipeline
before the store and nothing is cached.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .adapters import RepairAdapter, StructuralValidatorAdapter
from .cache import ResponseCache
from .canonical import request_hash
from .config import RepairConfig
from .model import Violation, validate_graph_envelope, validate_violations
from .ratelimit import RateLimiter
from .repair.orchestrator import RepairOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_KEY = "anonymous"


@dataclass(frozen=True, slots=True)
class ServiceResult:
    """Response of one service call."""

    response: dict[str, Any]
    cache_hit: bool
    request_hash: str


def _violations_payload(violations: list[Any] | None) -> list[Any] | None:
    if violations is None:
        return None
    return [v.to_dict() if isinstance(v, Violation) else v for v in violations]


class RepairService:
    """Rate-limited, cached entry point for graph repair.

    Args:
        config: Pipeline configuration.
        repair_adapter: External repair capability, or None.
        validator: External structural validator, or None.
        cache: Response cache; built from ``config`` when omitted and
            disabled when ``cache_ttl_s`` is 0.
        rate_limiter: Limiter; built from ``config`` when omitted.
    """

    def __init__(
        self,
        config: RepairConfig | None = None,
        *,
        repair_adapter: RepairAdapter | None = None,
        validator: StructuralValidatorAdapter | None = None,
        cache: ResponseCache | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.config = config or RepairConfig()
        self.orchestrator = RepairOrchestrator(
            self.config,
            repair_adapter=repair_adapter,
            validator=validator,
        )
        if cache is None and self.config.cache_enabled:
            cache = ResponseCache(ttl_s=self.config.cache_ttl_s, max_entries=self.config.cache_max_entries)
        self.cache = cache
        self.rate_limiter = rate_limiter or RateLimiter(self.config.rate_limit_per_minute)

    async def repair(
        self,
        graph: Mapping[str, Any],
        violations: list[Any] | None = None,
        *,
        brief: str = "",
        client_key: str = DEFAULT_CLIENT_KEY,
    ) -> ServiceResult:
        """Repair one graph.

        Raises:
            RateLimitExceeded: If ``client_key`` is over budget.
            GraphInputError: If the graph or violations are malformed.
        """
        self.rate_limiter.check(client_key)
        validate_graph_envelope(graph)
        if violations is not None:
            validate_violations(violations)

        key = request_hash(graph, _violations_payload(violations), brief)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Repair cache hit %s", key[:12])
                return ServiceResult(response=cached, cache_hit=True, request_hash=key)
            logger.info("Repair cache miss %s", key[:12])

        working = copy.deepcopy(dict(graph))
        working_violations = copy.deepcopy(violations) if violations is not None else None
        outcome = await self.orchestrator.run(working, working_violations, brief=brief)
        response = outcome.to_dict()

        if self.cache is not None:
            self.cache.put(key, response)
        return ServiceResult(response=response, cache_hit=False, request_hash=key)
