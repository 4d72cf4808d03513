"""Repair pipeline configuration loader.

This module loads the pipeline configuration from config/repair.yaml and
applies ``DECISION_GRAPH_*`` environment overrides on top of it. A missing
file yields the defaults; malformed YAML or wrongly typed values raise
``RepairConfigError``. Timeouts are clamped into their allowed range rather
than rejected.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = Path("config/repair.yaml")
ENV_PREFIX = "DECISION_GRAPH_"

ADAPTER_TIMEOUT_RANGE = (5.0, 300.0)
VALIDATOR_TIMEOUT_RANGE = (1.0, 300.0)
MAX_REPAIR_ATTEMPTS = 2


class RepairConfigError(ValueError):
    """Raised when repair configuration is invalid."""


@dataclass(frozen=True)
class RepairConfig:
    """Complete repair pipeline configuration."""

    strict_topology: bool = False
    adapter_timeout_s: float = 110.0
    validator_timeout_s: float = 10.0
    max_repair_attempts: int = 2
    cache_ttl_s: float = 900.0
    cache_max_entries: int = 256
    rate_limit_per_minute: int = 60
    contract_assertions: bool = False
    split_factor_goal_edges: bool = True

    @property
    def cache_enabled(self) -> bool:
        return self.cache_ttl_s > 0

    @property
    def rate_limit_enabled(self) -> bool:
        return self.rate_limit_per_minute > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "strict_topology": self.strict_topology,
            "adapter_timeout_s": self.adapter_timeout_s,
            "validator_timeout_s": self.validator_timeout_s,
            "max_repair_attempts": self.max_repair_attempts,
            "cache": {"ttl_s": self.cache_ttl_s, "max_entries": self.cache_max_entries},
            "rate_limit": {"per_minute": self.rate_limit_per_minute},
            "contract_assertions": self.contract_assertions,
            "split_factor_goal_edges": self.split_factor_goal_edges,
        }


def load_repair_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RepairConfig:
    """Load repair configuration from YAML and the environment.

    Args:
        config_path: Path to repair.yaml. Defaults to config/repair.yaml.
        env: Environment mapping. Defaults to ``os.environ``.

    Returns:
        RepairConfig with overrides applied and timeouts clamped.

    Raises:
        RepairConfigError: If the file or an override is invalid.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    data: dict[str, Any] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RepairConfigError(f"Invalid YAML in {path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise RepairConfigError(f"Config must be a mapping, got {type(loaded).__name__}")
        data = loaded or {}

    config = _parse_config(data)
    config = _apply_env_overrides(config, os.environ if env is None else env)
    return _clamp(config)


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, Mapping):
        raise RepairConfigError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise RepairConfigError(f"{name} must be a boolean, got {value!r}")


def _as_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise RepairConfigError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise RepairConfigError(f"{name} must be a number, got {value!r}") from e


def _as_int(name: str, value: Any, *, minimum: int) -> int:
    number = _as_number(name, value)
    if not number.is_integer():
        raise RepairConfigError(f"{name} must be an integer, got {value!r}")
    if number < minimum:
        raise RepairConfigError(f"{name} must be >= {minimum}, got {value!r}")
    return int(number)


def _parse_config(data: Mapping[str, Any]) -> RepairConfig:
    """Parse configuration from YAML data."""
    defaults = RepairConfig()
    cache = _section(data, "cache")
    rate_limit = _section(data, "rate_limit")
    return RepairConfig(
        strict_topology=_as_bool("strict_topology", data.get("strict_topology", defaults.strict_topology)),
        adapter_timeout_s=_as_number("adapter_timeout_s", data.get("adapter_timeout_s", defaults.adapter_timeout_s)),
        validator_timeout_s=_as_number(
            "validator_timeout_s", data.get("validator_timeout_s", defaults.validator_timeout_s)
        ),
        max_repair_attempts=_as_int(
            "max_repair_attempts", data.get("max_repair_attempts", defaults.max_repair_attempts), minimum=1
        ),
        cache_ttl_s=_as_non_negative("cache.ttl_s", cache.get("ttl_s", defaults.cache_ttl_s)),
        cache_max_entries=_as_int("cache.max_entries", cache.get("max_entries", defaults.cache_max_entries), minimum=1),
        rate_limit_per_minute=_as_int(
            "rate_limit.per_minute", rate_limit.get("per_minute", defaults.rate_limit_per_minute), minimum=0
        ),
        contract_assertions=_as_bool(
            "contract_assertions", data.get("contract_assertions", defaults.contract_assertions)
        ),
        split_factor_goal_edges=_as_bool(
            "split_factor_goal_edges", data.get("split_factor_goal_edges", defaults.split_factor_goal_edges)
        ),
    )


def _as_non_negative(name: str, value: Any) -> float:
    number = _as_number(name, value)
    if number < 0:
        raise RepairConfigError(f"{name} must be >= 0, got {value!r}")
    return number


def _apply_env_overrides(config: RepairConfig, env: Mapping[str, str]) -> RepairConfig:
    overrides: dict[str, Any] = {}

    def get(name: str) -> str | None:
        value = env.get(ENV_PREFIX + name)
        return value if value not in (None, "") else None

    if (value := get("STRICT_TOPOLOGY")) is not None:
        overrides["strict_topology"] = _as_bool("DECISION_GRAPH_STRICT_TOPOLOGY", value)
    if (value := get("ADAPTER_TIMEOUT_S")) is not None:
        overrides["adapter_timeout_s"] = _as_number("DECISION_GRAPH_ADAPTER_TIMEOUT_S", value)
    if (value := get("VALIDATOR_TIMEOUT_S")) is not None:
        overrides["validator_timeout_s"] = _as_number("DECISION_GRAPH_VALIDATOR_TIMEOUT_S", value)
    if (value := get("MAX_REPAIR_ATTEMPTS")) is not None:
        overrides["max_repair_attempts"] = _as_int("DECISION_GRAPH_MAX_REPAIR_ATTEMPTS", value, minimum=1)
    if (value := get("CACHE_TTL_S")) is not None:
        overrides["cache_ttl_s"] = _as_non_negative("DECISION_GRAPH_CACHE_TTL_S", value)
    if (value := get("CACHE_MAX_ENTRIES")) is not None:
        overrides["cache_max_entries"] = _as_int("DECISION_GRAPH_CACHE_MAX_ENTRIES", value, minimum=1)
    if (value := get("RATE_LIMIT_PER_MINUTE")) is not None:
        overrides["rate_limit_per_minute"] = _as_int("DECISION_GRAPH_RATE_LIMIT_PER_MINUTE", value, minimum=0)
    if (value := get("CONTRACT_ASSERTIONS")) is not None:
        overrides["contract_assertions"] = _as_bool("DECISION_GRAPH_CONTRACT_ASSERTIONS", value)
    if (value := get("SPLIT_FACTOR_GOAL_EDGES")) is not None:
        overrides["split_factor_goal_edges"] = _as_bool("DECISION_GRAPH_SPLIT_FACTOR_GOAL_EDGES", value)

    return replace(config, **overrides) if overrides else config


def _clamp(config: RepairConfig) -> RepairConfig:
    low, high = ADAPTER_TIMEOUT_RANGE
    adapter_timeout = min(max(config.adapter_timeout_s, low), high)
    low, high = VALIDATOR_TIMEOUT_RANGE
    validator_timeout = min(max(config.validator_timeout_s, low), high)
    attempts = min(config.max_repair_attempts, MAX_REPAIR_ATTEMPTS)
    return replace(
        config,
        adapter_timeout_s=adapter_timeout,
        validator_timeout_s=validator_timeout,
        max_repair_attempts=attempts,
    )
