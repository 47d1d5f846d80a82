# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .errors import DefinitionError

ENV_PREFIX = "MATRIXCI_"
PARAM_ENV_PREFIX = "MATRIXCI_PARAM_"

DEFAULT_CAPACITY = 2
DEFAULT_OUTPUT_LIMIT = 4000  # chars of step output kept per step
DEFAULT_TICK_SECONDS = 0.05


def infer_agent_os(pool: str) -> str:
    p = pool.lower()
    if "windows" in p or p.startswith("win"):
        return "Windows_NT"
    if "mac" in p or "darwin" in p:
        return "Darwin"
    return "Linux"


@dataclass(frozen=True)
class EngineConfig:
    """
    Engine-wide knobs. Immutable; build a new one with `with_overrides`.

      default_capacity: agents in any pool not listed in `pools`
      pools:            pool name -> agent count
      pool_variables:   pool name -> variables exposed to instances on that pool
      output_limit:     characters of step output kept in each StepResult
      tick_seconds:     scheduler wake-up interval for timeout checks
      shell:            shell used by the local agent (None: platform default)
    """
    default_capacity: int = DEFAULT_CAPACITY
    pools: Mapping[str, int] = field(default_factory=dict)
    pool_variables: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    tick_seconds: float = DEFAULT_TICK_SECONDS
    shell: Optional[str] = None

    def __post_init__(self) -> None:
        if self.default_capacity < 1:
            raise ValueError(f"default_capacity must be >= 1, got {self.default_capacity}")
        for name, cap in self.pools.items():
            if cap < 1:
                raise ValueError(f"pool '{name}' capacity must be >= 1, got {cap}")
        if self.tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")

    def capacity(self, pool: str) -> int:
        return int(self.pools.get(pool, self.default_capacity))

    def agent_variables(self, pool: str) -> Dict[str, Any]:
        """Variables an agent in `pool` contributes (Agent.OS unless configured)."""
        out: Dict[str, Any] = {"Agent.OS": infer_agent_os(pool), "Agent.Pool": pool}
        out.update(self.pool_variables.get(pool, {}))
        return out

    def with_overrides(self, **changes: Any) -> "EngineConfig":
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Read MATRIXCI_AGENTS, MATRIXCI_POOLS ("name=N,name=N"),
        MATRIXCI_OUTPUT_LIMIT, MATRIXCI_TICK and MATRIXCI_SHELL.
        """
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {}
        if env.get(ENV_PREFIX + "AGENTS"):
            kwargs["default_capacity"] = int(env[ENV_PREFIX + "AGENTS"])
        if env.get(ENV_PREFIX + "POOLS"):
            kwargs["pools"] = parse_pools(env[ENV_PREFIX + "POOLS"].split(","))
        if env.get(ENV_PREFIX + "OUTPUT_LIMIT"):
            kwargs["output_limit"] = int(env[ENV_PREFIX + "OUTPUT_LIMIT"])
        if env.get(ENV_PREFIX + "TICK"):
            kwargs["tick_seconds"] = float(env[ENV_PREFIX + "TICK"])
        if env.get(ENV_PREFIX + "SHELL"):
            kwargs["shell"] = env[ENV_PREFIX + "SHELL"]
        return cls(**kwargs)


def parse_pools(items) -> Dict[str, int]:
    pools: Dict[str, int] = {}
    for item in items:
        item = item.strip()
        if not item:
            continue
        name, sep, count = item.rpartition("=")
        if not sep or not name:
            raise ValueError(f"pool must look like name=N, got {item!r}")
        pools[name.strip()] = int(count)
    return pools


# ----------------------------------------------------------------------
# Parameters
# ----------------------------------------------------------------------

def resolve_parameters(
    declared: Mapping[str, Any],
    overrides: Optional[Mapping[str, Any]] = None,
    explicit: Optional[Mapping[str, Any]] = None,
) -> Mapping[str, Any]:
    """
    Resolve global parameters.

    Precedence: explicit value > caller override > declared default.
    A value for a parameter the definition does not declare is an error.
    """
    resolved: Dict[str, Any] = dict(declared)
    for source, values in (("override", overrides), ("explicit", explicit)):
        for name, value in (values or {}).items():
            if name not in declared:
                raise DefinitionError(
                    f"Unknown parameter '{name}' ({source})",
                    declared=sorted(declared),
                )
            resolved[name] = value
    return MappingProxyType(resolved)


def parameter_overrides_from_env(
    declared: Mapping[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """MATRIXCI_PARAM_<NAME> values for declared parameters (name match is case-insensitive)."""
    env = os.environ if environ is None else environ
    by_upper = {name.upper(): name for name in declared}
    out: Dict[str, str] = {}
    for key, value in env.items():
        if not key.startswith(PARAM_ENV_PREFIX):
            continue
        name = by_upper.get(key[len(PARAM_ENV_PREFIX):].upper())
        if name is not None:
            out[name] = value
    return out
