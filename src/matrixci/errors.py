# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON run report
      - debugging without full tracebacks
    """
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Validation errors (fatal, raised before anything runs)
# ----------------------------------------------------------------------

class DefinitionError(CIError):
    def __init__(self, message: str, **details: Any):
        super().__init__("DefinitionError", message, details)


class EvaluationError(CIError):
    def __init__(self, message: str, expression: Optional[str] = None, **details: Any):
        if expression is not None:
            details = {"expression": expression, **details}
        super().__init__("EvaluationError", message, details)


class UnknownJobError(CIError):
    def __init__(self, job: str, missing: str, known: List[str]):
        super().__init__(
            "UnknownJobError",
            f"Job '{job}' depends on missing job '{missing}'",
            {"known": sorted(known)},
        )
        self.job = job
        self.missing = missing


class CycleError(CIError):
    def __init__(self, jobs: List[str]):
        super().__init__(
            "CycleError",
            f"Dependency cycle between jobs: {', '.join(jobs)}",
        )
        self.jobs = list(jobs)


class InvalidTransition(CIError):
    def __init__(self, instance: str, current: str, target: str):
        super().__init__(
            "InvalidTransition",
            f"Instance '{instance}' cannot move from {current} to {target}",
        )


# ----------------------------------------------------------------------
# Execution errors (per instance, never abort the run)
# ----------------------------------------------------------------------

class StepFailure(CIError):
    def __init__(self, instance: str, step: str, exit_code: int):
        super().__init__(
            "StepFailure",
            f"[{instance}] step '{step}' failed (exit={exit_code})",
        )
        self.instance = instance
        self.step = step
        self.exit_code = exit_code


class TimeoutFailure(CIError):
    def __init__(self, command: str, timeout: float, output: str = ""):
        super().__init__(
            "TimeoutFailure",
            f"command exceeded {timeout:.1f}s",
            {"command": command},
        )
        self.timeout = timeout
        self.output = output


class AgentUnavailable(CIError):
    def __init__(self, pool: str, capacity: int):
        super().__init__(
            "AgentUnavailable",
            f"no free agent in pool '{pool}' (capacity={capacity})",
        )
        self.pool = pool
