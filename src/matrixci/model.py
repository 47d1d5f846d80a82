# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .errors import InvalidTransition


# ----------------------------------------------------------------------
# Definition side (immutable once loaded)
# ----------------------------------------------------------------------

class StepKind(str, Enum):
    SCRIPT = "script"
    TEMPLATE = "template"


@dataclass(frozen=True)
class StepTemplate:
    """A single command (step) inside a CI job, before expansion."""
    kind: StepKind
    command: str
    display_name: str = ""
    condition: Optional[str] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)
    continue_on_error: Union[bool, str] = False
    timeout_minutes: Optional[float] = None
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        lines = self.command.strip().splitlines()
        return lines[0] if lines else self.kind.value


@dataclass(frozen=True)
class Binding:
    """One value on a matrix axis: a label plus the variables it sets."""
    label: str
    variables: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AxisSet:
    """
    Ordered axes whose cross-product forms instances.

    `when` is an optional guard; a false guard contributes no instances.
    """
    axes: Tuple[Tuple[str, Tuple[Binding, ...]], ...]
    when: Optional[str] = None


@dataclass(frozen=True)
class Matrix:
    axis_sets: Tuple[AxisSet, ...]
    exclude: Tuple[Mapping[str, str], ...] = ()


@dataclass(frozen=True)
class JobTemplate:
    """
    A CI job: steps + dependencies + policy, before matrix expansion.

    `continue_on_error` may be a bool or an expression evaluated per instance
    (e.g. "$[eq(variables.rust, 'nightly')]").
    """
    id: str
    steps: Tuple[StepTemplate, ...]
    display_name: str = ""
    matrix: Optional[Matrix] = None
    depends_on: Tuple[str, ...] = ()
    continue_on_error: Union[bool, str] = False
    timeout_minutes: Optional[float] = None
    pool: str = "default"
    variables: Mapping[str, Any] = field(default_factory=dict)
    condition: Optional[str] = None
    services: Mapping[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.display_name or self.id


@dataclass(frozen=True)
class PipelineDefinition:
    jobs: Tuple[JobTemplate, ...]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    name: str = "pipeline"

    def job(self, job_id: str) -> JobTemplate:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)


# ----------------------------------------------------------------------
# Run side (created by expansion, mutated only by the scheduler loop)
# ----------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "Pending"
    BLOCKED = "Blocked"
    READY = "Ready"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    TIMED_OUT = "TimedOut"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL


TERMINAL = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.TIMED_OUT})

_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.BLOCKED, JobStatus.READY, JobStatus.SKIPPED}),
    JobStatus.BLOCKED: frozenset({JobStatus.READY, JobStatus.SKIPPED}),
    JobStatus.READY: frozenset({JobStatus.RUNNING, JobStatus.SKIPPED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.TIMED_OUT}),
}


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class StepInstance:
    """A concrete step: macros substituted, condition already a bool."""
    name: str
    run: str
    condition: bool = True
    continue_on_error: bool = False
    timeout: Optional[float] = None  # seconds
    env: Mapping[str, str] = field(default_factory=dict)
    kind: StepKind = StepKind.SCRIPT


@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    duration: float = 0.0
    output: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "output": self.output,
        }


@dataclass
class JobInstance:
    """
    One JobTemplate expanded against one matrix binding.

    `axes` is the tuple of binding labels; `id` is derived from the job id and
    those labels, so the same template + matrix always yields the same ids.
    """
    id: str
    job_id: str
    display_name: str
    axes: Tuple[str, ...]
    variables: Dict[str, Any]
    steps: List[StepInstance]
    pool: str = "default"
    continue_on_error: bool = False
    timeout: Optional[float] = None  # seconds
    condition: bool = True

    status: JobStatus = JobStatus.PENDING
    reason: str = ""
    step_results: List[StepResult] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def transition(self, target: JobStatus, reason: str = "") -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if target not in allowed:
            raise InvalidTransition(self.id, self.status.value, target.value)
        self.status = target
        if reason:
            self.reason = reason
        if target is JobStatus.RUNNING:
            self.started_at = time.monotonic()
        elif target.terminal and self.started_at is not None:
            self.finished_at = time.monotonic()

    @property
    def duration(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    @property
    def deadline(self) -> Optional[float]:
        if self.timeout is None or self.started_at is None:
            return None
        return self.started_at + self.timeout

    def is_terminal(self) -> bool:
        return self.status.terminal
