# report.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Sequence, Tuple

from .dag import RunGraph
from .model import JobInstance, JobStatus, StepResult


class RunStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass(frozen=True)
class InstanceReport:
    id: str
    job_id: str
    display_name: str
    axes: Tuple[str, ...]
    status: JobStatus
    reason: str
    continue_on_error: bool
    duration: float
    steps: Tuple[StepResult, ...]

    @classmethod
    def from_instance(cls, inst: JobInstance) -> "InstanceReport":
        return cls(
            id=inst.id,
            job_id=inst.job_id,
            display_name=inst.display_name,
            axes=inst.axes,
            status=inst.status,
            reason=inst.reason,
            continue_on_error=inst.continue_on_error,
            duration=inst.duration,
            steps=tuple(inst.step_results),
        )

    @property
    def failing(self) -> bool:
        """True when this instance makes the whole run fail."""
        return self.status in (JobStatus.FAILED, JobStatus.TIMED_OUT) and not self.continue_on_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job": self.job_id,
            "display_name": self.display_name,
            "axes": list(self.axes),
            "status": self.status.value,
            "reason": self.reason,
            "continue_on_error": self.continue_on_error,
            "duration": round(self.duration, 3),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class JobReport:
    id: str
    display_name: str
    status: JobStatus
    instances: Tuple[str, ...]
    # first instance start to last instance finish
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "instances": list(self.instances),
        }


@dataclass(frozen=True)
class RunReport:
    pipeline: str
    status: RunStatus
    aborted: bool
    duration: float
    jobs: Tuple[JobReport, ...]
    instances: Tuple[InstanceReport, ...]

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def instance(self, instance_id: str) -> InstanceReport:
        for i in self.instances:
            if i.id == instance_id:
                return i
        raise KeyError(instance_id)

    def job(self, job_id: str) -> JobReport:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    def counts(self) -> Dict[str, int]:
        c = Counter(i.status.value for i in self.instances)
        return {s.value: c.get(s.value, 0) for s in JobStatus if s.terminal}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "status": self.status.value,
            "aborted": self.aborted,
            "duration": round(self.duration, 3),
            "counts": self.counts(),
            "jobs": [j.to_dict() for j in self.jobs],
            "instances": [i.to_dict() for i in self.instances],
        }


def _span(insts: Sequence[JobInstance]) -> float:
    started = [i.started_at for i in insts if i.started_at is not None]
    if not started:
        return 0.0
    finished = [i.started_at + i.duration for i in insts if i.started_at is not None]
    return max(finished) - min(started)


def _rollup(statuses) -> JobStatus:
    statuses = set(statuses)
    for s in (JobStatus.FAILED, JobStatus.TIMED_OUT, JobStatus.SUCCEEDED):
        if s in statuses:
            return s
    return JobStatus.SKIPPED


def aggregate(
    graph: RunGraph,
    *,
    aborted: bool = False,
    pipeline: str = "pipeline",
    duration: float = 0.0,
) -> RunReport:
    """
    Compute the final verdict once every instance is terminal.

    Succeeded iff the run was not aborted and every instance without
    continue_on_error ended Succeeded or Skipped. Zero-instance jobs are
    reported as Skipped with no instances.
    """
    pending = [i.id for i in graph.instances.values() if not i.is_terminal()]
    if pending:
        raise ValueError(f"cannot aggregate, instances not terminal: {pending}")

    instances = tuple(InstanceReport.from_instance(i) for i in graph.instances.values())
    by_id = {i.id: i for i in instances}

    jobs = tuple(
        JobReport(
            id=job_id,
            display_name=graph.jobs[job_id].name,
            status=_rollup(by_id[i].status for i in ids),
            instances=tuple(ids),
            duration=_span([graph.instances[i] for i in ids]),
        )
        for job_id, ids in graph.job_instances.items()
    )

    failed = aborted or any(i.failing for i in instances)
    return RunReport(
        pipeline=pipeline,
        status=RunStatus.FAILED if failed else RunStatus.SUCCEEDED,
        aborted=aborted,
        duration=duration,
        jobs=jobs,
        instances=instances,
    )
