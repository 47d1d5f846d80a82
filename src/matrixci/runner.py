# runner.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from .agent import Agent
from .config import EngineConfig
from .errors import DefinitionError, StepFailure, TimeoutFailure
from .expr import as_text
from .model import JobStatus, StepInstance, StepKind, StepResult, StepStatus

Emit = Callable[[StepResult], None]


@dataclass(frozen=True)
class Outcome:
    """How a job instance's step sequence ended."""
    status: JobStatus
    reason: str = ""


def env_for(variables: Mapping[str, Any]) -> Dict[str, str]:
    """
    Expose instance variables to commands the way hosted agents do:
    `Agent.OS` -> `AGENT_OS`, `rust` -> `RUST`. Non-scalar values are skipped.
    """
    out: Dict[str, str] = {}
    for name, value in variables.items():
        if isinstance(value, (dict, list, tuple, set)):
            continue
        out[name.upper().replace(".", "_").replace(" ", "_")] = as_text(value)
    return out


class StepRunner:
    """
    Executes one instance's steps strictly in order on one agent.

    - a step whose condition is false is skipped; siblings are unaffected
    - a non-zero exit aborts the remaining steps unless the step has
      continue_on_error
    - each StepResult is emitted as soon as it exists
    """

    def __init__(self, agent: Agent, config: Optional[EngineConfig] = None):
        self.agent = agent
        self.config = config or EngineConfig()

    def _tail(self, output: str) -> str:
        limit = self.config.output_limit
        return output[-limit:] if limit and len(output) > limit else output

    def run(
        self,
        instance_id: str,
        steps: Sequence[StepInstance],
        variables: Mapping[str, Any],
        emit: Emit,
        cancel: threading.Event,
        deadline: Optional[float] = None,
    ) -> Outcome:
        base_env = env_for(variables)
        soft_failures = []

        for step in steps:
            if step.kind is not StepKind.SCRIPT:
                raise DefinitionError(f"[{instance_id}] step '{step.name}' is not a script step")

            if cancel.is_set():
                return Outcome(JobStatus.FAILED, "cancelled")

            if not step.condition:
                emit(StepResult(step.name, StepStatus.SKIPPED))
                continue

            timeout = step.timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    emit(StepResult(step.name, StepStatus.TIMED_OUT))
                    return Outcome(JobStatus.TIMED_OUT, "job timeout reached before step start")
                timeout = remaining if timeout is None else min(timeout, remaining)

            env = dict(base_env)
            env.update(step.env)

            started = time.monotonic()
            try:
                exit_code, output = self.agent.run(step.run, env, timeout, cancel)
            except TimeoutFailure as e:
                emit(StepResult(
                    step.name,
                    StepStatus.TIMED_OUT,
                    duration=time.monotonic() - started,
                    output=self._tail(e.output),
                ))
                return Outcome(JobStatus.TIMED_OUT, f"step '{step.name}' {e.message}")
            except OSError as e:
                emit(StepResult(
                    step.name,
                    StepStatus.FAILED,
                    duration=time.monotonic() - started,
                    output=str(e),
                ))
                return Outcome(JobStatus.FAILED, f"step '{step.name}' could not start: {e}")
            duration = time.monotonic() - started

            if cancel.is_set():
                emit(StepResult(step.name, StepStatus.FAILED, exit_code, duration, self._tail(output)))
                return Outcome(JobStatus.FAILED, "cancelled")

            if exit_code == 0:
                emit(StepResult(step.name, StepStatus.SUCCEEDED, exit_code, duration, self._tail(output)))
                continue

            emit(StepResult(step.name, StepStatus.FAILED, exit_code, duration, self._tail(output)))
            if step.continue_on_error:
                soft_failures.append(step.name)
                continue
            return Outcome(JobStatus.FAILED, str(StepFailure(instance_id, step.name, exit_code)))

        if soft_failures:
            return Outcome(JobStatus.SUCCEEDED, f"succeeded with issues: {', '.join(soft_failures)}")
        return Outcome(JobStatus.SUCCEEDED)
