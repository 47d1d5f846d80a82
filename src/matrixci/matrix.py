# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import EngineConfig
from .errors import DefinitionError
from .expr import as_text, evaluate_bool, expand_macros
from .model import (
    AxisSet,
    Binding,
    JobInstance,
    JobTemplate,
    Matrix,
    PipelineDefinition,
    StepInstance,
    StepKind,
    StepTemplate,
)

Combination = Tuple[Tuple[str, Binding], ...]


def instance_id(job_id: str, labels: Sequence[str]) -> str:
    if not labels:
        return job_id
    return f"{job_id}[{', '.join(labels)}]"


def _combinations(axis_set: AxisSet) -> List[Combination]:
    """Ordered cross-product: first axis varies slowest, values keep their order."""
    names = [name for name, _ in axis_set.axes]
    values = [bindings for _, bindings in axis_set.axes]
    return [tuple(zip(names, combo)) for combo in product(*values)]


def _excluded(combo: Combination, exclude: Sequence[Mapping[str, str]]) -> bool:
    labels = {axis: b.label.casefold() for axis, b in combo}
    for rule in exclude:
        if rule and all(labels.get(k) == as_text(v).casefold() for k, v in rule.items()):
            return True
    return False


def matrix_combinations(
    matrix: Matrix,
    parameters: Mapping[str, Any],
    variables: Optional[Mapping[str, Any]] = None,
) -> List[Combination]:
    """
    Active combinations of a matrix, in display order.

    Axis sets whose `when` guard is false contribute nothing; an axis with no
    values makes its set empty. Zero combinations is a valid result.
    """
    env = {"parameters": dict(parameters), "variables": dict(variables or {})}
    out: List[Combination] = []
    for axis_set in matrix.axis_sets:
        if axis_set.when is not None and not evaluate_bool(axis_set.when, env):
            continue
        for combo in _combinations(axis_set):
            if not _excluded(combo, matrix.exclude):
                out.append(combo)
    return out


# ----------------------------------------------------------------------
# Instance construction
# ----------------------------------------------------------------------

def _eval_env(variables: Mapping[str, Any], parameters: Mapping[str, Any]) -> Dict[str, Any]:
    env: Dict[str, Any] = dict(variables)
    env["variables"] = dict(variables)
    env["parameters"] = dict(parameters)
    return env


def _step_instance(step: StepTemplate, variables: Mapping[str, Any], env: Mapping[str, Any], job: JobTemplate) -> StepInstance:
    if step.kind is not StepKind.SCRIPT:
        raise DefinitionError(
            f"Job '{job.id}' has an unresolved template reference '{step.command}'",
        )
    return StepInstance(
        name=expand_macros(step.name, variables),
        run=expand_macros(step.command, variables),
        condition=True if step.condition is None else evaluate_bool(step.condition, env),
        continue_on_error=evaluate_bool(step.continue_on_error, env),
        timeout=step.timeout_minutes * 60 if step.timeout_minutes else None,
        env={k: expand_macros(v, variables) for k, v in step.env.items()},
    )


def _build_instance(
    job: JobTemplate,
    combo: Combination,
    parameters: Mapping[str, Any],
    base_variables: Mapping[str, Any],
    config: EngineConfig,
) -> JobInstance:
    labels = tuple(b.label for _, b in combo)
    iid = instance_id(job.id, labels)
    display = job.name if not labels else f"{job.name} ({', '.join(labels)})"

    variables: Dict[str, Any] = dict(base_variables)
    variables.update(job.variables)
    for _axis, binding in combo:
        variables.update(binding.variables)
    # One macro pass so variables may refer to matrix values, e.g. "$(os)-x64"
    variables = {k: expand_macros(v, variables) for k, v in variables.items()}

    pool = expand_macros(job.pool, variables, strict=True)
    variables.update(config.agent_variables(pool))
    variables["Agent.JobName"] = display
    variables["System.JobId"] = iid

    env = _eval_env(variables, parameters)
    return JobInstance(
        id=iid,
        job_id=job.id,
        display_name=display,
        axes=labels,
        variables=variables,
        steps=[_step_instance(s, variables, env, job) for s in job.steps],
        pool=pool,
        continue_on_error=evaluate_bool(job.continue_on_error, env),
        timeout=job.timeout_minutes * 60 if job.timeout_minutes else None,
        condition=True if job.condition is None else evaluate_bool(job.condition, env),
    )


def expand_job(
    job: JobTemplate,
    parameters: Mapping[str, Any],
    variables: Optional[Mapping[str, Any]] = None,
    config: Optional[EngineConfig] = None,
) -> List[JobInstance]:
    """
    Expand one JobTemplate into its concrete instances.

    No matrix -> exactly one instance with no axis labels.
    Matrix    -> one instance per active combination (possibly none).
    Same inputs always give the same ordered ids.
    """
    config = config or EngineConfig()
    base = dict(variables or {})
    if job.matrix is None:
        combos: List[Combination] = [()]
    else:
        combos = matrix_combinations(job.matrix, parameters, base)

    instances: List[JobInstance] = []
    seen: Dict[str, int] = {}
    for combo in combos:
        inst = _build_instance(job, combo, parameters, base, config)
        if inst.id in seen:
            raise DefinitionError(f"Matrix for job '{job.id}' produces duplicate instance '{inst.id}'")
        seen[inst.id] = len(instances)
        instances.append(inst)
    return instances


def expand_pipeline(
    definition: PipelineDefinition,
    config: Optional[EngineConfig] = None,
) -> Dict[str, List[JobInstance]]:
    """job id -> ordered instances, in definition order."""
    config = config or EngineConfig()
    out: Dict[str, List[JobInstance]] = {}
    for job in definition.jobs:
        if job.id in out:
            raise DefinitionError(f"Duplicate job id: {job.id}")
        out[job.id] = expand_job(job, definition.parameters, definition.variables, config)
    return out
