"""Definition schema using Pydantic for validation.

This module defines the wire shape of a rendered pipeline document:
- Pipeline: parameters, variables, jobs
- Jobs: matrix (axes or named legs), dependencies, policy, pool
- Steps: script or template reference

Each model converts itself into the frozen dataclasses in `model.py`;
nothing outside the loader deals with these classes.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .expr import as_text
from .model import (
    AxisSet,
    Binding,
    JobTemplate,
    Matrix,
    PipelineDefinition,
    StepKind,
    StepTemplate,
)

LEG_AXIS = "leg"


class _Spec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


def _condition_text(value: Union[bool, str, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class StepSpec(_Spec):
    """A single step: either `script` or `template`."""
    script: Optional[str] = None
    template: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    name: Optional[str] = None
    condition: Optional[Union[bool, str]] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    continue_on_error: Union[bool, str] = Field(False, alias="continueOnError")
    timeout_in_minutes: Optional[float] = Field(None, alias="timeoutInMinutes", gt=0)
    env: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _one_kind(self) -> "StepSpec":
        if (self.script is None) == (self.template is None):
            raise ValueError("step must define exactly one of 'script' or 'template'")
        if self.script is not None and self.parameters:
            raise ValueError("'parameters' is only valid on template steps")
        return self

    def to_template(self) -> StepTemplate:
        kind = StepKind.SCRIPT if self.script is not None else StepKind.TEMPLATE
        return StepTemplate(
            kind=kind,
            command=self.script if self.script is not None else self.template,
            display_name=self.display_name or self.name or "",
            condition=_condition_text(self.condition),
            parameters=dict(self.parameters),
            continue_on_error=self.continue_on_error,
            timeout_minutes=self.timeout_in_minutes,
            env={k: as_text(v) for k, v in self.env.items()},
        )


class AxisSetSpec(_Spec):
    """
    One block of matrix axes.

    Examples:
        axes: {os: [linux, macos], rust: [stable, nightly]}
        exclude: [{os: macos, rust: nightly}]
        when: "eq(parameters.cross, true)"
    """
    axes: Dict[str, List[Any]]
    when: Optional[Union[bool, str]] = None
    exclude: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("axes")
    @classmethod
    def _named_mappings(cls, v: Dict[str, List[Any]]) -> Dict[str, List[Any]]:
        for axis, values in v.items():
            for item in values:
                if isinstance(item, Mapping) and "name" not in item:
                    raise ValueError(f"matrix axis '{axis}': mapping values need a 'name'")
        return v

    def to_axis_set(self) -> AxisSet:
        axes = []
        for axis, values in self.axes.items():
            bindings = []
            for v in values:
                if isinstance(v, Mapping):
                    variables = {k: val for k, val in v.items() if k != "name"}
                    bindings.append(Binding(as_text(v["name"]), {axis: as_text(v["name"]), **variables}))
                else:
                    bindings.append(Binding(as_text(v), {axis: v}))
            axes.append((axis, tuple(bindings)))
        return AxisSet(axes=tuple(axes), when=_condition_text(self.when))


class StrategySpec(_Spec):
    """Named-leg matrix: {leg name: {variable: value}}."""
    matrix: Dict[str, Optional[Dict[str, Any]]] = Field(default_factory=dict)

    def to_axis_set(self) -> AxisSet:
        legs = tuple(
            Binding(str(name), {LEG_AXIS: str(name), **(variables or {})})
            for name, variables in self.matrix.items()
        )
        return AxisSet(axes=((LEG_AXIS, legs),))


class JobSpec(_Spec):
    job: str = Field(..., min_length=1)
    display_name: Optional[str] = Field(None, alias="displayName")
    depends_on: Union[str, List[str], None] = Field(None, alias="dependsOn")
    strategy: Optional[StrategySpec] = None
    matrix: Union[AxisSetSpec, List[AxisSetSpec], None] = None
    pool: Union[str, Dict[str, Any], None] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[Union[bool, str]] = None
    continue_on_error: Union[bool, str] = Field(False, alias="continueOnError")
    timeout_in_minutes: Optional[float] = Field(None, alias="timeoutInMinutes", gt=0)
    services: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepSpec]

    @field_validator("steps")
    @classmethod
    def _has_steps(cls, v: List[StepSpec]) -> List[StepSpec]:
        if not v:
            raise ValueError("job must have at least one step")
        return v

    @model_validator(mode="after")
    def _one_matrix(self) -> "JobSpec":
        if self.strategy is not None and self.matrix is not None:
            raise ValueError("use either 'strategy.matrix' or 'matrix', not both")
        return self

    def _pool_name(self) -> str:
        if self.pool is None:
            return "default"
        if isinstance(self.pool, str):
            return self.pool
        for key in ("name", "vmImage", "image"):
            if self.pool.get(key):
                return as_text(self.pool[key])
        return "default"

    def _matrix(self) -> Optional[Matrix]:
        if self.strategy is not None:
            return Matrix(axis_sets=(self.strategy.to_axis_set(),))
        if self.matrix is None:
            return None
        sets = self.matrix if isinstance(self.matrix, list) else [self.matrix]
        exclude = tuple(
            {k: as_text(v) for k, v in ex.items()}
            for s in sets
            for ex in s.exclude
        )
        return Matrix(axis_sets=tuple(s.to_axis_set() for s in sets), exclude=exclude)

    def to_template(self) -> JobTemplate:
        if self.depends_on is None:
            deps: tuple = ()
        elif isinstance(self.depends_on, str):
            deps = (self.depends_on,)
        else:
            deps = tuple(self.depends_on)
        return JobTemplate(
            id=self.job,
            display_name=self.display_name or "",
            steps=tuple(s.to_template() for s in self.steps),
            matrix=self._matrix(),
            depends_on=deps,
            continue_on_error=self.continue_on_error,
            timeout_minutes=self.timeout_in_minutes,
            pool=self._pool_name(),
            variables=dict(self.variables),
            condition=_condition_text(self.condition),
            services=dict(self.services),
        )


class PipelineSpec(_Spec):
    name: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    jobs: List[JobSpec] = Field(default_factory=list)

    def to_definition(self, parameters: Mapping[str, Any], default_name: str = "pipeline") -> PipelineDefinition:
        return PipelineDefinition(
            jobs=tuple(j.to_template() for j in self.jobs),
            parameters=parameters,
            variables=dict(self.variables),
            name=self.name or default_name,
        )
