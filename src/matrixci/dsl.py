# dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .config import resolve_parameters
from .model import (
    AxisSet,
    Binding,
    JobTemplate,
    Matrix,
    PipelineDefinition,
    StepKind,
    StepTemplate,
)
from .schema import LEG_AXIS, AxisSetSpec


def sh(
    name: str,
    cmd: str,
    *,
    condition: Optional[str] = None,
    continue_on_error: Union[bool, str] = False,
    timeout_minutes: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
) -> StepTemplate:
    return StepTemplate(
        kind=StepKind.SCRIPT,
        command=cmd,
        display_name=name,
        condition=condition,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
        env=dict(env or {}),
    )


def template_ref(
    ref: str,
    parameters: Optional[Mapping[str, Any]] = None,
    *,
    name: str = "",
    condition: Optional[str] = None,
    continue_on_error: Union[bool, str] = False,
    timeout_minutes: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
) -> StepTemplate:
    """Reference a step template; the settings given here apply to every step it expands to."""
    return StepTemplate(
        kind=StepKind.TEMPLATE,
        command=ref,
        display_name=name,
        condition=condition,
        parameters=dict(parameters or {}),
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
        env=dict(env or {}),
    )


def axes(values: Mapping[str, Iterable[Any]], *, when: Optional[str] = None) -> AxisSet:
    """axes({"os": ["linux", "macos"], "rust": ["stable"]}, when="...")"""
    return AxisSetSpec(axes={k: list(v) for k, v in values.items()}, when=when).to_axis_set()


def legs(named: Mapping[str, Mapping[str, Any]], *, when: Optional[str] = None) -> AxisSet:
    """Named matrix legs: legs({"Linux": {"vmImage": "ubuntu-latest"}})"""
    bindings = tuple(
        Binding(str(name), {LEG_AXIS: str(name), **dict(variables or {})})
        for name, variables in named.items()
    )
    return AxisSet(axes=((LEG_AXIS, bindings),), when=when)


def matrix(*axis_sets: Union[AxisSet, Mapping[str, Iterable[Any]]], exclude: Optional[List[Mapping[str, Any]]] = None) -> Matrix:
    sets = tuple(a if isinstance(a, AxisSet) else axes(a) for a in axis_sets)
    return Matrix(
        axis_sets=sets,
        exclude=tuple({k: str(v) for k, v in ex.items()} for ex in (exclude or [])),
    )


def job(
    id: str,
    *steps: StepTemplate,  # allow job("x", sh(...), sh(...))
    display_name: str = "",
    depends_on: Optional[Iterable[str]] = None,
    matrix: Optional[Matrix] = None,
    continue_on_error: Union[bool, str] = False,
    timeout_minutes: Optional[float] = None,
    pool: str = "default",
    variables: Optional[Dict[str, Any]] = None,
    condition: Optional[str] = None,
    services: Optional[Dict[str, Any]] = None,
) -> JobTemplate:
    if not steps:
        raise ValueError(f"job({id!r}) must have at least one step")

    if isinstance(depends_on, str):
        depends_on = [depends_on]

    return JobTemplate(
        id=id,
        steps=tuple(steps),
        display_name=display_name,
        matrix=matrix,
        depends_on=tuple(depends_on or ()),
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
        pool=pool,
        variables=dict(variables or {}),
        condition=condition,
        services=dict(services or {}),
    )


def pipeline(
    *jobs: JobTemplate,
    parameters: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    variables: Optional[Mapping[str, Any]] = None,
    name: str = "pipeline",
) -> PipelineDefinition:
    """`parameters` are declared defaults; `overrides` replace them by name."""
    return PipelineDefinition(
        jobs=tuple(jobs),
        parameters=resolve_parameters(parameters or {}, explicit=overrides),
        variables=dict(variables or {}),
        name=name,
    )
