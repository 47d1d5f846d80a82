# template.py
"""
Load-time rendering of definition documents.

Everything dynamic in a definition is resolved here, once, before the
definition object is built:

  - ${{ expr }} values (typed when the whole string is one marker)
  - ${{ if }} / ${{ elseif }} / ${{ else }} mapping keys and list items
  - ${{ insert }} keys (mapping merge)
  - list items that evaluate to a list are spliced in place
  - `template:` references to step/job templates

The scheduler never sees any of this; it only gets flat concrete jobs.
"""
from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from .errors import DefinitionError
from .expr import all_of, directive, evaluate, interpolate, merge_insert, truthy
from .model import JobTemplate, PipelineDefinition, StepKind, StepTemplate

MAX_TEMPLATE_DEPTH = 16


# ---------------------------------------------------------------------
# Structural rendering
# ---------------------------------------------------------------------

def _is_conditional_block(value: Any) -> bool:
    if not isinstance(value, Mapping) or not value:
        return False
    keys = [directive(k) for k in value]
    return all(k is not None and k[0] in ("if", "elseif", "else") for k in keys)


def _select_branches(items: Iterable[Tuple[Any, Any]], env: Mapping[str, Any]) -> List[Any]:
    """
    Walk an if/elseif/else chain and return the raw value of each taken branch.

    Several independent `if` keys may appear in one mapping; each starts a
    new chain.
    """
    chosen: List[Any] = []
    taken: Optional[bool] = None  # None: no open chain
    for key, value in items:
        word, cond = directive(key)
        if word == "if":
            taken = truthy(evaluate(cond, env))
            if taken:
                chosen.append(value)
        elif word == "elseif":
            if taken is None:
                raise DefinitionError("elseif without a preceding if", key=key)
            if not taken and truthy(evaluate(cond, env)):
                taken = True
                chosen.append(value)
        elif word == "else":
            if taken is None:
                raise DefinitionError("else without a preceding if", key=key)
            if not taken:
                chosen.append(value)
            taken = None
    return chosen


def _render_mapping(value: Mapping[str, Any], env: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    chain: List[Tuple[Any, Any]] = []

    def flush() -> None:
        for branch in _select_branches(chain, env):
            rendered = render(branch, env)
            if rendered is None:
                continue
            if not isinstance(rendered, Mapping):
                raise DefinitionError(
                    "conditional block inside a mapping must contain a mapping",
                    found=type(rendered).__name__,
                )
            out.update(rendered)
        chain.clear()

    for key, item in value.items():
        d = directive(key)
        if d is None:
            flush()
            out[interpolate(key, env)] = render(item, env)
            continue
        word, _cond = d
        if word == "insert":
            flush()
            merge_insert(out, render(item, env))
            continue
        if word == "if":
            flush()
        chain.append((key, item))
    flush()
    return out


def _render_list(value: List[Any], env: Mapping[str, Any]) -> List[Any]:
    out: List[Any] = []
    # Consecutive conditional items form one chain, so `- ${{ else }}:` may
    # follow `- ${{ if ... }}:` as its own list item.
    chain: List[Tuple[Any, Any]] = []

    def flush() -> None:
        for branch in _select_branches(chain, env):
            rendered = render(branch, env)
            if isinstance(rendered, list):
                out.extend(rendered)
            elif rendered is not None:
                out.append(rendered)
        chain.clear()

    for item in value:
        if _is_conditional_block(item):
            chain.extend(item.items())
            continue
        flush()
        spliced = isinstance(item, str) and "${{" in item
        rendered = render(item, env)
        if spliced and isinstance(rendered, list):
            out.extend(rendered)
        elif spliced and rendered is None:
            continue
        else:
            out.append(rendered)
    flush()
    return out


def render(value: Any, env: Mapping[str, Any]) -> Any:
    """Render one raw document node against a load-time environment."""
    if isinstance(value, str):
        return interpolate(value, env)
    if isinstance(value, Mapping):
        return _render_mapping(value, env)
    if isinstance(value, list):
        return _render_list(value, env)
    return value


# ---------------------------------------------------------------------
# Template library
# ---------------------------------------------------------------------

def _strip_alias(name: str) -> str:
    # "install-rust.yml@templates" -> "install-rust.yml"
    return name.split("@", 1)[0].strip()


class TemplateLibrary:
    """Named step/job templates, loaded from a directory or added inline."""

    def __init__(self, templates: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._docs: Dict[str, Mapping[str, Any]] = {}
        for name, doc in (templates or {}).items():
            self.add(name, doc)

    @classmethod
    def from_dir(cls, path: str | Path) -> "TemplateLibrary":
        root = Path(path).expanduser().resolve()
        if not root.is_dir():
            raise DefinitionError(f"Template directory not found: {root}")
        lib = cls()
        for p in sorted(root.glob("*.y*ml")):
            with open(p, "r", encoding="utf-8") as f:
                doc = yaml.safe_load(f) or {}
            if not isinstance(doc, Mapping):
                raise DefinitionError(f"Template {p.name} must be a mapping")
            lib.add(p.name, doc)
        return lib

    def add(self, name: str, doc: Mapping[str, Any]) -> None:
        self._docs[_strip_alias(name)] = doc

    def copy(self) -> "TemplateLibrary":
        return TemplateLibrary(self._docs)

    def names(self) -> List[str]:
        return sorted(self._docs)

    def get(self, ref: str) -> Mapping[str, Any]:
        name = _strip_alias(ref)
        for candidate in (name, f"{name}.yml", f"{name}.yaml"):
            if candidate in self._docs:
                return self._docs[candidate]
        if name.endswith((".yml", ".yaml")):
            stem = name.rsplit(".", 1)[0]
            if stem in self._docs:
                return self._docs[stem]
        raise DefinitionError(f"Unknown template '{ref}'", known=self.names())

    def instantiate(
        self,
        ref: str,
        parameters: Optional[Mapping[str, Any]],
        section: str,
    ) -> List[Any]:
        """Render one section (`steps` or `jobs`) of a template with its parameters."""
        doc = self.get(ref)
        declared = doc.get("parameters") or {}
        provided = dict(parameters or {})
        unknown = sorted(set(provided) - set(declared))
        if unknown:
            raise DefinitionError(
                f"Template '{ref}' got unexpected parameters: {unknown}",
                declared=sorted(declared),
            )
        params = {**declared, **provided}
        if section not in doc:
            raise DefinitionError(f"Template '{ref}' has no '{section}' section")
        rendered = render(doc[section], {"parameters": params})
        if rendered is None:
            return []
        if not isinstance(rendered, list):
            raise DefinitionError(f"Template '{ref}' section '{section}' must be a list")
        return rendered


# ---------------------------------------------------------------------
# Template reference resolution
# ---------------------------------------------------------------------

def expand_job_refs(
    raw_jobs: List[Any],
    library: Optional[TemplateLibrary],
    depth: int = 0,
) -> List[Any]:
    """Replace `- template: x` items in a rendered job list with the template's jobs."""
    if depth > MAX_TEMPLATE_DEPTH:
        raise DefinitionError("Template nesting too deep (recursive job template?)")
    out: List[Any] = []
    for item in raw_jobs:
        if isinstance(item, Mapping) and "template" in item and "job" not in item:
            if library is None:
                raise DefinitionError(f"Job template '{item['template']}' used but no templates configured")
            jobs = library.instantiate(item["template"], item.get("parameters"), "jobs")
            out.extend(expand_job_refs(jobs, library, depth + 1))
        else:
            out.append(item)
    return out


def _inherit(ref: StepTemplate, inner: StepTemplate) -> StepTemplate:
    """
    Apply the settings written on a `template:` step to one step it expands to.

    Conditions are and-ed. continueOnError, timeoutInMinutes and env fill in
    whatever the inner step leaves unset; a displayName becomes a prefix.
    """
    name = inner.display_name
    if ref.display_name:
        name = f"{ref.display_name}: {inner.name}"
    return replace(
        inner,
        display_name=name,
        condition=all_of(ref.condition, inner.condition),
        continue_on_error=inner.continue_on_error if inner.continue_on_error is not False else ref.continue_on_error,
        timeout_minutes=inner.timeout_minutes if inner.timeout_minutes is not None else ref.timeout_minutes,
        env={**ref.env, **inner.env},
    )


def _compile_steps(
    steps: Iterable[StepTemplate],
    library: Optional[TemplateLibrary],
    depth: int,
) -> List[StepTemplate]:
    # Import here to avoid a circular import (schema builds StepTemplates)
    from .schema import StepSpec

    if depth > MAX_TEMPLATE_DEPTH:
        raise DefinitionError("Template nesting too deep (recursive step template?)")
    out: List[StepTemplate] = []
    for step in steps:
        if step.kind is not StepKind.TEMPLATE:
            out.append(step)
            continue
        if library is None:
            raise DefinitionError(f"Step template '{step.command}' used but no templates configured")
        raw = library.instantiate(step.command, step.parameters, "steps")
        try:
            compiled = [StepSpec.model_validate(r).to_template() for r in raw]
        except ValidationError as e:
            raise DefinitionError(f"Invalid step in template '{step.command}': {e}") from e
        compiled = [_inherit(step, inner) for inner in compiled]
        out.extend(_compile_steps(compiled, library, depth + 1))
    return out


def resolve_templates(
    definition: PipelineDefinition,
    library: Optional[TemplateLibrary],
) -> PipelineDefinition:
    """
    Turn template-kind steps into concrete script steps.
    The expander never sees kind='template' steps after this.
    """
    jobs: List[JobTemplate] = []
    for job in definition.jobs:
        if any(s.kind is StepKind.TEMPLATE for s in job.steps):
            steps = tuple(_compile_steps(job.steps, library, 0))
            job = replace(job, steps=steps)
        jobs.append(job)
    return replace(definition, jobs=tuple(jobs))
