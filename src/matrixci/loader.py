# loader.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from .config import parameter_overrides_from_env, resolve_parameters
from .errors import DefinitionError
from .model import PipelineDefinition
from .schema import PipelineSpec
from .template import TemplateLibrary, expand_job_refs, render, resolve_templates

_RESERVED = ("parameters", "templates")


def coerce_scalar(value: Any) -> Any:
    """Parse a CLI/env string the way YAML would ("false" -> False, "3" -> 3)."""
    if not isinstance(value, str):
        return value
    try:
        parsed = yaml.safe_load(value)
    except yaml.YAMLError:
        return value
    return value if parsed is None and value.strip() not in ("null", "~") else parsed


def declared_parameters(raw: Any) -> Dict[str, Any]:
    """
    Accept both parameter forms:
      parameters: {name: default, ...}
      parameters: [{name: x, default: ...}, ...]
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, list):
        out: Dict[str, Any] = {}
        for item in raw:
            if not isinstance(item, Mapping) or "name" not in item:
                raise DefinitionError("parameter list entries need a 'name'")
            out[str(item["name"])] = item.get("default")
        return out
    raise DefinitionError(f"'parameters' must be a mapping or a list, got {type(raw).__name__}")


def load_from_dict(
    raw: Mapping[str, Any],
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    explicit: Optional[Mapping[str, Any]] = None,
    templates: Optional[TemplateLibrary] = None,
    default_name: str = "pipeline",
) -> PipelineDefinition:
    """
    Build a PipelineDefinition from an already-parsed document.

    Steps:
      1. resolve parameters (explicit > override > declared default)
      2. render ${{ }} markers, conditional keys and inserts
      3. splice job templates, validate the shape
      4. compile step templates into script steps

    Raises:
      DefinitionError: malformed document, unknown parameter or template
      EvaluationError: bad expression inside the document
    """
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Pipeline definition must be a mapping, got {type(raw).__name__}")

    declared = declared_parameters(raw.get("parameters"))
    params = resolve_parameters(
        declared,
        overrides={k: coerce_scalar(v) for k, v in (overrides or {}).items()},
        explicit={k: coerce_scalar(v) for k, v in (explicit or {}).items()},
    )

    # inline templates must not leak into a library the caller reuses
    library = templates.copy() if templates is not None else TemplateLibrary()
    for name, doc in (raw.get("templates") or {}).items():
        library.add(name, doc)

    body = {k: v for k, v in raw.items() if k not in _RESERVED}
    rendered = render(body, {"parameters": dict(params)})
    rendered["jobs"] = expand_job_refs(rendered.get("jobs") or [], library)

    try:
        doc = PipelineSpec.model_validate(rendered)
    except ValidationError as e:
        raise DefinitionError(f"Invalid pipeline definition: {e}") from e

    definition = doc.to_definition(params, default_name=default_name)
    return resolve_templates(definition, library)


def load_pipeline(
    path: str | Path,
    *,
    explicit: Optional[Mapping[str, Any]] = None,
    templates_dir: str | Path | None = None,
    use_env: bool = True,
) -> PipelineDefinition:
    """
    Load a pipeline definition from a YAML file.

    Caller overrides come from MATRIXCI_PARAM_<NAME> environment variables
    (when `use_env`), explicit values from `explicit` (the CLI's --param).
    Templates are looked up in `templates_dir`, defaulting to a `templates/`
    directory beside the definition when one exists.

    Returns:
      PipelineDefinition
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise DefinitionError(f"Pipeline file not found: {p}")
    if p.suffix not in (".yml", ".yaml"):
        raise DefinitionError(f"Pipeline must be a .yml/.yaml file, got: {p.name}")

    try:
        with open(p, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Malformed YAML in {p.name}: {e}") from e
    if raw is None:
        raise DefinitionError(f"Pipeline file is empty: {p.name}")
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Pipeline definition must be a mapping, got {type(raw).__name__}")

    library: Optional[TemplateLibrary] = None
    if templates_dir is not None:
        library = TemplateLibrary.from_dir(templates_dir)
    elif (p.parent / "templates").is_dir():
        library = TemplateLibrary.from_dir(p.parent / "templates")

    overrides = None
    if use_env:
        overrides = parameter_overrides_from_env(declared_parameters(raw.get("parameters")))

    return load_from_dict(
        raw,
        overrides=overrides,
        explicit=explicit,
        templates=library,
        default_name=p.stem,
    )
