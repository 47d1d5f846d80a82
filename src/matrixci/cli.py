# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from matrixci.agent import LocalAgent
from matrixci.config import EngineConfig, parse_pools
from matrixci.dag import topo_levels
from matrixci.errors import CIError
from matrixci.loader import load_pipeline
from matrixci.scheduler import Scheduler, plan
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_DEFINITIONS = ("matrixci.yml", "matrixci.yaml", "pipeline.yml", "pipeline.yaml")

EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130


def find_definition_files() -> list[Path]:
    """
    Find pipeline definition files in the current directory.

    Returns:
        List of Path objects for definition files
    """
    current_dir = Path(".")
    return [current_dir / name for name in DEFAULT_DEFINITIONS if (current_dir / name).exists()]


def discover_definition(definition_arg: str | None) -> Path:
    """
    Discover the definition file from argument or default.

    Raises:
        SystemExit: If no definition can be found or several defaults exist
    """
    console = get_console()

    if definition_arg:
        path = Path(definition_arg)
        if not path.exists():
            console.print_error(
                "Definition file not found",
                f"Could not find pipeline definition: {definition_arg}",
            )
            sys.exit(EXIT_INVALID)
        return path

    found = find_definition_files()
    if not found:
        console.print_error(
            "No definition file found",
            "Could not find a pipeline definition.",
            details=["Looked for:"] + [f"  {n}" for n in DEFAULT_DEFINITIONS],
            hint="Pass one explicitly:\n  matrixci run path/to/pipeline.yml",
        )
        sys.exit(EXIT_INVALID)
    if len(found) > 1:
        console.print_error(
            "Multiple definition files found",
            "Please specify which one to use:",
            details=[str(f) for f in found],
        )
        sys.exit(EXIT_INVALID)
    return found[0]


def _parse_params(values: tuple[str, ...]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected name=value, got {item!r}", param_hint="--param")
        params[name.strip()] = value
    return params


def _load(ctx, definition, params, templates):
    console = get_console()
    path = discover_definition(definition)
    try:
        pipeline_def = load_pipeline(path, explicit=_parse_params(params), templates_dir=templates)
        graph = plan(pipeline_def, ctx.obj["config"])
    except CIError as e:
        console.print_ci_error(e)
        sys.exit(EXIT_INVALID)
    return pipeline_def, graph


def _definition_options(fn):
    fn = click.option("--templates", default=None, type=click.Path(file_okay=False), help="Directory holding step/job templates")(fn)
    fn = click.option("--param", "-p", "params", multiple=True, help="Parameter value, name=value (repeatable)")(fn)
    fn = click.argument("definition", required=False)(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only print the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: a matrix-expanding, dependency-aware CI pipeline runner."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["config"] = EngineConfig.from_env()
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID)


@cli.command()
@_definition_options
@click.pass_context
def validate(ctx, definition, params, templates):
    """Load, expand and check a definition without running anything."""
    pipeline_def, graph = _load(ctx, definition, params, templates)
    get_console().print_info(
        f"OK: {pipeline_def.name} ({len(graph.jobs)} jobs, {len(graph)} instances)"
    )


@cli.command("plan")
@_definition_options
@click.pass_context
def plan_cmd(ctx, definition, params, templates):
    """Print the expanded instances stage by stage."""
    _pipeline_def, graph = _load(ctx, definition, params, templates)
    get_console().print_plan(graph, topo_levels(graph))


@cli.command()
@_definition_options
@click.option("--agents", default=None, type=int, help="Agents per pool (default capacity)")
@click.option("--pool", "pools", multiple=True, help="Pool capacity, name=N (repeatable)")
@click.option("--workdir", default=".", show_default=True, type=click.Path(file_okay=False), help="Directory commands run in")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write the JSON run report here")
@click.pass_context
def run(ctx, definition, params, templates, agents, pools, workdir, report_path):
    """Run a pipeline definition."""
    console = get_console()

    config: EngineConfig = ctx.obj["config"]
    try:
        config = config.with_overrides(
            default_capacity=agents,
            pools={**config.pools, **parse_pools(pools)} if pools else None,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID)
    ctx.obj["config"] = config

    pipeline_def, graph = _load(ctx, definition, params, templates)

    try:
        agent = LocalAgent(workdir, shell=config.shell)
        scheduler = Scheduler(graph, agent, config, console, pipeline=pipeline_def.name)
        report = scheduler.run()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if report_path:
        Path(report_path).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        console.print_debug(f"report written to {report_path}")

    if report.aborted:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(report.exit_code)


if __name__ == "__main__":
    cli()
