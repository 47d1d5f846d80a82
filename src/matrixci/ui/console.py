"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import traceback
from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from matrixci.dag import RunGraph
    from matrixci.errors import CIError
    from matrixci.model import JobInstance, StepResult
    from matrixci.report import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only print errors and the final results
            stream: Where normal output goes (defaults to sys.stdout)
            err_stream: Where errors and debug lines go (defaults to sys.stderr)
        """
        self.debug = debug
        self.quiet = quiet
        self._stream = stream
        self._err_stream = err_stream

    @property
    def stream(self):
        return self._stream or sys.stdout

    @property
    def err_stream(self):
        return self._err_stream or sys.stderr

    def _out(self, text: str = "") -> None:
        print(text, file=self.stream)

    def _err(self, text: str = "") -> None:
        print(text, file=self.err_stream)

    def print_run_started(self, pipeline: str, job_count: int, instance_count: int) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out("\nRUN STARTED")
        self._out(f"Pipeline: {pipeline}")
        self._out(f"Jobs: {job_count}")
        self._out(f"Instances: {instance_count}")
        self._out()

    def print_plan(self, graph: "RunGraph", levels: Sequence[Sequence[str]]) -> None:
        """Print the expanded instances stage by stage."""
        for idx, level in enumerate(levels, start=1):
            self._out(f"=== Stage {idx} ===")
            for iid in level:
                inst = graph.instances[iid]
                extras: List[str] = [f"pool={inst.pool}"]
                if inst.continue_on_error:
                    extras.append("continue-on-error")
                if inst.timeout is not None:
                    extras.append(f"timeout={inst.timeout:.0f}s")
                if not inst.condition:
                    extras.append("condition=false")
                self._out(f"  {iid} ({', '.join(extras)})")
                for step in inst.steps:
                    mark = "" if step.condition else " [skip]"
                    self._out(f"    - {step.name}{mark}")
        empty = [job for job, ids in graph.job_instances.items() if not ids]
        for job in empty:
            self._out(f"  {job} (no instances)")

    def print_job_start(self, inst: "JobInstance") -> None:
        """Print job start message."""
        if self.quiet:
            return
        self._out(f"\nJOB STARTED: {inst.id} [{inst.pool}]")

    def print_step_result(self, inst: "JobInstance", result: "StepResult") -> None:
        """Print one step outcome as soon as it is reported."""
        if self.quiet:
            return
        line = f"[{inst.id}] STEP {result.name}: {result.status.value}"
        if result.exit_code is not None and result.exit_code != 0:
            line += f" (exit={result.exit_code})"
        if result.duration:
            line += f" {result.duration:.1f}s"
        self._out(line)
        if self.debug and result.output:
            for out_line in result.output.rstrip().splitlines():
                self._out(f"    {out_line}")
        elif result.status.value in ("failed", "timed_out") and result.output:
            # Show the tail of the output for failures only
            for out_line in result.output.rstrip().splitlines()[-10:]:
                self._out(f"    {out_line}")

    def print_job_finished(self, inst: "JobInstance") -> None:
        """Print job terminal status."""
        if self.quiet:
            return
        line = f"JOB {inst.status.value.upper()}: {inst.id}"
        if inst.reason:
            line += f" ({inst.reason})"
        self._out(line)

    def print_job_skipped(self, inst: "JobInstance") -> None:
        """Print job skipped message."""
        if self.quiet:
            return
        self._out(f"JOB SKIPPED: {inst.id} ({inst.reason})")

    def print_timeout(self, inst: "JobInstance") -> None:
        """Print timeout message."""
        self._out(f"JOB TIMED OUT: {inst.id} ({inst.reason})")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for job in report.jobs:
            self._out(f"  {job.id}: {job.status.value.upper()} {job.duration:.1f}s")
            for iid in job.instances:
                inst = report.instance(iid)
                note = " (continue-on-error)" if inst.continue_on_error and inst.status.value != "Succeeded" else ""
                self._out(f"    {iid}: {inst.status.value.upper()} {inst.duration:.1f}s{note}")
            if not job.instances:
                self._out("    (no instances)")
        verdict = "ABORTED" if report.aborted else report.status.value.upper()
        self._out(f"\nPIPELINE: {verdict}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Sequence[str]] = None,
        hint: Optional[str] = None,
    ) -> None:
        """Write an error block to the error stream, with optional detail lines and a hint."""
        self._err(f"\nERROR: {title}")
        self._err(message)
        for line in details or ():
            self._err(f"  {line}")
        if hint:
            self._err(f"\n{hint}")

    def print_ci_error(self, error: "CIError") -> None:
        details = [f"{key}={value}" for key, value in error.details.items()]
        self.print_error(error.kind, error.message, details=details)

    def print_exception(self, exc: BaseException) -> None:
        # tracebacks are for --debug only
        if not self.debug:
            self._err(f"Error: {exc}")
            return
        self._err("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip())

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._err(f"[DEBUG] {message}")


_console: Optional[Console] = None


def get_console() -> Console:
    """Return the process-wide console, creating a default one on first use."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Install the console used by the CLI and the scheduler."""
    global _console
    _console = console
