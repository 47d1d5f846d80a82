# scheduler.py
from __future__ import annotations

import queue
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, Optional, Set

from .agent import Agent, AgentPool
from .config import EngineConfig
from .dag import RunGraph, build_job_dag, build_run_graph
from .errors import AgentUnavailable
from .matrix import expand_pipeline
from .model import JobInstance, JobStatus, PipelineDefinition, StepResult
from .report import RunReport, aggregate
from .runner import Outcome, StepRunner
from .ui.console import Console, get_console

StepCallback = Callable[[JobInstance, StepResult], None]


# Worker -> scheduler messages. Workers never touch graph state directly.
@dataclass(frozen=True)
class _StepEvent:
    instance_id: str
    result: StepResult


@dataclass(frozen=True)
class _DoneEvent:
    instance_id: str
    outcome: Outcome


class Scheduler:
    """
    Runs a RunGraph to completion.

    One decision loop (the thread calling run()) owns every status change.
    Worker threads run a StepRunner per instance and report back through a
    queue. Per instance:

      Pending -> Blocked (waiting on dependencies) -> Ready -> Running
              -> Succeeded | Failed | TimedOut
      Pending/Blocked/Ready -> Skipped

    An instance is looked at once all its upstream instances are terminal.
    An upstream that ended Failed/TimedOut without continue_on_error, or an
    upstream that was Skipped, makes it Skipped instead of Ready.
    """

    def __init__(
        self,
        graph: RunGraph,
        agent: Agent,
        config: Optional[EngineConfig] = None,
        console: Optional[Console] = None,
        on_step: Optional[StepCallback] = None,
        pipeline: str = "pipeline",
    ):
        self.graph = graph
        self.agent = agent
        self.config = config or EngineConfig()
        self.console = console or get_console()
        self.on_step = on_step
        self.pipeline = pipeline

        self.pool = AgentPool(self.config)
        self.runner = StepRunner(agent, self.config)
        self.aborted = False

        self._abort = threading.Event()
        self._events: "queue.Queue" = queue.Queue()
        self._ready: Deque[str] = deque()
        self._cancels: Dict[str, threading.Event] = {}
        self._occupied: Dict[str, str] = {}  # instance id -> pool, while a worker holds an agent
        self._queued: Set[str] = set()  # ready instances already reported as waiting for an agent
        self._waiting: Dict[str, int] = {i: len(ups) for i, ups in graph.upstream.items()}
        self._order: Dict[str, int] = {iid: n for n, iid in enumerate(graph.instances)}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """Request a global abort; safe to call from any thread."""
        self._abort.set()

    def run(self) -> RunReport:
        started = time.monotonic()
        instances = self.graph.instances
        self.console.print_run_started(self.pipeline, len(self.graph.jobs), len(instances))

        roots = []
        for iid, inst in instances.items():
            if self._waiting[iid] == 0:
                roots.append(iid)
            else:
                inst.transition(JobStatus.BLOCKED)
        self._settle(roots)

        workers = max(1, self.pool.total_capacity(i.pool for i in instances.values()))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="matrixci-agent") as executor:
            while True:
                if self._abort.is_set() and not self.aborted:
                    self._abort_all()

                self._dispatch(executor)

                if not self._occupied and not self._ready:
                    break

                try:
                    event = self._events.get(timeout=self.config.tick_seconds)
                except queue.Empty:
                    event = None
                except KeyboardInterrupt:
                    self.console.print_info("\nInterrupted, aborting run")
                    self._abort.set()
                    continue

                while event is not None:
                    self._handle(event)
                    try:
                        event = self._events.get_nowait()
                    except queue.Empty:
                        event = None

                self._check_timeouts()

        report = aggregate(
            self.graph,
            aborted=self.aborted,
            pipeline=self.pipeline,
            duration=time.monotonic() - started,
        )
        self.console.print_results(report)
        return report

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _blocking_upstream(self, inst: JobInstance) -> Optional[str]:
        for up_id in sorted(self.graph.upstream[inst.id]):
            up = self.graph.instances[up_id]
            if up.status in (JobStatus.FAILED, JobStatus.TIMED_OUT) and not up.continue_on_error:
                return f"dependency {up_id} {up.status.value}"
            if up.status is JobStatus.SKIPPED:
                return f"dependency {up_id} Skipped"
        return None

    def _settle(self, candidates: Iterable[str]) -> None:
        """
        Decide Ready/Skipped for instances whose upstream is all terminal, then
        cascade skips to their dependents.
        """
        work = deque(candidates)
        while work:
            iid = work.popleft()
            inst = self.graph.instances[iid]
            if inst.is_terminal() or inst.status is JobStatus.READY:
                continue

            reason = self._blocking_upstream(inst)
            if reason is None and self.aborted:
                reason = "aborted"
            if reason is None and not inst.condition:
                reason = "condition is false"

            if reason is None:
                inst.transition(JobStatus.READY)
                self._ready.append(iid)
                continue

            inst.transition(JobStatus.SKIPPED, reason)
            self.console.print_job_skipped(inst)
            work.extend(self._release_dependents(iid))

    def _release_dependents(self, iid: str) -> list:
        """Count `iid` as terminal for its dependents; return those now unblocked."""
        unblocked = []
        for child in self.graph.downstream[iid]:
            self._waiting[child] -= 1
            if self._waiting[child] == 0:
                unblocked.append(child)
        return sorted(unblocked, key=self._order.__getitem__)

    def _on_terminal(self, iid: str) -> None:
        self._settle(self._release_dependents(iid))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, executor: ThreadPoolExecutor) -> None:
        for _ in range(len(self._ready)):
            iid = self._ready.popleft()
            inst = self.graph.instances[iid]
            try:
                self.pool.acquire(inst.pool)
            except AgentUnavailable as e:
                # No free agent: requeue and try again next round
                if iid not in self._queued:
                    self._queued.add(iid)
                    self.console.print_debug(f"{iid} waiting: {e.message}")
                self._ready.append(iid)
                continue
            self._queued.discard(iid)

            inst.transition(JobStatus.RUNNING)
            cancel = threading.Event()
            self._cancels[iid] = cancel
            self._occupied[iid] = inst.pool
            self.console.print_job_start(inst)
            executor.submit(
                self._work,
                iid,
                list(inst.steps),
                dict(inst.variables),
                inst.deadline,
                cancel,
            )

    def _work(self, iid, steps, variables, deadline, cancel) -> None:
        """Worker thread body: run the steps, report everything through the queue."""
        try:
            outcome = self.runner.run(
                iid,
                steps,
                variables,
                emit=lambda result: self._events.put(_StepEvent(iid, result)),
                cancel=cancel,
                deadline=deadline,
            )
        except Exception as e:
            # An unexpected error fails this instance only
            outcome = Outcome(JobStatus.FAILED, f"{type(e).__name__}: {e}")
        self._events.put(_DoneEvent(iid, outcome))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _handle(self, event) -> None:
        inst = self.graph.instances[event.instance_id]
        if isinstance(event, _StepEvent):
            inst.step_results.append(event.result)
            self.console.print_step_result(inst, event.result)
            if self.on_step is not None:
                self.on_step(inst, event.result)
            return

        self.pool.release(self._occupied.pop(inst.id))
        self._cancels.pop(inst.id, None)
        if inst.status is not JobStatus.RUNNING:
            # Already finalized by a timeout or an abort
            return
        inst.transition(event.outcome.status, event.outcome.reason)
        if inst.status is JobStatus.TIMED_OUT:
            self.console.print_timeout(inst)
        else:
            self.console.print_job_finished(inst)
        self._on_terminal(inst.id)

    def _check_timeouts(self) -> None:
        now = time.monotonic()
        for iid in list(self._occupied):
            inst = self.graph.instances[iid]
            deadline = inst.deadline
            if inst.status is not JobStatus.RUNNING or deadline is None or now < deadline:
                continue
            inst.transition(JobStatus.TIMED_OUT, f"exceeded timeout of {inst.timeout:.1f}s")
            self._cancels[iid].set()
            self.console.print_timeout(inst)
            self._on_terminal(iid)

    def _abort_all(self) -> None:
        self.aborted = True
        for iid, inst in self.graph.instances.items():
            if inst.status is JobStatus.RUNNING:
                self._cancels[iid].set()
                inst.transition(JobStatus.FAILED, "cancelled")
                self.console.print_job_finished(inst)
            elif not inst.is_terminal():
                inst.transition(JobStatus.SKIPPED, "aborted")
                self.console.print_job_skipped(inst)
        self._ready.clear()


def plan(definition: PipelineDefinition, config: Optional[EngineConfig] = None) -> RunGraph:
    """Expand and validate a definition into a RunGraph; nothing runs."""
    build_job_dag(list(definition.jobs))
    expanded = expand_pipeline(definition, config)
    return build_run_graph(definition, expanded)


def run_pipeline(
    definition: PipelineDefinition,
    agent: Agent,
    config: Optional[EngineConfig] = None,
    console: Optional[Console] = None,
    on_step: Optional[StepCallback] = None,
) -> RunReport:
    graph = plan(definition, config)
    return Scheduler(graph, agent, config, console, on_step, definition.name).run()
