# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Set

from .errors import CycleError, DefinitionError, UnknownJobError
from .model import JobInstance, JobTemplate, PipelineDefinition


@dataclass
class RunGraph:
    """
    Job instances plus the edges between them.

      upstream[i]   instances that must be terminal before i is considered
      downstream[i] instances waiting on i
      job_instances job id -> instance ids (empty list for zero-instance jobs)

    Edges are job-level: every instance of a dependent job depends on every
    instance of each job it declares in depends_on.
    """
    instances: Dict[str, JobInstance]
    jobs: Dict[str, JobTemplate]
    job_instances: Dict[str, List[str]]
    upstream: Dict[str, Set[str]] = field(default_factory=dict)
    downstream: Dict[str, Set[str]] = field(default_factory=dict)

    def roots(self) -> List[str]:
        return [i for i in self.instances if not self.upstream[i]]

    def __len__(self) -> int:
        return len(self.instances)


def build_job_dag(jobs: List[JobTemplate]) -> Dict[str, Set[str]]:
    """
    Validate job-level dependencies and return job id -> dependents.

    Requires:
      - job.id: str (unique)
      - job.depends_on: job ids that must run BEFORE this job
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise DefinitionError(f"Duplicate job ids found: {dupes}")

    id_set = set(ids)
    adj: Dict[str, Set[str]] = {n: set() for n in ids}
    indeg: Dict[str, int] = {n: 0 for n in ids}
    needs: Dict[str, Set[str]] = {n: set() for n in ids}

    for job in jobs:
        for dep in job.depends_on:
            if dep not in id_set:
                raise UnknownJobError(job.id, dep, ids)
            # Edge dep -> job.id (dep must finish before job)
            if job.id not in adj[dep]:
                adj[dep].add(job.id)
                indeg[job.id] += 1
                needs[job.id].add(dep)

    q = deque(n for n in ids if indeg[n] == 0)
    processed = 0
    remaining = dict(indeg)
    while q:
        node = q.popleft()
        processed += 1
        for child in adj[node]:
            remaining[child] -= 1
            if remaining[child] == 0:
                q.append(child)

    if processed != len(ids):
        stuck = {n for n, d in remaining.items() if d > 0}
        raise CycleError(_find_cycle(needs, stuck))

    return adj


def _find_cycle(needs: Mapping[str, Set[str]], stuck: Set[str]) -> List[str]:
    # Every stuck node still has a stuck dependency, so walking dependencies
    # from any of them must revisit a node.
    node = min(stuck)
    path: List[str] = []
    index: Dict[str, int] = {}
    while node not in index:
        index[node] = len(path)
        path.append(node)
        node = min(d for d in needs[node] if d in stuck)
    cycle = path[index[node]:]
    cycle.reverse()
    return cycle


def build_run_graph(
    definition: PipelineDefinition,
    expanded: Mapping[str, List[JobInstance]],
) -> RunGraph:
    """
    Build the instance graph.

    Fails before anything runs:
      DefinitionError  duplicate job ids
      UnknownJobError  depends_on names a job that does not exist
      CycleError       the dependency relation has a cycle
    """
    jobs = list(definition.jobs)
    build_job_dag(jobs)

    instances: Dict[str, JobInstance] = {}
    job_instances: Dict[str, List[str]] = {}
    for job in jobs:
        ids: List[str] = []
        for inst in expanded.get(job.id, []):
            if inst.id in instances:
                raise DefinitionError(f"Duplicate instance id: {inst.id}")
            instances[inst.id] = inst
            ids.append(inst.id)
        job_instances[job.id] = ids

    upstream: Dict[str, Set[str]] = {i: set() for i in instances}
    downstream: Dict[str, Set[str]] = {i: set() for i in instances}
    for job in jobs:
        for dep in job.depends_on:
            for child in job_instances[job.id]:
                for parent in job_instances[dep]:
                    upstream[child].add(parent)
                    downstream[parent].add(child)

    return RunGraph(
        instances=instances,
        jobs={j.id: j for j in jobs},
        job_instances=job_instances,
        upstream=upstream,
        downstream=downstream,
    )


def topo_levels(graph: RunGraph) -> List[List[str]]:
    """
    Convert the instance graph into topological "levels" (stages).
    Each stage can run in parallel; used for plan display.
    """
    indeg = {i: len(ups) for i, ups in graph.upstream.items()}
    order = list(graph.instances)
    q = deque(i for i in order if indeg[i] == 0)

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(graph.downstream[node], key=order.index):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        stuck = sorted({graph.instances[i].job_id for i, d in indeg.items() if d > 0})
        raise CycleError(stuck)

    return levels
