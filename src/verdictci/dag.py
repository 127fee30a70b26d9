# dag.py
from __future__ import annotations

import logging
from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ConfigError, CycleError, UnknownDependencyError
from .model import JobSpec, TriggerFlags
from .plan import ExecutionPlan

logger = logging.getLogger(__name__)


def build_dag(jobs: List[JobSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency and in-degree maps from JobSpecs.

    Requires:
      - job.id: str (unique)
      - job.needs: ids of jobs that must reach a terminal state BEFORE this job
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise ConfigError(f"Duplicate job ids found: {dupes}")

    id_set = set(ids)
    adj: Dict[str, Set[str]] = {n: set() for n in ids}
    indeg: Dict[str, int] = {n: 0 for n in ids}

    for job in jobs:
        for dep in job.needs:
            if dep not in id_set:
                raise UnknownDependencyError(
                    f"Job '{job.id}' needs missing job '{dep}'",
                    details=[f"known jobs: {', '.join(sorted(id_set))}"],
                )
            # Edge dep -> job.id (dep must finish before job)
            if job.id not in adj[dep]:
                adj[dep].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    order: Iterable[str],
) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).

    Jobs inside one level have no edges between them. Within a level jobs keep
    declaration order. Raises CycleError when some jobs can never be reached.
    """
    rank = {name: i for i, name in enumerate(order)}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=rank.__getitem__))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []
        nxt: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)

        levels.append(level)
        q.extend(sorted(nxt, key=rank.__getitem__))

    if processed != len(indeg):
        remaining = sorted((n for n, d in indeg.items() if d > 0), key=rank.__getitem__)
        raise CycleError(remaining)

    return levels


class JobGraphBuilder:
    """
    Compiles job specs + trigger flags into a validated ExecutionPlan.

    Inactive jobs stay in the graph, pre-marked `skipped`, so dependents can
    observe them. Any structural problem raises before a plan exists, so an
    invalid plan never reaches the scheduler.
    """

    def __init__(self, jobs: Iterable[JobSpec]):
        self.jobs: List[JobSpec] = list(jobs)

    def build(self, flags: TriggerFlags) -> ExecutionPlan:
        adj, indeg = build_dag(self.jobs)
        levels = topo_levels(adj, indeg, (j.id for j in self.jobs))

        skipped: Dict[str, str] = {}
        for spec in self.jobs:
            if not spec.is_active(flags):
                skipped[spec.id] = f"area '{spec.when}' not triggered"
                logger.debug("job %s inactive (%s)", spec.id, skipped[spec.id])

        return ExecutionPlan(self.jobs, skipped, levels)
