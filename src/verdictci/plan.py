# plan.py
from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Mapping, Tuple

from .errors import InvalidTransitionError
from .model import JobResult, JobSpec, JobStatus

# Allowed status transitions. Terminal states have no exits.
#   running -> pending is the retry path.
_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED}
    ),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.SUCCEEDED,
            JobStatus.FAILED,
            JobStatus.TIMED_OUT,
            JobStatus.CANCELLED,
            JobStatus.PENDING,
        }
    ),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobCell:
    """The mutable status cell of one plan node. Only the scheduler writes it."""

    def __init__(self, spec: JobSpec, index: int, result: JobResult):
        self.spec = spec
        self.index = index
        self._result = result

    @property
    def result(self) -> JobResult:
        return self._result

    @property
    def status(self) -> JobStatus:
        return self._result.status

    def transition(self, target: JobStatus, **changes) -> JobResult:
        current = self._result.status
        if target not in _TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(self.spec.id, current.value, target.value)

        now = _now()
        if target == JobStatus.RUNNING:
            changes.setdefault("started_at", now)
            changes.setdefault("finished_at", None)
        elif target.terminal:
            changes.setdefault("finished_at", now)
        self._result = replace(self._result, status=target, **changes)
        return self._result


class ExecutionPlan:
    """
    Validated job DAG for one run.

    The shape (specs, edges, declaration order) is fixed once built; only the
    per-job status cells change, under the plan lock.
    """

    def __init__(self, specs: List[JobSpec], skipped: Mapping[str, str], levels: List[List[str]]):
        self._lock = threading.RLock()
        self._order: Tuple[str, ...] = tuple(s.id for s in specs)
        self._cells: Dict[str, JobCell] = {}
        for idx, spec in enumerate(specs):
            if spec.id in skipped:
                result = JobResult(
                    job_id=spec.id,
                    status=JobStatus.SKIPPED,
                    reason=skipped[spec.id],
                    finished_at=_now(),
                )
            else:
                result = JobResult(job_id=spec.id)
            self._cells[spec.id] = JobCell(spec, idx, result)

        self._dependents: Dict[str, Tuple[str, ...]] = {
            sid: tuple(s.id for s in specs if sid in s.needs) for sid in self._order
        }
        self.levels: Tuple[Tuple[str, ...], ...] = tuple(tuple(level) for level in levels)

    @property
    def order(self) -> Tuple[str, ...]:
        return self._order

    def __iter__(self) -> Iterator[JobSpec]:
        return (self._cells[j].spec for j in self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._cells

    def spec(self, job_id: str) -> JobSpec:
        return self._cells[job_id].spec

    def index(self, job_id: str) -> int:
        return self._cells[job_id].index

    def dependents(self, job_id: str) -> Tuple[str, ...]:
        return self._dependents[job_id]

    def status(self, job_id: str) -> JobStatus:
        with self._lock:
            return self._cells[job_id].status

    def result(self, job_id: str) -> JobResult:
        with self._lock:
            return self._cells[job_id].result

    def transition(self, job_id: str, target: JobStatus, **changes) -> JobResult:
        with self._lock:
            return self._cells[job_id].transition(target, **changes)

    def results(self) -> Dict[str, JobResult]:
        """Snapshot of every job result, in declaration order."""
        with self._lock:
            return {j: self._cells[j].result for j in self._order}

    def is_finished(self) -> bool:
        with self._lock:
            return all(c.status.terminal for c in self._cells.values())
