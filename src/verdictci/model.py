# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


# Pseudo-category produced for an empty change set (manual/ambiguous trigger).
FORCE_ALL = "__force_all__"


class RunType(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULED = "scheduled"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)

    @property
    def blocks_dependents(self) -> bool:
        """A dependency in one of these states skips its dependents."""
        return self in (JobStatus.FAILED, JobStatus.TIMED_OUT, JobStatus.CANCELLED)


class Severity(str, Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


class RunVerdict(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job. Opaque to the orchestrator."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class PathRule:
    category: str
    patterns: Tuple[str, ...]


@dataclass(frozen=True)
class ChangeSet:
    """Ordered, de-duplicated changed paths for one run."""
    paths: Tuple[str, ...] = ()

    @classmethod
    def of(cls, paths) -> ChangeSet:
        seen = set()
        ordered: List[str] = []
        for p in paths:
            p = str(p).strip().replace("\\", "/")
            if p.startswith("./"):
                p = p[2:]
            if p and p not in seen:
                seen.add(p)
                ordered.append(p)
        return cls(tuple(ordered))

    def __iter__(self):
        return iter(self.paths)

    def __len__(self) -> int:
        return len(self.paths)


@dataclass(frozen=True)
class TriggerEvent:
    """The event record that starts a run."""
    changes: ChangeSet
    run_type: RunType = RunType.PUSH
    ref: str | None = None


@dataclass(frozen=True)
class TriggerFlags:
    flags: Mapping[str, bool]

    def enabled(self, area: str) -> bool:
        return bool(self.flags.get(area, False))

    def as_dict(self) -> Dict[str, bool]:
        return dict(self.flags)


@dataclass(frozen=True)
class CacheSpec:
    namespace: str
    inputs: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    skip_on_hit: bool = False


@dataclass(frozen=True)
class JobSpec:
    """
    A CI job: steps + dependencies + the policy knobs the scheduler needs.

    `when` is the activation condition: the name of a pipeline area whose
    trigger flag must be true, or None for always-true.
    """
    id: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    when: Optional[str] = None
    timeout: float = 1800.0
    retryable: bool = True
    job_class: Optional[str] = None
    resource_class: str = "standard"
    env: Mapping[str, str] = field(default_factory=dict)
    cache: Optional[CacheSpec] = None

    def is_active(self, flags: TriggerFlags) -> bool:
        return self.when is None or flags.enabled(self.when)


@dataclass(frozen=True)
class JobResult:
    job_id: str
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    retry_count: int = 0
    payload: Mapping[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    cache_key: Optional[str] = None
    cache_hit: bool = False

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "retry_count": self.retry_count,
            "reason": self.reason,
            "cache_key": self.cache_key,
            "cache_hit": self.cache_hit,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class CacheEntry:
    key: str
    location: str
    created_at: datetime
    namespace: str = ""


@dataclass(frozen=True)
class QualityGateRule:
    """
    A threshold rule over job results.

    The rule is violated when `<aggregate of field> <op> <threshold>` holds,
    e.g. field="findings.high", op=">", threshold=0.
    """
    name: str
    field: str
    threshold: float
    op: str = ">"
    severity: Severity = Severity.BLOCKING
    aggregate: str = "sum"
    jobs: Tuple[str, ...] = ()
    on_missing: str = "ignore"
