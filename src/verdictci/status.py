# status.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .gates import GateVerdict
from .model import JobResult, JobStatus, Severity


class Level(str, Enum):
    FAILURE = "failure"
    WARNING = "warning"
    NOTICE = "notice"


@dataclass(frozen=True)
class SummaryEntry:
    level: Level
    job_id: Optional[str]
    message: str
    ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level.value, "job": self.job_id, "message": self.message, "ref": self.ref}


@dataclass(frozen=True)
class RunSummary:
    """Failures first (grouped by job), then warnings, then notices."""
    entries: Tuple[SummaryEntry, ...] = ()

    def _at(self, level: Level) -> Tuple[SummaryEntry, ...]:
        return tuple(e for e in self.entries if e.level == level)

    @property
    def failures(self) -> Tuple[SummaryEntry, ...]:
        return self._at(Level.FAILURE)

    @property
    def warnings(self) -> Tuple[SummaryEntry, ...]:
        return self._at(Level.WARNING)

    @property
    def notices(self) -> Tuple[SummaryEntry, ...]:
        return self._at(Level.NOTICE)

    @property
    def first_blocking_cause(self) -> Optional[SummaryEntry]:
        failures = self.failures
        return failures[0] if failures else None

    def to_dict(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.entries]


_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def _ref(result: Optional[JobResult]) -> Optional[str]:
    if result is None:
        return None
    ref = result.payload.get("log_ref")
    return str(ref) if ref is not None else None


class StatusAggregator:
    """
    Builds the ordered summary handed to the reporting collaborator.

    Failure groups are ordered by when their job finished (earliest first,
    declaration order on ties), so the first entry is the first blocking cause.
    The ordering is a presentation contract; it does not affect scheduling.
    """

    def summarize(self, results: Mapping[str, JobResult], verdict: GateVerdict) -> RunSummary:
        order = {job_id: i for i, job_id in enumerate(results)}

        failure_groups: Dict[Optional[str], List[SummaryEntry]] = {}
        warnings: List[SummaryEntry] = []
        notices: List[SummaryEntry] = []

        for job_id, r in results.items():
            if r.status in (JobStatus.FAILED, JobStatus.TIMED_OUT):
                reason = r.reason or r.status.value
                failure_groups.setdefault(job_id, []).append(
                    SummaryEntry(Level.FAILURE, job_id, f"{r.status.value}: {reason}", _ref(r))
                )
            elif r.status == JobStatus.CANCELLED:
                warnings.append(SummaryEntry(Level.WARNING, job_id, f"cancelled: {r.reason or 'run cancelled'}", _ref(r)))
            elif r.status == JobStatus.SKIPPED:
                notices.append(SummaryEntry(Level.NOTICE, job_id, f"skipped: {r.reason or 'inactive'}"))
            elif r.status == JobStatus.SUCCEEDED:
                if r.cache_hit:
                    notices.append(SummaryEntry(Level.NOTICE, job_id, "succeeded from cache", _ref(r)))
                if r.retry_count:
                    notices.append(
                        SummaryEntry(Level.NOTICE, job_id, f"succeeded after {r.retry_count} retr{'y' if r.retry_count == 1 else 'ies'}", _ref(r))
                    )

        for v in verdict.violations:
            targets = v.job_ids or (None,)
            for job_id in targets:
                entry_ref = _ref(results.get(job_id)) if job_id else None
                if v.severity == Severity.BLOCKING:
                    failure_groups.setdefault(job_id, []).append(
                        SummaryEntry(Level.FAILURE, job_id, f"quality gate {v.message}", entry_ref)
                    )
                else:
                    warnings.append(SummaryEntry(Level.WARNING, job_id, f"quality gate {v.message}", entry_ref))

        for name in verdict.not_evaluated:
            notices.append(SummaryEntry(Level.NOTICE, None, f"quality gate {name}: not evaluated (no data)"))

        def group_key(job_id: Optional[str]):
            if job_id is None:
                return (1, _NEVER, len(order))
            finished = results[job_id].finished_at or _NEVER
            return (0, finished, order[job_id])

        entries: List[SummaryEntry] = []
        for job_id in sorted(failure_groups, key=group_key):
            entries.extend(failure_groups[job_id])
        entries.extend(warnings)
        entries.extend(notices)
        return RunSummary(tuple(entries))
