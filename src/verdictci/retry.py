# retry.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet

from .model import JobSpec, JobStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff: base * factor ** retry_index, capped at `maximum`."""
    base: float = 1.0
    factor: float = 2.0
    maximum: float = 60.0

    def delay(self, retry_index: int) -> float:
        if self.base <= 0:
            return 0.0
        return min(self.maximum, self.base * (self.factor ** retry_index))


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class RetryPolicyManager:
    """
    Decides whether a failed or timed-out attempt is retried.

    `attempt` is 1-based: the attempt that just ended. A job never runs more
    than `max_attempts` times, and jobs whose class is excluded (security
    scans by default) are never retried.
    """
    max_attempts: int = 2
    excluded_job_classes: FrozenSet[str] = field(default_factory=lambda: frozenset({"security-scan"}))
    backoff: Backoff = field(default_factory=Backoff)

    def decide(self, job: JobSpec, status: JobStatus, attempt: int) -> RetryDecision:
        if status not in (JobStatus.FAILED, JobStatus.TIMED_OUT):
            return RetryDecision(False, reason=f"status {status.value} is not retryable")
        if not job.retryable:
            return RetryDecision(False, reason="job is not retryable")
        if job.job_class is not None and job.job_class in self.excluded_job_classes:
            return RetryDecision(False, reason=f"job class '{job.job_class}' is excluded from retries")
        if attempt >= self.max_attempts:
            return RetryDecision(False, reason=f"attempts exhausted ({attempt}/{self.max_attempts})")

        delay = self.backoff.delay(attempt - 1)
        logger.debug("retrying %s after attempt %d in %.2fs", job.id, attempt, delay)
        return RetryDecision(True, delay=delay, reason=f"retry {attempt}/{self.max_attempts - 1}")
