# errors.py
from __future__ import annotations

from typing import List, Optional


class VerdictError(Exception):
    """Base class for orchestrator errors."""


class ConfigError(VerdictError):
    """
    Fatal configuration error, raised before any job runs.

    Carries enough context for clean CLI output without a traceback.
    """

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def __str__(self) -> str:
        lines = [self.message]
        lines.extend(f"  {d}" for d in self.details)
        return "\n".join(lines)


class PatternError(ConfigError):
    """A path rule pattern that cannot be compiled."""

    def __init__(self, pattern: str, problem: str):
        super().__init__(f"Invalid path pattern {pattern!r}: {problem}")
        self.pattern = pattern
        self.problem = problem


class UnknownDependencyError(ConfigError):
    """A job declared `needs` on a job that is not in the plan."""


class CycleError(ConfigError):
    """The job graph contains a dependency cycle."""

    def __init__(self, stuck: List[str]):
        super().__init__(
            "Job graph has a cycle",
            details=[f"jobs involved: {', '.join(stuck)}"],
        )
        self.stuck = list(stuck)


class InvalidTransitionError(VerdictError):
    """A status transition that the job state machine does not allow."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"[{job_id}] illegal transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target
