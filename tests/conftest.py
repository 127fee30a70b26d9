# tests/conftest.py
"""
Shared fixtures: job spec builders and a scripted step runner.

The scripted runner never spawns processes. Each job gets a list of
behaviours consumed one per attempt; a behaviour is a StepOutcome, a bool,
an exception instance, or a callable `(job, ctx) -> StepOutcome`.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Dict, List

import pytest

from verdictci.dag import JobGraphBuilder
from verdictci.model import JobSpec, Step, TriggerFlags
from verdictci.retry import Backoff, RetryPolicyManager
from verdictci.runner import StepContext, StepOutcome


def make_job(job_id: str, *needs: str, **kwargs) -> JobSpec:
    kwargs.setdefault("steps", (Step(name="run", run=f"echo {job_id}"),))
    return JobSpec(id=job_id, needs=tuple(needs), **kwargs)


def make_plan(jobs, flags=None):
    return JobGraphBuilder(jobs).build(TriggerFlags(dict(flags or {})))


def sleeper(seconds: float, outcome: StepOutcome | None = None):
    """Behaviour that sleeps (interruptibly) and then returns `outcome`."""

    def run(job, ctx: StepContext) -> StepOutcome:
        if ctx.cancel_event.wait(seconds):
            return StepOutcome.failure(error="cancelled")
        return outcome or StepOutcome.success()

    return run


def hang(job, ctx: StepContext) -> StepOutcome:
    """Behaviour that runs until it is signalled to stop."""
    ctx.cancel_event.wait()
    return StepOutcome.failure(error="stopped")


class ScriptedRunner:
    def __init__(self, script: Dict[str, List[Any]] | None = None, default: Any = True):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.calls: List[str] = []
        self.contexts: Dict[str, List[StepContext]] = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(self, job: JobSpec, ctx: StepContext) -> StepOutcome:
        with self._lock:
            self.calls.append(job.id)
            self.contexts.setdefault(job.id, []).append(ctx)
            behaviours = self.script.get(job.id)
            behaviour = behaviours.pop(0) if behaviours else self.default
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if isinstance(behaviour, BaseException):
                raise behaviour
            if callable(behaviour):
                return behaviour(job, ctx)
            if isinstance(behaviour, StepOutcome):
                return behaviour
            return StepOutcome.success() if behaviour else StepOutcome.failure(error="scripted failure")
        finally:
            with self._lock:
                self.active -= 1

    def attempts(self, job_id: str) -> int:
        return self.calls.count(job_id)


@pytest.fixture
def fast_retry() -> RetryPolicyManager:
    return RetryPolicyManager(max_attempts=2, backoff=Backoff(base=0))


@pytest.fixture
def pipeline_data() -> Dict[str, Any]:
    """A small multi-area pipeline as it would come out of YAML."""
    return {
        "path_rules": {
            "backend": ["*.py", "service/"],
            "frontend": ["web/", "*.tsx"],
            "docs": ["*.md", "docs/"],
        },
        "fallback_area": "docs",
        "jobs": [
            {"id": "backend-lint", "when": "backend", "steps": [{"name": "lint", "run": "ruff check ."}]},
            {
                "id": "backend-test",
                "when": "backend",
                "needs": ["backend-lint"],
                "steps": [{"name": "test", "run": "pytest -q"}],
            },
            {"id": "frontend-build", "when": "frontend", "steps": [{"name": "build", "run": "npm run build"}]},
            {"id": "docs-lint", "when": "docs", "steps": [{"name": "lint", "run": "markdownlint ."}]},
        ],
        "quality_gates": [
            {"name": "no-high-findings", "field": "findings.high", "threshold": 0},
        ],
        "retry": {"backoff_base": 0},
    }
