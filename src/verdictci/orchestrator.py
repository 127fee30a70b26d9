# orchestrator.py
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Protocol

from .cache import CacheKeyResolver, CacheStore, JobCache
from .changes import ChangeSetAnalyzer
from .config import PipelineConfig
from .dag import JobGraphBuilder
from .gates import GateVerdict, QualityGateEvaluator
from .model import JobResult, JobStatus, RunVerdict, TriggerEvent, TriggerFlags
from .plan import ExecutionPlan
from .runner import StepRunner
from .scheduler import CancellationToken, Scheduler
from .status import RunSummary, StatusAggregator
from .triggers import TriggerRuleEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunPlan:
    categories: FrozenSet[str]
    flags: TriggerFlags
    plan: ExecutionPlan


def decide_verdict(results: Mapping[str, JobResult], gates: GateVerdict, cancelled: bool) -> RunVerdict:
    """
    failed:    a blocking gate violation, or a job failed / timed out
    cancelled: the run was cancelled (or a job was) and nothing failed
    passed:    everything else
    """
    statuses = [r.status for r in results.values()]
    if gates.blocking or any(s in (JobStatus.FAILED, JobStatus.TIMED_OUT) for s in statuses):
        return RunVerdict.FAILED
    if cancelled or JobStatus.CANCELLED in statuses:
        return RunVerdict.CANCELLED
    return RunVerdict.PASSED


@dataclass(frozen=True)
class PipelineReport:
    run_id: str
    event: TriggerEvent
    categories: FrozenSet[str]
    flags: TriggerFlags
    results: Mapping[str, JobResult]
    gates: GateVerdict
    summary: RunSummary
    verdict: RunVerdict
    cancel_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        cause = self.summary.first_blocking_cause
        return {
            "run_id": self.run_id,
            "verdict": self.verdict.value,
            "run_type": self.event.run_type.value,
            "ref": self.event.ref,
            "changes": list(self.event.changes),
            "categories": sorted(self.categories),
            "flags": self.flags.as_dict(),
            "jobs": {job_id: r.to_dict() for job_id, r in self.results.items()},
            "quality_gates": self.gates.to_dict(),
            "summary": self.summary.to_dict(),
            "first_blocking_cause": cause.to_dict() if cause else None,
            "cancel_reason": self.cancel_reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class Reporter(Protocol):
    """The external reporting collaborator."""

    def report(self, report: PipelineReport) -> None:
        ...


class JsonFileReporter:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def report(self, report: PipelineReport) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(report.to_dict(), indent=2, sort_keys=True), encoding="utf-8")


def _has_finding(result: JobResult, severity: str) -> bool:
    findings = result.payload.get("findings")
    if not isinstance(findings, list):
        return False
    wanted = severity.lower()
    return any(isinstance(f, Mapping) and str(f.get("severity", "")).lower() == wanted for f in findings)


class Orchestrator:
    """
    One configuration, many runs.

    trigger event -> ChangeSetAnalyzer -> TriggerRuleEngine -> JobGraphBuilder
    -> Scheduler -> QualityGateEvaluator -> StatusAggregator -> PipelineReport
    Configuration errors surface from `plan()` before any job is dispatched.
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: StepRunner,
        *,
        repo_root: str | Path = ".",
        cache_store: Optional[CacheStore] = None,
        listener: Optional[Callable[[JobResult], None]] = None,
        poll_interval: float = 0.05,
    ):
        self.config = config
        self.runner = runner
        self.repo_root = Path(repo_root).resolve()
        self.listener = listener
        self.poll_interval = poll_interval

        self.analyzer = ChangeSetAnalyzer(config.path_rule_objects())
        self.triggers = TriggerRuleEngine(config.resolved_areas(), config.fallback_area)
        self.builder = JobGraphBuilder(config.job_specs())
        self.gates = QualityGateEvaluator(config.gate_rules())
        self.aggregator = StatusAggregator()
        self.retry = config.retry_policy()
        self.resolver = CacheKeyResolver(config.runner_context)
        cache_dir = Path(config.cache_dir)
        if not cache_dir.is_absolute():
            cache_dir = self.repo_root / cache_dir
        self.cache_store = cache_store if cache_store is not None else CacheStore(cache_dir)

    def plan(self, event: TriggerEvent) -> RunPlan:
        categories = self.analyzer.analyze(event.changes)
        flags = self.triggers.evaluate(categories)
        plan = self.builder.build(flags)
        return RunPlan(categories, flags, plan)

    def _listener_for(
        self, cancel: CancellationToken, extra: Optional[Callable[[JobResult], None]] = None
    ) -> Callable[[JobResult], None]:
        halt_on = self.config.halt_on_severity
        listeners = [l for l in (self.listener, extra) if l is not None]

        def on_result(result: JobResult) -> None:
            if halt_on and result.status.terminal and _has_finding(result, halt_on):
                cancel.cancel(f"{halt_on} finding reported by '{result.job_id}'")
            for listener in listeners:
                listener(result)

        return on_result

    def run(
        self,
        event: TriggerEvent,
        cancel: Optional[CancellationToken] = None,
        *,
        run_id: Optional[str] = None,
        listener: Optional[Callable[[JobResult], None]] = None,
    ) -> PipelineReport:
        run_id = run_id or uuid.uuid4().hex[:12]
        cancel = cancel or CancellationToken()
        started_at = datetime.now(timezone.utc)

        run_plan = self.plan(event)
        logger.info(
            "run %s: categories=%s flags=%s",
            run_id,
            sorted(run_plan.categories),
            run_plan.flags.as_dict(),
        )

        job_cache = JobCache(self.cache_store, self.resolver, repo_root=self.repo_root)
        scheduler = Scheduler(
            run_plan.plan,
            self.runner,
            max_parallelism=self.config.max_parallelism,
            retry=self.retry,
            cache=job_cache,
            cancel_grace=self.config.cancel_grace_period,
            tie_break=self.config.tie_break,
            run_id=run_id,
            poll_interval=self.poll_interval,
            listener=self._listener_for(cancel, listener),
        )
        try:
            results = scheduler.run(cancel)
        finally:
            job_cache.close(wait=True)

        gates = self.gates.evaluate(results)
        summary = self.aggregator.summarize(results, gates)
        verdict = decide_verdict(results, gates, cancel.cancelled)
        logger.info("run %s finished: %s", run_id, verdict.value)

        return PipelineReport(
            run_id=run_id,
            event=event,
            categories=run_plan.categories,
            flags=run_plan.flags,
            results=results,
            gates=gates,
            summary=summary,
            verdict=verdict,
            cancel_reason=cancel.reason,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
