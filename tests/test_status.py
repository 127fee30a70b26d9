# tests/test_status.py

from datetime import datetime, timedelta, timezone

from verdictci.gates import GateVerdict, GateViolation
from verdictci.model import JobResult, JobStatus, Severity
from verdictci.status import Level, StatusAggregator

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _at(job_id, status, finished_s, **kwargs):
    return JobResult(
        job_id=job_id,
        status=status,
        started_at=T0,
        finished_at=T0 + timedelta(seconds=finished_s),
        **kwargs,
    )


def test_failures_first_ordered_by_finish_time():
    results = {
        "lint": _at("lint", JobStatus.FAILED, 30, reason="ruff found errors", payload={"log_ref": "lint.log"}),
        "test": _at("test", JobStatus.TIMED_OUT, 10, reason="exceeded timeout of 5s"),
        "docs": JobResult("docs", JobStatus.SKIPPED, reason="area 'docs' not triggered"),
        "deploy": _at("deploy", JobStatus.CANCELLED, 40, reason="superseded"),
    }
    summary = StatusAggregator().summarize(results, GateVerdict())

    levels = [e.level for e in summary.entries]
    assert levels == [Level.FAILURE, Level.FAILURE, Level.WARNING, Level.NOTICE]
    assert summary.first_blocking_cause.job_id == "test"
    assert summary.failures[1].ref == "lint.log"
    assert summary.warnings[0].job_id == "deploy"
    assert summary.notices[0].message == "skipped: area 'docs' not triggered"


def test_gate_violations_join_their_job_group():
    results = {
        "scan": _at("scan", JobStatus.SUCCEEDED, 20),
        "build": _at("build", JobStatus.FAILED, 50, reason="exit 2"),
    }
    gates = GateVerdict(
        violations=(
            GateViolation("no-high", Severity.BLOCKING, "findings.high", 1, 0, ">", ("scan",)),
            GateViolation("flaky", Severity.ADVISORY, "retry_count", 1, 0, ">", ("build",)),
        )
    )
    summary = StatusAggregator().summarize(results, gates)

    assert [e.job_id for e in summary.failures] == ["scan", "build"]
    assert summary.first_blocking_cause.message.startswith("quality gate no-high")
    assert summary.warnings[0].message.startswith("quality gate flaky")


def test_notices_for_cache_hits_retries_and_unevaluated_gates():
    results = {
        "build": _at("build", JobStatus.SUCCEEDED, 5, cache_hit=True),
        "test": _at("test", JobStatus.SUCCEEDED, 9, retry_count=1),
    }
    summary = StatusAggregator().summarize(results, GateVerdict(not_evaluated=("coverage",)))

    assert not summary.failures
    assert [e.message for e in summary.notices] == [
        "succeeded from cache",
        "succeeded after 1 retry",
        "quality gate coverage: not evaluated (no data)",
    ]
    assert summary.first_blocking_cause is None


def test_summary_serializes():
    results = {"a": _at("a", JobStatus.FAILED, 1, reason="boom")}
    data = StatusAggregator().summarize(results, GateVerdict()).to_dict()
    assert data == [{"level": "failure", "job": "a", "message": "failed: boom", "ref": None}]
