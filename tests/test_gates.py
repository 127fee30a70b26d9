# tests/test_gates.py

from datetime import datetime, timedelta, timezone

import pytest

from verdictci.gates import QualityGateEvaluator, resolve_field
from verdictci.model import JobResult, JobStatus, QualityGateRule, Severity

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _result(job_id, status=JobStatus.SUCCEEDED, seconds=10.0, **kwargs):
    return JobResult(
        job_id=job_id,
        status=status,
        started_at=T0,
        finished_at=T0 + timedelta(seconds=seconds),
        **kwargs,
    )


def test_high_finding_blocks_even_when_every_job_succeeded():
    results = {
        "scan": _result("scan", payload={"findings": [{"id": "CVE-1", "severity": "HIGH"}]}),
        "test": _result("test"),
    }
    verdict = QualityGateEvaluator([QualityGateRule("no-high", "findings.high", 0)]).evaluate(results)

    assert all(r.status == JobStatus.SUCCEEDED for r in results.values())
    assert not verdict.passed
    (violation,) = verdict.blocking
    assert violation.value == 1
    assert violation.job_ids == ("scan",)


def test_evaluation_is_a_pure_reduction():
    results = {"scan": _result("scan", payload={"findings": [{"severity": "high"}]})}
    evaluator = QualityGateEvaluator([QualityGateRule("no-high", "findings.high", 0)])
    assert evaluator.evaluate(results) == evaluator.evaluate(results)


def test_advisory_violation_does_not_block():
    results = {"test": _result("test", retry_count=1)}
    rule = QualityGateRule("flaky", "retry_count", 0, severity=Severity.ADVISORY)
    verdict = QualityGateEvaluator([rule]).evaluate(results)
    assert verdict.passed
    assert len(verdict.advisory) == 1


def test_each_aggregate_reports_every_offender():
    results = {
        "a": _result("a", seconds=5),
        "b": _result("b", seconds=50),
        "c": _result("c", seconds=70),
    }
    rule = QualityGateRule("slow", "duration", 30, aggregate="each")
    verdict = QualityGateEvaluator([rule]).evaluate(results)
    assert [v.job_ids for v in verdict.violations] == [("b",), ("c",)]


def test_min_aggregate_with_payload_metric():
    results = {
        "unit": _result("unit", payload={"metrics": {"coverage": 91.5}}),
        "integration": _result("integration", payload={"metrics": {"coverage": 62}}),
    }
    rule = QualityGateRule("coverage", "metrics.coverage", 80, op="<", aggregate="min")
    (violation,) = QualityGateEvaluator([rule]).evaluate(results).violations
    assert violation.job_ids == ("integration",)
    assert violation.value == 62


def test_skipped_and_cancelled_results_are_not_inspected():
    results = {
        "skipped": JobResult("skipped", JobStatus.SKIPPED, payload={"findings": [{"severity": "high"}]}),
        "cancelled": JobResult("cancelled", JobStatus.CANCELLED, payload={"findings": [{"severity": "high"}]}),
    }
    verdict = QualityGateEvaluator([QualityGateRule("no-high", "findings.high", 0)]).evaluate(results)
    assert verdict.passed
    assert verdict.not_evaluated == ("no-high",)


def test_missing_data_can_violate():
    rule = QualityGateRule("coverage", "metrics.coverage", 80, op="<", on_missing="violate")
    (violation,) = QualityGateEvaluator([rule]).evaluate({"unit": _result("unit")}).violations
    assert violation.value is None
    assert "no job reported" in violation.message


def test_rule_scoped_to_jobs():
    results = {
        "scan": _result("scan", payload={"findings": [{"severity": "high"}]}),
        "other": _result("other", payload={"findings": [{"severity": "high"}]}),
    }
    rule = QualityGateRule("scan-only", "findings.high", 0, jobs=("scan",))
    (violation,) = QualityGateEvaluator([rule]).evaluate(results).violations
    assert violation.value == 1


def test_unknown_operator_is_rejected():
    with pytest.raises(ValueError):
        QualityGateEvaluator([QualityGateRule("bad", "findings", 0, op="~")])


def test_resolve_field_ignores_non_numeric_values():
    result = _result("x", payload={"metrics": {"coverage": "high", "ok": True}})
    assert resolve_field(result, "metrics.coverage") is None
    assert resolve_field(result, "metrics.ok") == 1.0
    assert resolve_field(result, "findings") is None
    assert resolve_field(result, "duration") == 10.0
