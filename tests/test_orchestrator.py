# tests/test_orchestrator.py

import json

import pytest

from conftest import ScriptedRunner, hang
from verdictci.cache import CacheStore
from verdictci.config import parse_config
from verdictci.errors import CycleError
from verdictci.gates import GateVerdict
from verdictci.model import ChangeSet, JobResult, JobStatus, RunVerdict, TriggerEvent
from verdictci.orchestrator import JsonFileReporter, Orchestrator, decide_verdict
from verdictci.runner import StepOutcome
from verdictci.scheduler import CancellationToken


def _orchestrator(data, runner, tmp_path):
    return Orchestrator(
        parse_config(data),
        runner,
        repo_root=tmp_path,
        cache_store=CacheStore(tmp_path / "cache"),
        poll_interval=0.01,
    )


def _event(*paths, ref=None):
    return TriggerEvent(ChangeSet.of(paths), ref=ref)


def test_backend_change_skips_frontend_and_docs(pipeline_data, tmp_path):
    runner = ScriptedRunner()
    report = _orchestrator(pipeline_data, runner, tmp_path).run(_event("service/handler.py"))

    assert report.flags.as_dict() == {"backend": True, "frontend": False, "docs": False}
    assert report.results["frontend-build"].status == JobStatus.SKIPPED
    assert report.results["docs-lint"].status == JobStatus.SKIPPED
    assert runner.calls == ["backend-lint", "backend-test"]
    assert report.verdict == RunVerdict.PASSED


def test_empty_change_set_runs_everything(pipeline_data, tmp_path):
    runner = ScriptedRunner()
    report = _orchestrator(pipeline_data, runner, tmp_path).run(_event())
    assert all(report.flags.as_dict().values())
    assert sorted(runner.calls) == ["backend-lint", "backend-test", "docs-lint", "frontend-build"]


def test_unmatched_change_enables_fallback(pipeline_data, tmp_path):
    runner = ScriptedRunner()
    report = _orchestrator(pipeline_data, runner, tmp_path).run(_event("LICENSE"))
    assert report.flags.as_dict() == {"backend": False, "frontend": False, "docs": True}
    assert runner.calls == ["docs-lint"]


def test_high_finding_fails_run_although_jobs_succeeded(pipeline_data, tmp_path):
    runner = ScriptedRunner(
        {"backend-test": [StepOutcome.success(findings=[{"id": "B101", "severity": "high"}], log_ref="t.log")]}
    )
    report = _orchestrator(pipeline_data, runner, tmp_path).run(_event("service/handler.py"))

    assert report.results["backend-test"].status == JobStatus.SUCCEEDED
    assert report.verdict == RunVerdict.FAILED
    cause = report.summary.first_blocking_cause
    assert cause.job_id == "backend-test"
    assert cause.message.startswith("quality gate no-high-findings")
    assert cause.ref == "t.log"


def test_critical_finding_halts_the_run(pipeline_data, tmp_path):
    pipeline_data["jobs"] = [
        {"id": "scan", "job_class": "security-scan", "steps": [{"name": "scan", "run": "scan"}]},
        {"id": "long", "steps": [{"name": "long", "run": "sleep"}]},
        {"id": "after", "needs": ["scan"], "steps": [{"name": "after", "run": "true"}]},
    ]
    pipeline_data["quality_gates"] = []
    runner = ScriptedRunner(
        {
            "scan": [StepOutcome.success(findings=[{"severity": "CRITICAL"}])],
            "long": [hang],
        }
    )
    report = _orchestrator(pipeline_data, runner, tmp_path).run(_event("a.py"))

    assert report.verdict == RunVerdict.CANCELLED
    assert report.cancel_reason == "critical finding reported by 'scan'"
    assert report.results["long"].status == JobStatus.CANCELLED
    assert report.results["after"].status == JobStatus.CANCELLED


def test_external_cancellation(pipeline_data, tmp_path):
    token = CancellationToken()
    token.cancel("superseded by run abc")
    runner = ScriptedRunner()
    report = _orchestrator(pipeline_data, runner, tmp_path).run(_event("a.py"), token)
    assert report.verdict == RunVerdict.CANCELLED
    assert runner.calls == []
    assert report.summary.warnings


def test_cycle_aborts_before_any_job_runs(pipeline_data, tmp_path):
    pipeline_data["jobs"][0]["needs"] = ["backend-test"]
    runner = ScriptedRunner()
    with pytest.raises(CycleError):
        _orchestrator(pipeline_data, runner, tmp_path).run(_event("a.py"))
    assert runner.calls == []


def test_listener_receives_terminal_results(pipeline_data, tmp_path):
    seen = []
    orch = _orchestrator(pipeline_data, ScriptedRunner(), tmp_path)
    orch.run(_event("a.py"), listener=lambda r: r.status.terminal and seen.append(r.job_id))
    assert sorted(seen) == ["backend-lint", "backend-test"]


def test_report_serializes_and_json_reporter_writes(pipeline_data, tmp_path):
    report = _orchestrator(pipeline_data, ScriptedRunner({"backend-lint": [False, False]}), tmp_path).run(
        _event("a.py", ref="feature/x")
    )
    out = tmp_path / "reports" / "run.json"
    JsonFileReporter(out).report(report)

    data = json.loads(out.read_text())
    assert data["verdict"] == "failed"
    assert data["ref"] == "feature/x"
    assert data["jobs"]["backend-test"]["status"] == "skipped"
    assert data["first_blocking_cause"]["job"] == "backend-lint"
    assert data["categories"] == ["backend"]


def test_unchanged_inputs_skip_a_cached_check_job(pipeline_data, tmp_path):
    (tmp_path / "in.txt").write_text("v1\n")
    pipeline_data["jobs"][0]["cache"] = {"namespace": "ruff", "inputs": ["in.txt"], "skip_on_hit": True}
    runner = ScriptedRunner()
    orch = _orchestrator(pipeline_data, runner, tmp_path)

    first = orch.run(_event("a.py"))
    assert first.results["backend-lint"].cache_hit is False
    second = orch.run(_event("a.py"))

    assert runner.calls == ["backend-lint", "backend-test", "backend-test"]
    lint = second.results["backend-lint"]
    assert lint.status == JobStatus.SUCCEEDED
    assert lint.cache_hit is True
    assert second.verdict == RunVerdict.PASSED
    assert any(e.job_id == "backend-lint" and e.message == "succeeded from cache" for e in second.summary.notices)

    (tmp_path / "in.txt").write_text("v2\n")
    third = orch.run(_event("a.py"))
    assert third.results["backend-lint"].cache_hit is False
    assert runner.calls.count("backend-lint") == 2


@pytest.mark.parametrize(
    "statuses, cancelled, expected",
    [
        ([JobStatus.SUCCEEDED, JobStatus.SKIPPED], False, RunVerdict.PASSED),
        ([JobStatus.SUCCEEDED, JobStatus.TIMED_OUT], False, RunVerdict.FAILED),
        ([JobStatus.SUCCEEDED, JobStatus.CANCELLED], False, RunVerdict.CANCELLED),
        ([JobStatus.SUCCEEDED, JobStatus.CANCELLED], True, RunVerdict.CANCELLED),
        ([JobStatus.FAILED, JobStatus.CANCELLED], True, RunVerdict.FAILED),
    ],
)
def test_decide_verdict(statuses, cancelled, expected):
    results = {f"j{i}": JobResult(f"j{i}", s) for i, s in enumerate(statuses)}
    assert decide_verdict(results, GateVerdict(), cancelled) == expected
