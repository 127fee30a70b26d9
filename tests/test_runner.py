# tests/test_runner.py

import threading
import time
from pathlib import Path

from verdictci.model import JobSpec, JobStatus, Step
from verdictci.runner import CallableStepRunner, ShellStepRunner, StepContext, StepOutcome


def _job(*commands, **kwargs):
    steps = tuple(Step(name=f"step{i}", run=cmd) for i, cmd in enumerate(commands))
    return JobSpec(id=kwargs.pop("id", "job"), steps=steps, **kwargs)


def _ctx(attempt=1):
    return StepContext(run_id="run1", attempt=attempt, timeout=30)


def test_successful_steps_log_to_one_file(tmp_path):
    runner = ShellStepRunner(tmp_path)
    outcome = runner.run(_job("echo first", "echo second"), _ctx())

    assert outcome.status == JobStatus.SUCCEEDED
    log = Path(outcome.payload["log_ref"])
    assert log == tmp_path / ".verdictci" / "logs" / "run1" / "job.1.log"
    text = log.read_text()
    assert "first" in text and "second" in text


def test_failing_step_stops_the_job(tmp_path):
    outcome = ShellStepRunner(tmp_path).run(_job("exit 3", "echo never"), _ctx())
    assert outcome.status == JobStatus.FAILED
    assert outcome.payload["exit_code"] == 3
    assert outcome.payload["step"] == "step0"
    assert "echo never" not in Path(outcome.payload["log_ref"]).read_text()


def test_missing_tool_gets_a_hint(tmp_path):
    outcome = ShellStepRunner(tmp_path).run(_job("definitely-not-a-tool-xyz --version"), _ctx())
    assert outcome.payload["exit_code"] == 127
    assert "definitely-not-a-tool-xyz" in outcome.payload["hint"]


def test_structured_output_is_merged(tmp_path):
    cmd = """printf '%s' '{"findings": [{"severity": "high"}], "metrics": {"coverage": 88}, "other": 1}' > "$VERDICTCI_OUTPUT" """
    outcome = ShellStepRunner(tmp_path).run(_job(cmd), _ctx())
    assert outcome.status == JobStatus.SUCCEEDED
    assert outcome.payload["findings"] == [{"severity": "high"}]
    assert outcome.payload["metrics"] == {"coverage": 88}
    assert "other" not in outcome.payload


def test_job_env_and_attempt_are_exported(tmp_path):
    job = _job('test "$GREETING" = hello && test "$VERDICTCI_ATTEMPT" = 2', env={"GREETING": "hello"})
    assert ShellStepRunner(tmp_path).run(job, _ctx(attempt=2)).status == JobStatus.SUCCEEDED


def test_missing_cwd_fails(tmp_path):
    job = JobSpec(id="job", steps=(Step("x", "true", cwd="nope"),))
    outcome = ShellStepRunner(tmp_path).run(job, _ctx())
    assert outcome.status == JobStatus.FAILED
    assert "cwd not found" in outcome.payload["error"]


def test_cancel_event_stops_the_process(tmp_path):
    ctx = _ctx()
    threading.Timer(0.2, ctx.cancel_event.set).start()
    started = time.monotonic()
    outcome = ShellStepRunner(tmp_path, poll_interval=0.05, kill_grace=1).run(_job("sleep 10"), ctx)
    assert time.monotonic() - started < 5
    assert outcome.status == JobStatus.FAILED
    assert outcome.payload["error"] == "cancelled"


def test_cancel_stops_processes_the_step_started(tmp_path):
    marker = tmp_path / "marker"
    ctx = _ctx()
    threading.Timer(0.3, ctx.cancel_event.set).start()
    # the subshell is a grandchild; stopping only the shell would leave it running
    cmd = f'(sleep 1.5; touch "{marker}") & wait'
    outcome = ShellStepRunner(tmp_path, poll_interval=0.05, kill_grace=1).run(_job(cmd), ctx)

    assert outcome.payload["error"] == "cancelled"
    time.sleep(2.5)
    assert not marker.exists()


def test_callable_runner_accepts_bools_and_outcomes():
    job = _job("unused")
    assert CallableStepRunner(lambda j, c: True).run(job, _ctx()).status == JobStatus.SUCCEEDED
    assert CallableStepRunner(lambda j, c: False).run(job, _ctx()).status == JobStatus.FAILED
    outcome = CallableStepRunner(lambda j, c: StepOutcome.success(log_ref="x")).run(job, _ctx())
    assert outcome.payload == {"log_ref": "x"}
