# tests/test_plan.py

import pytest

from conftest import make_job, make_plan
from verdictci.errors import InvalidTransitionError
from verdictci.model import JobStatus


def test_happy_path_transitions_record_timestamps():
    plan = make_plan([make_job("a")])
    running = plan.transition("a", JobStatus.RUNNING)
    assert running.started_at is not None
    assert running.finished_at is None

    done = plan.transition("a", JobStatus.SUCCEEDED, payload={"log_ref": "a.log"})
    assert done.finished_at is not None
    assert done.duration is not None and done.duration >= 0
    assert plan.is_finished()


def test_retry_path_returns_to_pending():
    plan = make_plan([make_job("a")])
    plan.transition("a", JobStatus.RUNNING)
    plan.transition("a", JobStatus.PENDING, retry_count=1)
    assert plan.result("a").retry_count == 1
    plan.transition("a", JobStatus.RUNNING)
    assert plan.transition("a", JobStatus.FAILED).retry_count == 1


@pytest.mark.parametrize(
    "terminal",
    [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.TIMED_OUT, JobStatus.CANCELLED],
)
def test_terminal_states_are_write_once(terminal):
    plan = make_plan([make_job("a")])
    plan.transition("a", JobStatus.RUNNING)
    plan.transition("a", terminal)
    for target in JobStatus:
        with pytest.raises(InvalidTransitionError):
            plan.transition("a", target)


def test_skipped_is_never_entered_from_running():
    plan = make_plan([make_job("a")])
    plan.transition("a", JobStatus.RUNNING)
    with pytest.raises(InvalidTransitionError):
        plan.transition("a", JobStatus.SKIPPED)


def test_pending_cannot_finish_without_running():
    plan = make_plan([make_job("a")])
    with pytest.raises(InvalidTransitionError):
        plan.transition("a", JobStatus.SUCCEEDED)


def test_results_keep_declaration_order():
    plan = make_plan([make_job("z"), make_job("a", "z"), make_job("m")])
    assert list(plan.results()) == ["z", "a", "m"]
    assert [spec.id for spec in plan] == ["z", "a", "m"]
