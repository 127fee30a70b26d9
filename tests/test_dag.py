# tests/test_dag.py

import pytest

from conftest import make_job, make_plan
from verdictci.dag import build_dag, topo_levels
from verdictci.errors import ConfigError, CycleError, UnknownDependencyError
from verdictci.model import JobStatus


def test_levels_follow_dependencies_and_declaration_order():
    jobs = [
        make_job("lint"),
        make_job("unit", "lint"),
        make_job("build"),
        make_job("deploy", "unit", "build"),
    ]
    plan = make_plan(jobs)
    assert plan.levels == (("lint", "build"), ("unit",), ("deploy",))


def test_cycle_fails_before_any_plan_exists():
    jobs = [make_job("a", "c"), make_job("b", "a"), make_job("c", "b"), make_job("d")]
    with pytest.raises(CycleError) as exc:
        make_plan(jobs)
    assert exc.value.stuck == ["a", "b", "c"]


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError):
        make_plan([make_job("a", "a")])


def test_unknown_dependency_is_rejected():
    with pytest.raises(UnknownDependencyError, match="needs missing job 'ghost'"):
        make_plan([make_job("a", "ghost")])


def test_duplicate_ids_are_rejected():
    with pytest.raises(ConfigError, match="Duplicate job ids"):
        build_dag([make_job("a"), make_job("a")])


def test_inactive_jobs_are_pre_skipped_but_kept_in_graph():
    jobs = [
        make_job("backend", when="backend"),
        make_job("frontend", when="frontend"),
        make_job("report", "backend", "frontend"),
    ]
    plan = make_plan(jobs, {"backend": True, "frontend": False})

    assert "frontend" in plan
    assert plan.status("frontend") == JobStatus.SKIPPED
    assert plan.result("frontend").reason == "area 'frontend' not triggered"
    assert plan.status("backend") == JobStatus.PENDING
    assert plan.dependents("frontend") == ("report",)


def test_topo_levels_without_edges_is_one_level():
    adj, indeg = build_dag([make_job("b"), make_job("a")])
    assert topo_levels(adj, indeg, ["b", "a"]) == [["b", "a"]]
