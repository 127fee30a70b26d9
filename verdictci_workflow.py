# verdictci_workflow.py
# Pipeline for verdictci itself: lint, tests, type check, docs and packaging checks
from __future__ import annotations

from verdictci.dsl import cache, job, sh, wf


def workflow():
    return wf(
        job(
            "lint",
            sh("Ruff check", "ruff check ."),
            when="python",
            cache=cache("ruff", inputs=["src/**", "tests/**", "pyproject.toml"], skip_on_hit=True),
        ),
        job(
            "format-check",
            sh("Ruff format check", "ruff format --check ."),
            when="python",
        ),
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            needs=["lint"],
            when="python",
            timeout="15m",
            cache=cache("pytest", inputs=["src/**", "tests/**", "pyproject.toml"], paths=[".pytest_cache"]),
        ),
        job(
            "type-check",
            sh("Type check", "python -m mypy src/verdictci --ignore-missing-imports"),
            needs=["lint"],
            when="python",
        ),
        job(
            "dependency-audit",
            sh("pip-audit", "pip-audit --strict"),
            job_class="security-scan",
            when="packaging",
            retryable=False,
        ),
        job(
            "docs-check",
            sh("Check README", "test -f README.md"),
            when="docs",
        ),
        job(
            "config-check",
            sh("Validate pipeline", "verdictci validate --config verdictci_workflow.py"),
            when="packaging",
        ),
        path_rules={
            "python": ["src/", "tests/", "*.py"],
            "packaging": ["pyproject.toml", "verdictci_workflow.py"],
            "docs": ["*.md", "docs/"],
        },
        areas={
            "python": ["python", "packaging"],
            "packaging": ["packaging"],
            "docs": ["docs"],
        },
        fallback_area="docs",
        quality_gates=[
            {"name": "no-flaky-tests", "field": "retry_count", "threshold": 0, "jobs": ["test"], "severity": "advisory"},
            {"name": "no-high-findings", "field": "findings.high", "threshold": 0},
        ],
        max_parallelism=4,
        default_job_timeout="20m",
    )
