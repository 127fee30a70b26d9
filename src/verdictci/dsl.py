# dsl.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from .config import CacheConfig, JobConfig, PipelineConfig, StepConfig, parse_config


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> StepConfig:
    """Create a shell step."""
    return StepConfig(name=name, run=cmd, cwd=cwd)


def cache(namespace: str, *, inputs: Optional[List[str]] = None, paths: Optional[List[str]] = None, skip_on_hit: bool = False) -> CacheConfig:
    return CacheConfig(namespace=namespace, inputs=inputs or [], paths=paths or [], skip_on_hit=skip_on_hit)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: StepConfig,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepConfig]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    when: Optional[str] = None,
    timeout: float | str | None = None,
    retryable: bool = True,
    job_class: Optional[str] = None,
    resource_class: str = "standard",
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    cache: Optional[CacheConfig] = None,
) -> JobConfig:
    steps_final: List[StepConfig] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else s.model_copy(update={"cwd": cwd}) for s in steps_final]

    return JobConfig(
        id=id,
        steps=steps_final,
        needs=needs or [],
        when=when,
        timeout=timeout,
        retryable=retryable,
        job_class=job_class,
        resource_class=resource_class,
        env=env or {},
        cache=cache,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._needs: list[str] = []
        self._steps: list[StepConfig] = []
        self._env: dict[str, str] = {}
        self._when: Optional[str] = None
        self._timeout: float | str | None = None
        self._retryable = True
        self._job_class: Optional[str] = None
        self._resource_class = "standard"
        self._cache: Optional[CacheConfig] = None

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(StepConfig(name=name, run=run, cwd=cwd))
        return self

    def when(self, area: str):
        self._when = area
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def timeout(self, value: float | str):
        self._timeout = value
        return self

    def no_retry(self):
        self._retryable = False
        return self

    def job_class(self, name: str):
        self._job_class = name
        return self

    def resource_class(self, name: str):
        self._resource_class = name
        return self

    def cached(self, namespace: str, *, inputs: Optional[List[str]] = None, paths: Optional[List[str]] = None, skip_on_hit: bool = False):
        self._cache = cache(namespace, inputs=inputs, paths=paths, skip_on_hit=skip_on_hit)
        return self

    def build(self) -> JobConfig:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            steps_list=self._steps,
            needs=self._needs,
            when=self._when,
            timeout=self._timeout,
            retryable=self._retryable,
            job_class=self._job_class,
            resource_class=self._resource_class,
            env=self._env,
            cache=self._cache,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobConfig, **options: Any) -> PipelineConfig:
    """
    Workflow definition helper.

    Users can write:
        from verdictci import wf, job, sh

        def workflow():
            return wf(
                job("lint", sh("ruff", "ruff check ."), when="backend"),
                job("test", sh("pytest", "pytest -q"), needs=["lint"]),
                path_rules={"backend": ["*.py"]},
            )

    Keyword options are the top-level configuration keys (path_rules,
    quality_gates, max_parallelism, retry, ...). Validation runs here, so a
    bad workflow fails when it is loaded.
    """
    data: Dict[str, Any] = dict(options)
    data["jobs"] = [j.model_dump(exclude_none=True) for j in jobs]
    return parse_config(data, source="workflow()")
