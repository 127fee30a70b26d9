# config.py
"""
Typed configuration surface, validated once at load time.

Every level rejects unknown keys. Path patterns are compiled here, so a
malformed pattern is a startup failure rather than an analysis-time one.
"""
from __future__ import annotations

import json
import platform
import re
import runpy
import sys
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

from .cache import check_input_pattern
from .changes import compile_pattern
from .errors import ConfigError, PatternError
from .model import CacheSpec, JobSpec, PathRule, QualityGateRule, Severity, Step
from .retry import Backoff, RetryPolicyManager

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> float:
    """Seconds from a number or a string like '500ms', '30s', '10m', '1h'."""
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '30s'")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        m = _DURATION_RE.match(value)
        if not m:
            raise ValueError(f"invalid duration {value!r} (use e.g. 500ms, 30s, 10m, 1h)")
        seconds = float(m.group(1)) * _UNITS[m.group(2)]
    else:
        raise ValueError("duration must be a number or a string like '30s'")
    if seconds < 0:
        raise ValueError("duration must not be negative")
    return seconds


Duration = Annotated[float, BeforeValidator(parse_duration)]


def default_runner_context() -> str:
    return f"{platform.system().lower()}-{platform.machine().lower()}-py{sys.version_info[0]}.{sys.version_info[1]}"


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StepConfig(_Strict):
    name: str = Field(min_length=1)
    run: str = Field(min_length=1)
    cwd: Optional[str] = None


class CacheConfig(_Strict):
    namespace: str = Field(min_length=1)
    inputs: List[str] = Field(default_factory=list)
    paths: List[str] = Field(default_factory=list)
    skip_on_hit: bool = False

    @field_validator("inputs")
    @classmethod
    def _inputs_expand(cls, inputs: List[str]) -> List[str]:
        for p in inputs:
            check_input_pattern(p)
        return inputs


class JobConfig(_Strict):
    id: str = Field(min_length=1)
    steps: List[StepConfig] = Field(min_length=1)
    needs: List[str] = Field(default_factory=list)
    when: Optional[str] = None
    timeout: Optional[Duration] = None
    retryable: bool = True
    job_class: Optional[str] = None
    resource_class: str = "standard"
    env: Dict[str, str] = Field(default_factory=dict)
    cache: Optional[CacheConfig] = None


class GateConfig(_Strict):
    name: str = Field(min_length=1)
    field: str = Field(min_length=1)
    threshold: float
    op: Literal[">", ">=", "<", "<=", "==", "!="] = ">"
    severity: Severity = Severity.BLOCKING
    aggregate: Literal["sum", "max", "min", "each"] = "sum"
    jobs: List[str] = Field(default_factory=list)
    on_missing: Literal["ignore", "violate"] = "ignore"


class RetryConfig(_Strict):
    max_attempts: int = Field(2, ge=1)
    excluded_job_classes: List[str] = Field(default_factory=lambda: ["security-scan"])
    backoff_base: Duration = 1.0
    backoff_factor: float = Field(2.0, ge=1.0)
    backoff_max: Duration = 60.0


class PipelineConfig(_Strict):
    path_rules: Dict[str, List[str]] = Field(default_factory=dict)
    areas: Optional[Dict[str, List[str]]] = None
    fallback_area: Optional[str] = None
    jobs: List[JobConfig] = Field(min_length=1)
    quality_gates: List[GateConfig] = Field(default_factory=list)
    max_parallelism: int = Field(4, ge=1)
    default_job_timeout: Duration = 1800.0
    cancel_grace_period: Duration = 10.0
    tie_break: Literal["declaration", "lexical"] = "declaration"
    runner_context: str = Field(default_factory=default_runner_context)
    cache_dir: str = ".verdictci/cache"
    halt_on_severity: Optional[str] = "critical"
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("path_rules")
    @classmethod
    def _patterns_compile(cls, rules: Dict[str, List[str]]) -> Dict[str, List[str]]:
        for category, patterns in rules.items():
            if not patterns:
                raise ValueError(f"category '{category}' has no patterns")
            for p in patterns:
                try:
                    compile_pattern(p)
                except PatternError as e:
                    raise ValueError(f"category '{category}': {e.message}") from e
        return rules

    @model_validator(mode="after")
    def _cross_references(self) -> PipelineConfig:
        areas = self.resolved_areas()
        for area, categories in areas.items():
            unknown = [c for c in categories if c not in self.path_rules]
            if unknown:
                raise ValueError(f"area '{area}' references unknown categories: {unknown}")
        if self.fallback_area is not None and self.fallback_area not in areas:
            raise ValueError(f"fallback_area '{self.fallback_area}' is not a declared area")

        seen = set()
        for job in self.jobs:
            if job.id in seen:
                raise ValueError(f"duplicate job id '{job.id}'")
            seen.add(job.id)
            if job.when is not None and job.when not in areas:
                raise ValueError(f"job '{job.id}': when='{job.when}' is not a declared area")

        gate_names = set()
        for gate in self.quality_gates:
            if gate.name in gate_names:
                raise ValueError(f"duplicate quality gate '{gate.name}'")
            gate_names.add(gate.name)
            unknown_jobs = [j for j in gate.jobs if j not in seen]
            if unknown_jobs:
                raise ValueError(f"quality gate '{gate.name}' references unknown jobs: {unknown_jobs}")
        return self

    # ------------------------------------------------------------------
    # domain objects
    # ------------------------------------------------------------------

    def resolved_areas(self) -> Dict[str, List[str]]:
        """Declared areas, or one area per path-rule category when none are declared."""
        if self.areas is not None:
            return {name: list(cats) for name, cats in self.areas.items()}
        return {category: [category] for category in self.path_rules}

    def path_rule_objects(self) -> List[PathRule]:
        return [PathRule(category, tuple(patterns)) for category, patterns in self.path_rules.items()]

    def job_specs(self) -> List[JobSpec]:
        specs = []
        for j in self.jobs:
            cache = None
            if j.cache is not None:
                cache = CacheSpec(
                    namespace=j.cache.namespace,
                    inputs=tuple(j.cache.inputs),
                    paths=tuple(j.cache.paths),
                    skip_on_hit=j.cache.skip_on_hit,
                )
            specs.append(
                JobSpec(
                    id=j.id,
                    steps=tuple(Step(name=s.name, run=s.run, cwd=s.cwd) for s in j.steps),
                    needs=tuple(j.needs),
                    when=j.when,
                    timeout=j.timeout if j.timeout is not None else self.default_job_timeout,
                    retryable=j.retryable,
                    job_class=j.job_class,
                    resource_class=j.resource_class,
                    env=dict(j.env),
                    cache=cache,
                )
            )
        return specs

    def gate_rules(self) -> List[QualityGateRule]:
        return [
            QualityGateRule(
                name=g.name,
                field=g.field,
                threshold=g.threshold,
                op=g.op,
                severity=g.severity,
                aggregate=g.aggregate,
                jobs=tuple(g.jobs),
                on_missing=g.on_missing,
            )
            for g in self.quality_gates
        ]

    def retry_policy(self) -> RetryPolicyManager:
        r = self.retry
        return RetryPolicyManager(
            max_attempts=r.max_attempts,
            excluded_job_classes=frozenset(r.excluded_job_classes),
            backoff=Backoff(base=r.backoff_base, factor=r.backoff_factor, maximum=r.backoff_max),
        )


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def _format_validation_error(err: ValidationError) -> List[str]:
    lines = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ())) or "<root>"
        msg = e.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        lines.append(f"{loc}: {msg}")
    return lines


def parse_config(data: Any, *, source: str = "<config>") -> PipelineConfig:
    if isinstance(data, PipelineConfig):
        return data
    if not isinstance(data, Mapping):
        raise ConfigError(f"{source}: configuration root must be a mapping, got {type(data).__name__}")
    try:
        return PipelineConfig.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(f"{source}: invalid configuration", details=_format_validation_error(e)) from e


def _load_python(path: Path) -> Any:
    """
    Run a python workflow file. It must define either:
      - workflow() -> PipelineConfig | dict
      - PIPELINE = PipelineConfig | dict
    """
    module_name = f"verdictci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        return globals_dict["workflow"]()
    if "PIPELINE" in globals_dict:
        return globals_dict["PIPELINE"]
    raise ConfigError(
        f"{path.name}: workflow file defines neither workflow() nor PIPELINE",
        details=["define `def workflow(): return wf(job(...), ...)` or `PIPELINE = {...}`"],
    )


def load_config(path: str | Path) -> PipelineConfig:
    """Load and validate a .yaml/.yml, .json or .py pipeline configuration."""
    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise ConfigError(f"Configuration file not found: {cfg_path}")

    suffix = cfg_path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
        elif suffix == ".json":
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
        elif suffix == ".py":
            data = _load_python(cfg_path)
        else:
            raise ConfigError(
                f"Unsupported configuration format: {cfg_path.name}",
                details=["supported: .yaml, .yml, .json, .py"],
            )
    except yaml.YAMLError as e:
        raise ConfigError(f"{cfg_path.name}: invalid YAML", details=[str(e)]) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"{cfg_path.name}: invalid JSON", details=[str(e)]) from e

    return parse_config(data, source=cfg_path.name)
