# gates.py
from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .model import JobResult, JobStatus, QualityGateRule, Severity

OPS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}
AGGREGATES = ("sum", "max", "min", "each")
ON_MISSING = ("ignore", "violate")

# Only these results carry an output worth inspecting.
_INSPECTED = (JobStatus.SUCCEEDED, JobStatus.FAILED)


@dataclass(frozen=True)
class GateViolation:
    rule: str
    severity: Severity
    field: str
    value: Optional[float]
    threshold: float
    op: str
    job_ids: Tuple[str, ...] = ()

    @property
    def message(self) -> str:
        if self.value is None:
            return f"{self.rule}: no job reported '{self.field}'"
        return f"{self.rule}: {self.field} = {self.value:g} ({self.op} {self.threshold:g})"


@dataclass(frozen=True)
class GateVerdict:
    violations: Tuple[GateViolation, ...] = ()
    not_evaluated: Tuple[str, ...] = ()

    @property
    def blocking(self) -> Tuple[GateViolation, ...]:
        return tuple(v for v in self.violations if v.severity == Severity.BLOCKING)

    @property
    def advisory(self) -> Tuple[GateViolation, ...]:
        return tuple(v for v in self.violations if v.severity == Severity.ADVISORY)

    @property
    def passed(self) -> bool:
        return not self.blocking

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "violations": [
                {
                    "rule": v.rule,
                    "severity": v.severity.value,
                    "field": v.field,
                    "value": v.value,
                    "threshold": v.threshold,
                    "op": v.op,
                    "jobs": list(v.job_ids),
                    "message": v.message,
                }
                for v in self.violations
            ],
            "not_evaluated": list(self.not_evaluated),
        }


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    return None


def resolve_field(result: JobResult, field: str) -> Optional[float]:
    """
    Read a numeric value from a job result.

      retry_count / duration      result attributes
      findings                    number of findings
      findings.<severity>         findings with that severity (case-insensitive)
      a.b.c                       dotted path into the payload, e.g. metrics.coverage
    """
    if field == "retry_count":
        return float(result.retry_count)
    if field == "duration":
        return result.duration

    payload = result.payload
    if field == "findings" or field.startswith("findings."):
        findings = payload.get("findings")
        if not isinstance(findings, list):
            return None
        if field == "findings":
            return float(len(findings))
        wanted = field.split(".", 1)[1].lower()
        return float(
            sum(
                1
                for f in findings
                if isinstance(f, Mapping) and str(f.get("severity", "")).lower() == wanted
            )
        )

    node: Any = payload
    for part in field.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return _as_number(node)


class QualityGateEvaluator:
    """
    Applies threshold rules to terminal job results.

    A pure reduction: the same rules over the same results always produce the
    same verdict. Blocking violations fail the run; advisory ones are only
    recorded.
    """

    def __init__(self, rules: Sequence[QualityGateRule]):
        for rule in rules:
            if rule.op not in OPS:
                raise ValueError(f"gate {rule.name!r}: unknown op {rule.op!r}")
            if rule.aggregate not in AGGREGATES:
                raise ValueError(f"gate {rule.name!r}: unknown aggregate {rule.aggregate!r}")
            if rule.on_missing not in ON_MISSING:
                raise ValueError(f"gate {rule.name!r}: unknown on_missing {rule.on_missing!r}")
        self.rules: Tuple[QualityGateRule, ...] = tuple(rules)

    def _values(self, rule: QualityGateRule, results: Mapping[str, JobResult]) -> List[Tuple[str, float]]:
        values = []
        for job_id, result in results.items():
            if rule.jobs and job_id not in rule.jobs:
                continue
            if result.status not in _INSPECTED:
                continue
            value = resolve_field(result, rule.field)
            if value is not None:
                values.append((job_id, value))
        return values

    def _check(self, rule: QualityGateRule, values: List[Tuple[str, float]]) -> List[GateViolation]:
        violated = OPS[rule.op]

        def violation(value: Optional[float], jobs: Tuple[str, ...]) -> GateViolation:
            return GateViolation(rule.name, rule.severity, rule.field, value, rule.threshold, rule.op, jobs)

        if rule.aggregate == "each":
            return [violation(v, (j,)) for j, v in values if violated(v, rule.threshold)]

        if rule.aggregate == "sum":
            total = sum(v for _, v in values)
            if violated(total, rule.threshold):
                return [violation(total, tuple(j for j, v in values if v))]
            return []

        pick = max if rule.aggregate == "max" else min
        job_id, value = pick(values, key=lambda jv: jv[1])
        return [violation(value, (job_id,))] if violated(value, rule.threshold) else []

    def evaluate(self, results: Mapping[str, JobResult]) -> GateVerdict:
        violations: List[GateViolation] = []
        not_evaluated: List[str] = []
        for rule in self.rules:
            values = self._values(rule, results)
            if not values:
                if rule.on_missing == "violate":
                    violations.append(
                        GateViolation(rule.name, rule.severity, rule.field, None, rule.threshold, rule.op)
                    )
                else:
                    not_evaluated.append(rule.name)
                continue
            violations.extend(self._check(rule, values))
        return GateVerdict(tuple(violations), tuple(not_evaluated))
