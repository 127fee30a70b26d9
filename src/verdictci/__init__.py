from .config import PipelineConfig, load_config, parse_config
from .dsl import JobBuilder, build, cache, job, sh, wf
from .model import ChangeSet, JobResult, JobStatus, RunType, RunVerdict, TriggerEvent
from .orchestrator import Orchestrator, PipelineReport
from .runner import CallableStepRunner, ShellStepRunner, StepOutcome
from .scheduler import CancellationToken

__all__ = [
    "wf",
    "job",
    "sh",
    "cache",
    "JobBuilder",
    "build",
    "PipelineConfig",
    "load_config",
    "parse_config",
    "Orchestrator",
    "PipelineReport",
    "CancellationToken",
    "ChangeSet",
    "TriggerEvent",
    "RunType",
    "JobStatus",
    "JobResult",
    "RunVerdict",
    "ShellStepRunner",
    "CallableStepRunner",
    "StepOutcome",
]
