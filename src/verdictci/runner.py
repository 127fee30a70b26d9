# runner.py
# The step-runner boundary: the only place external tools are invoked.
from __future__ import annotations

import json
import logging
import os
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from .model import JobSpec, JobStatus, Step

logger = logging.getLogger(__name__)


TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass
class StepContext:
    """What the scheduler hands a runner for one attempt of one job."""
    run_id: str
    attempt: int
    timeout: float
    cancel_event: threading.Event = field(default_factory=threading.Event)
    cache_key: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass(frozen=True)
class StepOutcome:
    status: JobStatus
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **payload) -> StepOutcome:
        return cls(JobStatus.SUCCEEDED, dict(payload))

    @classmethod
    def failure(cls, **payload) -> StepOutcome:
        return cls(JobStatus.FAILED, dict(payload))


class StepRunner(Protocol):
    def run(self, job: JobSpec, ctx: StepContext) -> StepOutcome:
        ...


class CallableStepRunner:
    """Adapts `fn(job, ctx) -> StepOutcome | bool` to the StepRunner protocol."""

    def __init__(self, fn: Callable[[JobSpec, StepContext], Any]):
        self.fn = fn

    def run(self, job: JobSpec, ctx: StepContext) -> StepOutcome:
        out = self.fn(job, ctx)
        if isinstance(out, StepOutcome):
            return out
        return StepOutcome.success() if out else StepOutcome.failure()


# ----------------------------------------------------------------------
# Shell execution
# ----------------------------------------------------------------------

def _tool_hint(cmd: str) -> Optional[str]:
    try:
        words = shlex.split(cmd)
    except ValueError:
        words = cmd.split()
    if not words:
        return None
    tool = words[0]
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


class ShellStepRunner:
    """
    Runs each step of a job as a shell command.

    Output of every step goes to one log file per attempt; its path is the
    payload's `log_ref`. A step may write JSON to $VERDICTCI_OUTPUT; its
    `findings` and `metrics` keys are copied into the payload as-is.
    """

    def __init__(
        self,
        repo_root: str | Path = ".",
        log_dir: str | Path = ".verdictci/logs",
        *,
        poll_interval: float = 0.1,
        kill_grace: float = 5.0,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.log_dir = Path(log_dir)
        if not self.log_dir.is_absolute():
            self.log_dir = self.repo_root / self.log_dir
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            # every process in the group has already exited
            pass

    def _wait(self, proc: subprocess.Popen, cancel_event: threading.Event) -> Optional[int]:
        """
        Wait for the process; None means it was stopped on cancellation.

        Each step leads its own process group, so stopping it also stops
        whatever the step's shell started.
        """
        while True:
            try:
                return proc.wait(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                if not cancel_event.is_set():
                    continue
            self._signal_group(proc, signal.SIGTERM)
            try:
                proc.wait(timeout=self.kill_grace)
            except subprocess.TimeoutExpired:
                pass
            # survivors that ignored SIGTERM, or outlived the shell
            self._signal_group(proc, signal.SIGKILL)
            proc.wait()
            return None

    def _run_step(self, job: JobSpec, step: Step, ctx: StepContext, env: Dict[str, str], log) -> Dict[str, Any] | None:
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            return {"error": f"step '{step.name}' cwd not found: {cwd}", "step": step.name}

        log.write(f"==> [{job.id}] {step.name}\n$ {step.run}\n")
        log.flush()

        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
        code = self._wait(proc, ctx.cancel_event)
        if code is None:
            log.write(f"--- step '{step.name}' stopped: cancelled\n")
            return {"error": "cancelled", "step": step.name}
        if code != 0:
            failure: Dict[str, Any] = {
                "error": f"step '{step.name}' failed (exit={code}): {step.run}",
                "step": step.name,
                "exit_code": code,
            }
            if code == 127:
                failure["hint"] = _tool_hint(step.run)
            return failure
        return None

    def run(self, job: JobSpec, ctx: StepContext) -> StepOutcome:
        attempt_dir = self.log_dir / ctx.run_id
        attempt_dir.mkdir(parents=True, exist_ok=True)
        log_path = attempt_dir / f"{job.id}.{ctx.attempt}.log"
        output_path = attempt_dir / f"{job.id}.{ctx.attempt}.json"

        env = os.environ.copy()
        env.update(job.env)
        env["VERDICTCI_OUTPUT"] = str(output_path)
        env["VERDICTCI_RUN_ID"] = ctx.run_id
        env["VERDICTCI_ATTEMPT"] = str(ctx.attempt)
        if ctx.cache_key:
            env["VERDICTCI_CACHE_KEY"] = ctx.cache_key

        payload: Dict[str, Any] = {"log_ref": str(log_path)}
        failure = None
        with log_path.open("w", encoding="utf-8") as log:
            for step in job.steps:
                if ctx.cancelled:
                    failure = {"error": "cancelled", "step": step.name}
                    break
                failure = self._run_step(job, step, ctx, env, log)
                if failure is not None:
                    break

        payload.update(self._read_output(output_path))
        if failure is not None:
            payload.update(failure)
            return StepOutcome(JobStatus.FAILED, payload)
        return StepOutcome(JobStatus.SUCCEEDED, payload)

    @staticmethod
    def _read_output(path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable step output %s: %s", path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: data[k] for k in ("findings", "metrics") if k in data}
