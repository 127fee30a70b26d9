"""Console output formatting utilities for VerdictCI."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Iterable, Optional

from ..model import FORCE_ALL, JobResult, JobStatus, RunVerdict, TriggerFlags
from ..status import Level

if TYPE_CHECKING:
    from ..orchestrator import PipelineReport, RunPlan


_STATUS_LABEL = {
    JobStatus.SUCCEEDED: "SUCCESS",
    JobStatus.FAILED: "FAILED",
    JobStatus.TIMED_OUT: "TIMED OUT",
    JobStatus.CANCELLED: "CANCELLED",
    JobStatus.SKIPPED: "SKIPPED",
    JobStatus.PENDING: "PENDING",
    JobStatus.RUNNING: "RUNNING",
}

_LEVEL_LABEL = {
    Level.FAILURE: "FAIL",
    Level.WARNING: "WARN",
    Level.NOTICE: "NOTE",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, run_id: str, config: str, job_count: int, ref: Optional[str] = None) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run ID: {run_id}")
        print(f"Config: {config}")
        if ref:
            print(f"Ref: {ref}")
        print(f"Jobs: {job_count}")
        print()

    def print_categories(self, categories: Iterable[str]) -> None:
        cats = sorted(categories)
        if FORCE_ALL in cats:
            print("Categories: (empty change set, all areas forced)")
        else:
            print(f"Categories: {', '.join(cats) if cats else '(none)'}")

    def print_flags(self, flags: TriggerFlags) -> None:
        print("Areas:")
        for area, enabled in flags.as_dict().items():
            print(f"  {area}: {'on' if enabled else 'off'}")

    def print_plan(self, run_plan: "RunPlan") -> None:
        """Print job selection plan, level by level."""
        plan = run_plan.plan
        self.print_header("PLAN")
        for i, level in enumerate(plan.levels):
            print(f"level {i}:")
            for job_id in level:
                r = plan.result(job_id)
                if r.status == JobStatus.SKIPPED:
                    print(f"  {job_id} (skipped: {r.reason})")
                else:
                    needs = plan.spec(job_id).needs
                    print(f"  {job_id}" + (f" (needs: {', '.join(needs)})" if needs else ""))

    def print_job_result(self, result: JobResult) -> None:
        """Print a job reaching a terminal state."""
        label = _STATUS_LABEL.get(result.status, result.status.value.upper())
        line = f"JOB {label}: {result.job_id}"
        if result.status == JobStatus.SUCCEEDED and result.cache_hit:
            line += " (cache hit)"
        if result.retry_count:
            line += f" (retries: {result.retry_count})"
        print(line)
        if result.status in (JobStatus.FAILED, JobStatus.TIMED_OUT, JobStatus.CANCELLED) and result.reason:
            # first line only unless debugging
            reason = result.reason if self.debug else result.reason.split("\n")[0]
            print(f"  Reason: {reason}")
        hint = result.payload.get("hint")
        if hint and result.status == JobStatus.FAILED:
            print(f"  Hint: {hint}")

    def print_report(self, report: "PipelineReport") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job_id, r in report.results.items():
            dur = f" ({r.duration:.1f}s)" if r.duration is not None else ""
            print(f"  {job_id}: {_STATUS_LABEL.get(r.status, r.status.value.upper())}{dur}")

        if report.summary.entries:
            self.print_header("SUMMARY")
            for entry in report.summary.entries:
                who = f"[{entry.job_id}] " if entry.job_id else ""
                ref = f" ({entry.ref})" if entry.ref else ""
                print(f"  {_LEVEL_LABEL[entry.level]} {who}{entry.message}{ref}")

        print()
        if report.verdict == RunVerdict.CANCELLED and report.cancel_reason:
            print(f"VERDICT: CANCELLED ({report.cancel_reason})")
        else:
            print(f"VERDICT: {report.verdict.value.upper()}")
        cause = report.summary.first_blocking_cause
        if cause is not None and report.verdict == RunVerdict.FAILED:
            print(f"First blocking cause: {cause.job_id or 'run'}: {cause.message}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


class ConsoleReporter:
    """Reporter that prints the final report to the console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console

    def report(self, report: "PipelineReport") -> None:
        (self.console or get_console()).print_report(report)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
