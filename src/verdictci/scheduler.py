# scheduler.py
from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .cache import JobCache
from .model import JobResult, JobStatus
from .plan import ExecutionPlan
from .retry import RetryPolicyManager
from .runner import StepContext, StepRunner

logger = logging.getLogger(__name__)

TIE_BREAKS = ("declaration", "lexical")


class CancellationToken:
    """Run-wide cancellation signal. The first reason given wins."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "run cancelled") -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
        logger.info("cancellation requested: %s", reason)
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class _Done:
    status: JobStatus
    payload: Dict[str, Any] = field(default_factory=dict)
    cache_key: Optional[str] = None
    cache_hit: bool = False
    inputs: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class _Attempt:
    job_id: str
    number: int
    ctx: StepContext
    began: float
    signalled_at: Optional[float] = None
    # status to record once a cancelled attempt stops (or its grace runs out)
    on_drain: Optional[Tuple[JobStatus, str]] = None


class Scheduler:
    """
    Executes an ExecutionPlan on worker threads, at most `max_parallelism`
    of them running a live attempt at once.

    Scheduler (event loop on the calling thread):
      - dispatches runnable jobs (all deps terminal, none failed/timed_out/
        cancelled) up to `max_parallelism`, ties broken by declaration order
        (or job id with tie_break="lexical")
      - skips dependents of blocking failures without running them
      - enforces per-job timeouts, signalling the step to stop
      - consults the retry policy on failed/timed_out attempts
      - honours the run-wide cancellation token
    A stopped step keeps its slot until it returns or the grace period
    expires; after that the job is considered stopped regardless and its
    daemon thread is abandoned, so it no longer counts against the limit.
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        runner: StepRunner,
        *,
        max_parallelism: int = 4,
        retry: Optional[RetryPolicyManager] = None,
        cache: Optional[JobCache] = None,
        cancel_grace: float = 10.0,
        tie_break: str = "declaration",
        run_id: Optional[str] = None,
        poll_interval: float = 0.05,
        listener: Optional[Callable[[JobResult], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be >= 1")
        if tie_break not in TIE_BREAKS:
            raise ValueError(f"tie_break must be one of {TIE_BREAKS}, got {tie_break!r}")
        self.plan = plan
        self.runner = runner
        self.max_parallelism = max_parallelism
        self.retry = retry or RetryPolicyManager()
        self.cache = cache
        self.cancel_grace = cancel_grace
        self.tie_break = tie_break
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.poll_interval = poll_interval
        self.listener = listener
        self._clock = clock

        self._in_flight: Dict[Future, _Attempt] = {}
        self._draining: Dict[Future, _Attempt] = {}
        self._eligible_at: Dict[str, float] = {}
        self._halted = False
        # skipped because something upstream failed; blocks like a failure
        self._blocked: Set[str] = set()
        self._topo: List[str] = [j for level in plan.levels for j in level]

    # ------------------------------------------------------------------
    # state helpers
    # ------------------------------------------------------------------

    def _set(self, job_id: str, status: JobStatus, **changes) -> JobResult:
        result = self.plan.transition(job_id, status, **changes)
        logger.debug("[%s] -> %s", job_id, status.value)
        if self.listener is not None:
            try:
                self.listener(result)
            except Exception:
                logger.exception("status listener failed for %s", job_id)
        return result

    def _sort_key(self, job_id: str):
        if self.tie_break == "lexical":
            return job_id
        return self.plan.index(job_id)

    def _slots_free(self) -> int:
        return self.max_parallelism - len(self._in_flight) - len(self._draining)

    # ------------------------------------------------------------------
    # worker side
    # ------------------------------------------------------------------

    def _execute(self, attempt: _Attempt) -> _Done:
        spec = self.plan.spec(attempt.job_id)

        key: Optional[str] = None
        inputs: List[Tuple[str, str]] = []
        if self.cache is not None and spec.cache is not None:
            key, inputs = self.cache.key_for(spec)
            attempt.ctx.cache_key = key
            if key and spec.cache.skip_on_hit and self.cache.try_restore(spec, key):
                return _Done(JobStatus.SUCCEEDED, {"cache": "hit"}, key, True, inputs)

        try:
            outcome = self.runner.run(spec, attempt.ctx)
        except Exception as e:
            # job-local errors become job results, never orchestrator errors
            logger.warning("[%s] step runner raised %s: %s", spec.id, e.__class__.__name__, e)
            return _Done(
                JobStatus.FAILED,
                {"error": str(e) or e.__class__.__name__, "error_type": e.__class__.__name__},
                key,
                False,
                inputs,
            )

        if outcome.status not in (JobStatus.SUCCEEDED, JobStatus.FAILED):
            return _Done(
                JobStatus.FAILED,
                {"error": f"step runner returned unsupported status {outcome.status.value!r}"},
                key,
                False,
                inputs,
            )
        return _Done(outcome.status, dict(outcome.payload), key, False, inputs)

    # ------------------------------------------------------------------
    # scheduler side
    # ------------------------------------------------------------------

    @staticmethod
    def _outcome(fut: Future) -> _Done:
        try:
            return fut.result()
        except Exception as e:
            logger.warning("job worker crashed: %s", e)
            return _Done(JobStatus.FAILED, {"error": str(e) or e.__class__.__name__, "error_type": e.__class__.__name__})

    def _propagate_skips(self) -> None:
        for job_id in self._topo:
            if self.plan.status(job_id) != JobStatus.PENDING:
                continue
            for dep in self.plan.spec(job_id).needs:
                dep_status = self.plan.status(dep)
                if dep_status.blocks_dependents or dep in self._blocked:
                    what = dep_status.value if dep not in self._blocked else "skipped after an upstream failure"
                    self._blocked.add(job_id)
                    self._set(job_id, JobStatus.SKIPPED, reason=f"dependency '{dep}' {what}")
                    break

    def _satisfied(self, dep: str) -> bool:
        status = self.plan.status(dep)
        return status.terminal and not status.blocks_dependents and dep not in self._blocked

    def _runnable(self, now: float) -> List[str]:
        ready = []
        for job_id in self.plan.order:
            if self.plan.status(job_id) != JobStatus.PENDING:
                continue
            if self._eligible_at.get(job_id, 0.0) > now:
                continue
            deps = self.plan.spec(job_id).needs
            if all(self._satisfied(d) for d in deps):
                ready.append(job_id)
        return sorted(ready, key=self._sort_key)

    def _spawn(self, attempt: _Attempt) -> Future:
        fut: Future = Future()
        fut.set_running_or_notify_cancel()

        def work() -> None:
            try:
                fut.set_result(self._execute(attempt))
            except Exception as e:
                fut.set_exception(e)

        threading.Thread(
            target=work,
            name=f"verdictci-job-{attempt.job_id}-{attempt.number}",
            daemon=True,
        ).start()
        return fut

    def _dispatch(self, now: float) -> None:
        for job_id in self._runnable(now):
            if self._slots_free() <= 0:
                break
            spec = self.plan.spec(job_id)
            number = self.plan.result(job_id).retry_count + 1
            ctx = StepContext(run_id=self.run_id, attempt=number, timeout=spec.timeout)
            attempt = _Attempt(job_id=job_id, number=number, ctx=ctx, began=now)
            self._eligible_at.pop(job_id, None)
            self._set(job_id, JobStatus.RUNNING, reason=None)
            fut = self._spawn(attempt)
            self._in_flight[fut] = attempt
            logger.info("[%s] dispatched (attempt %d)", job_id, number)

    def _fail(self, attempt: _Attempt, status: JobStatus, payload: Dict[str, Any], reason: str, now: float, **extra) -> None:
        spec = self.plan.spec(attempt.job_id)
        decision = self.retry.decide(spec, status, attempt.number)
        if decision.retry and not self._halted:
            self._set(
                attempt.job_id,
                JobStatus.PENDING,
                retry_count=attempt.number,
                payload=payload,
                reason=f"{reason}; {decision.reason}",
                **extra,
            )
            self._eligible_at[attempt.job_id] = now + decision.delay
            return
        logger.info("[%s] final %s: %s (%s)", attempt.job_id, status.value, reason, decision.reason)
        self._set(attempt.job_id, status, payload=payload, reason=reason, **extra)

    def _complete(self, attempt: _Attempt, done: _Done, now: float) -> None:
        extra = {"cache_key": done.cache_key, "cache_hit": done.cache_hit}
        if done.status == JobStatus.SUCCEEDED:
            self._set(attempt.job_id, JobStatus.SUCCEEDED, payload=done.payload, reason=None, **extra)
            if done.cache_key and not done.cache_hit and self.cache is not None:
                self.cache.save_async(self.plan.spec(attempt.job_id), done.cache_key, done.inputs)
            return
        reason = str(done.payload.get("error") or "step failed")
        self._fail(attempt, JobStatus.FAILED, done.payload, reason, now, **extra)

    def _settle_drained(self, attempt: _Attempt, done: Optional[_Done], note: str = "") -> None:
        if attempt.on_drain is None:
            logger.debug("[%s] late result of stopped attempt %d discarded", attempt.job_id, attempt.number)
            return
        status, reason = attempt.on_drain
        payload = dict(done.payload) if done is not None else {}
        self._set(attempt.job_id, status, payload=payload, reason=reason + note)

    def _halt(self, reason: str, now: float) -> None:
        self._halted = True
        logger.info("halting run: %s", reason)
        for fut, attempt in list(self._in_flight.items()):
            attempt.ctx.cancel_event.set()
            attempt.signalled_at = now
            attempt.on_drain = (JobStatus.CANCELLED, reason)
            self._draining[fut] = self._in_flight.pop(fut)
        for job_id in self.plan.order:
            if self.plan.status(job_id) == JobStatus.PENDING:
                self._set(job_id, JobStatus.CANCELLED, reason=reason)

    def _check_deadlines(self, now: float) -> None:
        for fut, attempt in list(self._in_flight.items()):
            timeout = self.plan.spec(attempt.job_id).timeout
            if now - attempt.began < timeout:
                continue
            attempt.ctx.cancel_event.set()
            attempt.signalled_at = now
            self._draining[fut] = self._in_flight.pop(fut)
            logger.warning("[%s] timed out after %.1fs", attempt.job_id, timeout)
            self._fail(attempt, JobStatus.TIMED_OUT, {}, f"exceeded timeout of {timeout:g}s", now)

    def _expire_draining(self, now: float) -> None:
        for fut, attempt in list(self._draining.items()):
            if attempt.signalled_at is not None and now - attempt.signalled_at >= self.cancel_grace:
                del self._draining[fut]
                logger.warning("[%s] step did not stop within %.1fs grace period", attempt.job_id, self.cancel_grace)
                self._settle_drained(attempt, None, note=" (forced after grace period)")

    def _next_timeout(self, now: float) -> float:
        waits = [self.poll_interval]
        for attempt in self._in_flight.values():
            waits.append(attempt.began + self.plan.spec(attempt.job_id).timeout - now)
        for attempt in self._draining.values():
            if attempt.signalled_at is not None:
                waits.append(attempt.signalled_at + self.cancel_grace - now)
        for at in self._eligible_at.values():
            waits.append(at - now)
        return max(0.0, min(waits))

    def run(self, cancel: Optional[CancellationToken] = None) -> Dict[str, JobResult]:
        """Drive the plan to completion. Returns results in declaration order."""
        cancel = cancel or CancellationToken()
        while True:
            now = self._clock()
            if cancel.cancelled and not self._halted:
                self._halt(cancel.reason or "run cancelled", now)

            self._propagate_skips()
            if not self._halted:
                self._dispatch(now)

            if not self._in_flight and not self._draining:
                if self.plan.is_finished():
                    break
                if not self._eligible_at:
                    stuck = [j for j in self.plan.order if not self.plan.status(j).terminal]
                    raise RuntimeError(f"scheduler stalled with unfinished jobs: {stuck}")

            timeout = self._next_timeout(now)
            futures = list(self._in_flight) + list(self._draining)
            if futures:
                done, _ = wait(futures, timeout=timeout, return_when=FIRST_COMPLETED)
            else:
                cancel.wait(timeout)
                done = set()

            now = self._clock()
            for fut in done:
                if fut in self._in_flight:
                    self._complete(self._in_flight.pop(fut), self._outcome(fut), now)
                elif fut in self._draining:
                    self._settle_drained(self._draining.pop(fut), self._outcome(fut))

            self._check_deadlines(now)
            self._expire_draining(now)

        return self.plan.results()
