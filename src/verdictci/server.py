from __future__ import annotations

import logging
import os
import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .cache import CacheStore
from .config import PipelineConfig, load_config
from .errors import ConfigError
from .model import ChangeSet, JobResult, RunType, TriggerEvent
from .orchestrator import Orchestrator, PipelineReport
from .runner import ShellStepRunner, StepRunner
from .scheduler import CancellationToken

logger = logging.getLogger(__name__)

MAX_FINISHED_RUNS = 200

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    changes: list[str] = Field(default_factory=list)
    run_type: RunType = RunType.PUSH
    ref: str | None = None

class CreateRunResponse(BaseModel):
    run_id: str
    superseded: list[str] = Field(default_factory=list)

class RunResponse(BaseModel):
    run_id: str
    state: str  # running|passed|failed|cancelled|error
    ref: str | None
    run_type: RunType
    created_at: datetime
    finished_at: datetime | None = None
    cancel_reason: str | None = None
    jobs: dict[str, str] = Field(default_factory=dict)
    report: dict[str, Any] | None = None
    error: str | None = None

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool

# -------------------- Registry --------------------

class _RunRecord:
    def __init__(self, run_id: str, event: TriggerEvent):
        self.run_id = run_id
        self.event = event
        self.token = CancellationToken()
        self.created_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self.jobs: Dict[str, str] = {}
        self.report: Optional[PipelineReport] = None
        self.error: Optional[str] = None
        self.thread: Optional[threading.Thread] = None

    @property
    def state(self) -> str:
        if self.error is not None:
            return "error"
        if self.report is not None:
            return self.report.verdict.value
        return "running"

    @property
    def in_flight(self) -> bool:
        return self.report is None and self.error is None

    def to_response(self) -> RunResponse:
        return RunResponse(
            run_id=self.run_id,
            state=self.state,
            ref=self.event.ref,
            run_type=self.event.run_type,
            created_at=self.created_at,
            finished_at=self.finished_at,
            cancel_reason=self.token.reason,
            jobs=dict(self.jobs),
            report=self.report.to_dict() if self.report is not None else None,
            error=self.error,
        )


class RunRegistry:
    """
    In-memory record of runs started through the service.

    A new run for a ref cancels any run still in flight for the same ref.
    Only the most recent finished runs are kept.
    """

    def __init__(self, orchestrator: Orchestrator, max_finished: int = MAX_FINISHED_RUNS):
        self.orchestrator = orchestrator
        self.max_finished = max_finished
        self._runs: "OrderedDict[str, _RunRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, run_id: str) -> Optional[_RunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def list(self) -> List[_RunRecord]:
        with self._lock:
            return list(self._runs.values())

    def start(self, event: TriggerEvent) -> tuple[_RunRecord, List[str]]:
        # fail before registering anything if the plan cannot be built
        self.orchestrator.plan(event)

        record = _RunRecord(uuid.uuid4().hex[:12], event)
        superseded: List[str] = []
        with self._lock:
            if event.ref is not None:
                for other in self._runs.values():
                    if other.in_flight and other.event.ref == event.ref:
                        other.token.cancel(f"superseded by run {record.run_id}")
                        superseded.append(other.run_id)
            self._runs[record.run_id] = record
            self._prune()

        record.thread = threading.Thread(
            target=self._execute,
            args=(record,),
            name=f"verdictci-run-{record.run_id}",
            daemon=True,
        )
        record.thread.start()
        return record, superseded

    def _execute(self, record: _RunRecord) -> None:
        def on_result(result: JobResult) -> None:
            record.jobs[result.job_id] = result.status.value

        try:
            report = self.orchestrator.run(record.event, record.token, run_id=record.run_id, listener=on_result)
        except Exception as e:
            logger.exception("run %s crashed", record.run_id)
            record.finished_at = datetime.now(timezone.utc)
            record.error = str(e)
        else:
            record.jobs.update({job_id: r.status.value for job_id, r in report.results.items()})
            record.finished_at = datetime.now(timezone.utc)
            record.report = report

    def _prune(self) -> None:
        finished = [rid for rid, r in self._runs.items() if not r.in_flight]
        for rid in finished[: max(0, len(finished) - self.max_finished)]:
            del self._runs[rid]

# -------------------- App --------------------

def create_app(
    config: PipelineConfig,
    runner: Optional[StepRunner] = None,
    *,
    repo_root: str = ".",
    cache_store: Optional[CacheStore] = None,
) -> FastAPI:
    orchestrator = Orchestrator(
        config,
        runner or ShellStepRunner(repo_root),
        repo_root=repo_root,
        cache_store=cache_store,
    )
    registry = RunRegistry(orchestrator)

    app = FastAPI(title="VerdictCI Trigger Service")
    app.state.registry = registry

    @app.post("/runs", response_model=CreateRunResponse, status_code=202)
    async def create_run(req: CreateRunRequest):
        event = TriggerEvent(changes=ChangeSet.of(req.changes), run_type=req.run_type, ref=req.ref)
        try:
            record, superseded = registry.start(event)
        except ConfigError as e:
            raise HTTPException(status_code=422, detail={"message": e.message, "details": e.details})
        return CreateRunResponse(run_id=record.run_id, superseded=superseded)

    @app.get("/runs", response_model=list[RunResponse])
    async def list_runs():
        return [r.to_response() for r in registry.list()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str):
        record = registry.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return record.to_response()

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    async def cancel_run(run_id: str):
        record = registry.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        if not record.in_flight:
            raise HTTPException(status_code=409, detail=f"Run already {record.state}")
        return CancelResponse(run_id=run_id, cancelled=record.token.cancel("cancelled via API"))

    return app


def app_from_env() -> FastAPI:
    """
    App factory for `uvicorn --factory verdictci.server:app_from_env`.

    VERDICTCI_CONFIG     pipeline configuration (default verdictci.yaml)
    VERDICTCI_REPO_ROOT  repository root for steps and cache inputs (default .)
    """
    config_path = os.environ.get("VERDICTCI_CONFIG", "verdictci.yaml")
    repo_root = os.environ.get("VERDICTCI_REPO_ROOT", ".")
    return create_app(load_config(config_path), repo_root=repo_root)
