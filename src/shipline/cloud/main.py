from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..errors import RunNotFound, UnknownEnvironment
from ..gate import DEFAULT_TAG_PATTERN, PromotionPolicy, evaluate
from ..history import RunHistory
from ..loader import load_policy
from ..model import Run
from ..settings import Settings
from .redisq import RedisRunQueue

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    workflow: str
    ref: Optional[str] = None

class CreateRunResponse(BaseModel):
    run_id: str
    status: str

class JobStateResponse(BaseModel):
    status: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    exit_code: Optional[int] = None
    reason: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)

class RunResponse(BaseModel):
    run_id: str
    ref: Optional[str]
    workflow: Optional[str]
    status: str
    reason: str
    created_at: Optional[str]
    started_at: Optional[str]
    finished_at: Optional[str]
    jobs: dict[str, JobStateResponse]

class PolicyModel(BaseModel):
    require_tag: bool = False
    environments: list[str] = Field(default_factory=list)
    required_checks: list[str] = Field(default_factory=list)
    tag_pattern: str = DEFAULT_TAG_PATTERN

class PromotionRequest(BaseModel):
    environment: str
    policy: Optional[PolicyModel] = None

class PromotionResponse(BaseModel):
    run_id: str
    target_environment: str
    approved: bool
    reason: str


def _run_response(run: Run) -> RunResponse:
    data = run.to_dict()
    jobs = {
        job_id: JobStateResponse(**{k: v for k, v in st.items() if k != "log"})
        for job_id, st in data.pop("jobs").items()
    }
    return RunResponse(jobs=jobs, **data)


# -------------------- App --------------------

def create_app(
    settings: Settings | None = None,
    *,
    history: RunHistory | None = None,
    queue=None,
) -> FastAPI:
    """
    Control plane: triggers runs (queued for agents), exposes run records,
    cancels runs and evaluates promotions.

        uvicorn --factory shipline.cloud.main:create_app
    """
    settings = settings if settings is not None else Settings.from_env()
    history = history if history is not None else RunHistory(settings.database_url)
    queue = queue if queue is not None else RedisRunQueue.from_url(settings.redis_url, settings.queue_name)
    default_policy = load_policy(settings.policy_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await history.init()
        try:
            yield
        finally:
            await history.close()

    app = FastAPI(title="shipline control plane", lifespan=lifespan)

    async def _load(run_id: str) -> Run:
        try:
            return await history.load(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs", response_model=CreateRunResponse)
    async def create_run(req: CreateRunRequest):
        run = Run.create(ref=req.ref, workflow=req.workflow)
        await history.save(run)
        # push to the queue after the record is committed
        await queue.enqueue({"run_id": run.run_id, "workflow": req.workflow, "ref": req.ref})
        return CreateRunResponse(run_id=run.run_id, status=run.status.value)

    @app.get("/runs", response_model=list[RunResponse])
    async def list_runs(limit: int = 20):
        return [_run_response(r) for r in await history.list_runs(limit)]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str):
        return _run_response(await _load(run_id))

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str):
        run = await _load(run_id)
        if run.finished:
            raise HTTPException(status_code=409, detail=f"Run already {run.status.value}")
        await queue.request_cancel(run_id)
        return {"ok": True}

    @app.post("/runs/{run_id}/promotions", response_model=PromotionResponse)
    async def promote(run_id: str, req: PromotionRequest):
        run = await _load(run_id)
        policy = PromotionPolicy.from_dict(req.policy.model_dump()) if req.policy else default_policy
        try:
            decision = evaluate(run, policy, req.environment)
        except UnknownEnvironment as e:
            raise HTTPException(status_code=422, detail=str(e))
        await history.record_promotion(decision)
        return PromotionResponse(**decision.to_dict())

    @app.get("/runs/{run_id}/promotions")
    async def list_promotions(run_id: str):
        await _load(run_id)
        return await history.promotions(run_id)

    return app
