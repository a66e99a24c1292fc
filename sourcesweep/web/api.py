from __future__ import annotations

import asyncio
import json
import time
from typing import Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from sourcesweep import __version__
from sourcesweep.broadcast import QueueObserver
from sourcesweep.config import load_settings
from sourcesweep.engine import build_engine
from sourcesweep.errors import EntityNotFoundError, RemoteOperationError, ValidationError
from sourcesweep.log import get_logger
from sourcesweep.models import JobState, JobStatus, RollbackData, RollbackSummary

logger = get_logger("api")

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = FastAPI(title="SourceSweep Control Plane", docs_url="/docs", redoc_url="/redoc")

_start_time = time.monotonic()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.monotonic()
    response = await call_next(request)
    elapsed = (time.monotonic() - start) * 1000
    logger.info("%s %s %d (%.1fms)", request.method, request.url.path,
                response.status_code, elapsed)
    return response

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

settings = load_settings()
_api_key = settings.web.api_key

async def verify_api_key(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
):
    if not _api_key:
        return
    # Support both header and query param (for SSE EventSource)
    bearer_token = None
    if authorization and authorization.startswith("Bearer "):
        bearer_token = authorization[7:]
    actual = bearer_token or token
    if not actual or actual != _api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine = build_engine(settings)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class AnalysisRequest(BaseModel):
    date: str


class RetirementRequest(BaseModel):
    selected_hosts: list[Union[int, str]] = Field(default_factory=list)
    analysis_job_id: Optional[str] = None

# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/")
def read_root():
    return {"name": "SourceSweep", "version": __version__, "docs": "/docs"}

# --- Stats & config ---

@app.get("/api/v1/stats", dependencies=[Depends(verify_api_key)])
def get_stats():
    jobs = engine.list_jobs()
    return {
        "active_jobs": sum(1 for j in jobs if j.status is JobState.RUNNING),
        "total_jobs": len(jobs),
        "rollback_points": len(engine.journal),
        "subscribers": len(engine.broadcaster),
        "uptime_seconds": int(time.monotonic() - _start_time),
    }

@app.get("/api/v1/config", dependencies=[Depends(verify_api_key)])
def get_config():
    return engine.settings.redacted()

@app.post("/api/v1/test-connection", dependencies=[Depends(verify_api_key)])
def test_connection():
    try:
        engine.store.check_connection()
    except RemoteOperationError as e:
        logger.warning("Connection test failed: %s", e)
        return {"success": False, "message": str(e)}
    return {"success": True, "message": "Connection successful"}

# --- Triggers ---

@app.post("/api/v1/analysis", dependencies=[Depends(verify_api_key)])
def start_analysis(request: AnalysisRequest):
    try:
        job_id = engine.start_analysis(request.date)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"job_id": job_id, "status": "started"}

@app.post("/api/v1/apply", dependencies=[Depends(verify_api_key)])
def start_host_analysis(request: AnalysisRequest):
    try:
        job_id = engine.start_host_analysis(request.date)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"job_id": job_id, "status": "started"}

@app.post("/api/v1/apply/execute", dependencies=[Depends(verify_api_key)])
def start_retirement(request: RetirementRequest):
    try:
        job_id = engine.start_retirement(request.selected_hosts, request.analysis_job_id)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EntityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"job_id": job_id, "status": "started"}

# --- Jobs ---

@app.get("/api/v1/jobs", response_model=list[JobStatus], dependencies=[Depends(verify_api_key)])
def list_jobs():
    return engine.list_jobs()

async def _event_stream(observer: QueueObserver):
    """Relay snapshots as SSE; the stream ends once the broadcaster drops the observer."""
    try:
        while True:
            closed = observer.closed
            snapshot = observer.get(timeout=0)
            if snapshot is not None:
                yield f"data: {json.dumps(snapshot, default=str)}\n\n"
                continue
            if closed:
                break
            yield ": keepalive\n\n"
            await asyncio.sleep(0.5)
    finally:
        observer.close()
        engine.broadcaster.unsubscribe(observer)

@app.get("/api/v1/jobs/stream", dependencies=[Depends(verify_api_key)])
async def job_stream():
    observer = QueueObserver()
    if not engine.broadcaster.subscribe(observer, engine.list_jobs):
        raise HTTPException(status_code=503, detail="Could not subscribe to job updates")
    return StreamingResponse(_event_stream(observer), media_type="text/event-stream")

@app.get("/api/v1/jobs/{job_id}", response_model=JobStatus, dependencies=[Depends(verify_api_key)])
def get_job(job_id: str):
    job = engine.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@app.delete("/api/v1/jobs/{job_id}", dependencies=[Depends(verify_api_key)])
def cancel_job(job_id: str):
    try:
        cancelled = engine.cancel_job(job_id)
    except EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    if not cancelled:
        raise HTTPException(status_code=409, detail="Job already finished")
    return {"status": "cancelling"}

# --- Rollback ---

@app.get("/api/v1/rollback/history", response_model=list[RollbackSummary],
         dependencies=[Depends(verify_api_key)])
def rollback_history():
    return engine.journal.list()

@app.get("/api/v1/rollback/{rollback_id}", response_model=RollbackData,
         dependencies=[Depends(verify_api_key)])
def get_rollback(rollback_id: str):
    try:
        return engine.journal.get(rollback_id)
    except EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Rollback not found")

@app.delete("/api/v1/rollback/{rollback_id}", dependencies=[Depends(verify_api_key)])
def delete_rollback(rollback_id: str):
    try:
        engine.journal.delete(rollback_id)
    except EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Rollback not found")
    except OSError as e:
        logger.error("Failed to delete rollback %s: %s", rollback_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to delete rollback file: {e}")
    return {"status": "deleted"}

@app.post("/api/v1/rollback/{rollback_id}/execute", dependencies=[Depends(verify_api_key)])
def execute_rollback(rollback_id: str):
    try:
        job_id = engine.start_rollback(rollback_id)
    except EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Rollback not found")
    return {"job_id": job_id, "status": "started"}
