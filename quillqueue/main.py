import logging
import os
import uuid
from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from .coordinator import PipelineCoordinator, build_pipeline
from .errors import InvalidSelection, InvalidTransition, JobNotFound
from .logging_utils import setup_logging
from .models import JobStatus, JobType
from .schemas import AdvanceOut, AdvanceRequest, BlogJobCreate, JobOut, OutlineJobCreate, TitleJobCreate
from .settings import settings

setup_logging(settings.log_level)
log = logging.getLogger("api")

@lru_cache(maxsize=1)
def get_coordinator() -> PipelineCoordinator:
    return build_pipeline(settings, with_workers=settings.run_workers)

@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.run_workers:
        coordinator = get_coordinator()
        coordinator.start_workers()
        log.info("stage workers started in api process", extra={"event": "workers_inline"})
        try:
            yield
        finally:
            coordinator.stop_workers()
    else:
        yield

app = FastAPI(title="QuillQueue API", version="0.1.0", lifespan=lifespan)

@app.middleware("http")
async def request_id_mw(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

@app.exception_handler(JobNotFound)
async def job_not_found_handler(request: Request, exc: JobNotFound):
    return JSONResponse(status_code=404, content={"detail": "job not found"})

@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(InvalidSelection)
async def invalid_selection_handler(request: Request, exc: InvalidSelection):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

def _rid(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)

@app.get("/healthz")
def healthz(request: Request):
    log.info("health ok", extra={"request_id": _rid(request), "event": "healthz"})
    return {"ok": True}

@app.get("/readyz")
def readyz(request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    coordinator.store.ping()
    if settings.queue_backend == "redis":
        from .redis_client import get_redis

        get_redis(settings.redis_url).ping()
    log.info("ready ok", extra={"request_id": _rid(request), "event": "readyz"})
    return {"ready": True}

def _submit(job_type: JobType, body, request: Request, coordinator: PipelineCoordinator) -> JobOut:
    job_id = coordinator.submit(job_type, body)
    log.info(
        "job accepted",
        extra={"request_id": _rid(request), "job_id": job_id, "stage": job_type.value, "event": "job_accepted"},
    )
    return coordinator.status(job_id)

@app.post("/jobs/titles", response_model=JobOut, status_code=202)
def create_title_job(
    req: TitleJobCreate, request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    return _submit(JobType.title_generation, req, request, coordinator)

@app.post("/jobs/outlines", response_model=JobOut, status_code=202)
def create_outline_job(
    req: OutlineJobCreate, request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    return _submit(JobType.outline_generation, req, request, coordinator)

@app.post("/jobs/blogs", response_model=JobOut, status_code=202)
def create_blog_job(
    req: BlogJobCreate, request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    return _submit(JobType.blog_generation, req, request, coordinator)

@app.get("/jobs", response_model=list[JobOut])
def list_jobs(
    type: JobType | None = None,
    status: JobStatus | None = None,
    source_job_id: str | None = None,
    limit: int = 50,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
):
    return coordinator.list_jobs(job_type=type, status=status, source_job_id=source_job_id, limit=max(1, min(limit, 200)))

@app.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str, request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    job = coordinator.status(job_id)
    log.info("job fetched", extra={"request_id": _rid(request), "job_id": job_id, "event": "job_get"})
    return job

@app.post("/jobs/{job_id}/advance", response_model=AdvanceOut, status_code=202)
def advance_job(
    job_id: str,
    req: AdvanceRequest,
    request: Request,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
):
    job = coordinator.status(job_id)
    if job.type == JobType.title_generation:
        ids = coordinator.advance_titles(job_id, req.titles, instructions=req.instructions)
    elif job.type == JobType.outline_generation:
        ids = [coordinator.advance_outline(job_id, instructions=req.instructions)]
    else:
        raise HTTPException(status_code=400, detail="blog generation is the last stage")
    log.info(
        f"advanced into {len(ids)} jobs",
        extra={"request_id": _rid(request), "job_id": job_id, "event": "job_advanced"},
    )
    return AdvanceOut(source_job_id=job_id, job_ids=ids)

@app.post("/jobs/{job_id}/stop-retries", response_model=JobOut)
def stop_retries(job_id: str, request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    job = coordinator.stop_retries(job_id)
    log.info("retries stopped", extra={"request_id": _rid(request), "job_id": job_id, "event": "job_stop_retries"})
    return job

def run():
    import uvicorn

    uvicorn.run(
        "quillqueue.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_config=None,
    )
