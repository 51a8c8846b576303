from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query

from .config import settings
from .db import engine, fetch_db_info
from .history import build_history
from .logging_utils import configure_logging
from .orchestrator import enqueue_ingestion_job, register_ingestion_job
from .schemas import JOB_STATUS, STATUS_COMPLETED, IngestionJob, RegisterJobRequest
from .stores import SqlJobStore, SqlRecordStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    yield


app = FastAPI(title="Issue Metrics API", lifespan=lifespan)


def get_job_store() -> SqlJobStore:
    return SqlJobStore(engine)


def get_record_store() -> SqlRecordStore:
    return SqlRecordStore(engine)


def get_enqueuer() -> Callable[[UUID], str]:
    return enqueue_ingestion_job


def _serialize_job(job: IngestionJob) -> Dict[str, Any]:
    return {
        "job_id": str(job.job_id),
        "source": job.source.model_dump(),
        "file_name": job.file_name,
        "status": job.status,
        "window_size": job.window_size,
        "total_records": job.total_records,
        "processed_records": job.processed_records,
        "progress_percent": job.progress_percent,
        "error_detail": job.error_detail,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def _load_job(job_store: SqlJobStore, job_id: UUID) -> IngestionJob:
    try:
        return job_store.get(job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/health")
def health() -> dict:
    try:
        info = fetch_db_info()
    except Exception as exc:  # pragma: no cover - safety
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ok", "db": info}


@app.post("/ingest/jobs", status_code=201)
def register_job_endpoint(
    payload: RegisterJobRequest,
    job_store: SqlJobStore = Depends(get_job_store),
    enqueue: Callable[[UUID], str] = Depends(get_enqueuer),
) -> dict:
    job, queued_id = register_ingestion_job(
        payload.source,
        job_store=job_store,
        window_size=payload.window_size,
        enqueue=enqueue if payload.enqueue else None,
    )
    return {**_serialize_job(job), "queue_job_id": queued_id}


@app.get("/ingest/jobs")
def list_jobs_endpoint(
    status: Optional[JOB_STATUS] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    job_store: SqlJobStore = Depends(get_job_store),
) -> dict:
    jobs = job_store.list(status=status, limit=limit)
    return {"items": [_serialize_job(job) for job in jobs]}


@app.get("/ingest/jobs/{job_id}")
def get_job_endpoint(job_id: UUID, job_store: SqlJobStore = Depends(get_job_store)) -> dict:
    return _serialize_job(_load_job(job_store, job_id))


@app.get("/ingest/jobs/{job_id}/report")
def get_report_endpoint(job_id: UUID, job_store: SqlJobStore = Depends(get_job_store)) -> dict:
    job = _load_job(job_store, job_id)
    if job.status != STATUS_COMPLETED or job.report is None:
        raise HTTPException(
            status_code=409,
            detail=f"report unavailable while job is {job.status}",
        )
    return {"job_id": str(job.job_id), "report": job.report}


@app.get("/ingest/jobs/{job_id}/records")
def list_records_endpoint(
    job_id: UUID,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    job_store: SqlJobStore = Depends(get_job_store),
    record_store: SqlRecordStore = Depends(get_record_store),
) -> dict:
    _load_job(job_store, job_id)
    items = record_store.list_for_job(job_id, limit=limit, offset=offset)
    return {"job_id": str(job_id), "items": items, "limit": limit, "offset": offset}


@app.delete("/ingest/jobs/{job_id}")
def delete_job_endpoint(job_id: UUID, job_store: SqlJobStore = Depends(get_job_store)) -> dict:
    if not job_store.delete(job_id):
        raise HTTPException(status_code=404, detail=f"ingestion job not found: {job_id}")
    return {"job_id": str(job_id), "deleted": True}


@app.get("/ingest/history")
def history_endpoint(
    limit: int = Query(100, ge=1, le=500),
    job_store: SqlJobStore = Depends(get_job_store),
) -> dict:
    history = build_history(job_store.list_completed(limit=limit))
    return history.model_dump(mode="json")
