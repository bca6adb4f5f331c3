"""
Upload API router: receipt text and spreadsheet ingestion, job status,
history and live progress logs.
"""
from __future__ import annotations

import logging
from typing import Iterator, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import StreamingResponse

from app.config import settings
from app.sales.jobs.orchestrator import IngestionOrchestrator, InvalidSourceError, JobNotFound
from app.sales.schemas import (
    DailyBillRequest,
    JobResponse,
    ProgressEvent,
    RemoteSourceRequest,
    SourceKind,
    UploadAccepted,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def get_orchestrator(request: Request) -> IngestionOrchestrator:
    return request.app.state.orchestrator


def _accepted(response: Response, orchestrator: IngestionOrchestrator, job_id: str) -> UploadAccepted:
    response.status_code = 202
    job = orchestrator.get_job(job_id)
    return UploadAccepted(job_id=job_id, status=job.status if job else "queued")


def _sse_lines(events: Iterator[Optional[ProgressEvent]]) -> Iterator[str]:
    for event in events:
        if event is None:
            yield ": keep-alive\n\n"
        else:
            yield f"data: {event.model_dump_json(exclude_none=True)}\n\n"


# ── POST /api/upload ─────────────────────────────────────────────────────────
@router.post("/upload")
def upload_spreadsheet(
    response: Response,
    file: UploadFile = File(...),
    sync: bool = False,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """Upload a sales spreadsheet (.xlsx). Runs in the background unless ``sync``."""
    # one byte past the limit is enough for validation to reject it
    data = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    try:
        if sync:
            return orchestrator.run_sync(data, SourceKind.SPREADSHEET, file.filename)
        job_id = orchestrator.submit(data, SourceKind.SPREADSHEET, file.filename)
    except InvalidSourceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("Accepted spreadsheet upload %s as job %s", file.filename, job_id)
    return _accepted(response, orchestrator, job_id)


# ── POST /api/upload/url ─────────────────────────────────────────────────────
@router.post("/upload/url", response_model=UploadAccepted, status_code=202)
def upload_from_url(
    req: RemoteSourceRequest,
    response: Response,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """Ingest a file fetched from a URL (e.g. a cloud storage link)."""
    try:
        job_id = orchestrator.submit_url(req.url, req.source_kind, req.file_name)
    except InvalidSourceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _accepted(response, orchestrator, job_id)


# ── POST /api/upload/daily/bill ──────────────────────────────────────────────
@router.post("/upload/daily/bill")
def upload_daily_bill(
    req: DailyBillRequest,
    response: Response,
    background: bool = False,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """Ingest raw receipt text from the billing terminal."""
    data = req.bill.encode("utf-8")
    try:
        if not background:
            return orchestrator.run_sync(data, SourceKind.TEXT, "daily-bill")
        job_id = orchestrator.submit(data, SourceKind.TEXT, "daily-bill")
    except InvalidSourceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _accepted(response, orchestrator, job_id)


# ── GET /api/upload/status/{job_id} ──────────────────────────────────────────
@router.get("/upload/status/{job_id}", response_model=JobResponse)
def get_upload_status(
    job_id: str,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    job = orchestrator.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# ── GET /api/upload/history ──────────────────────────────────────────────────
@router.get("/upload/history", response_model=List[JobResponse])
def list_upload_history(orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    """Ingestion jobs, newest first."""
    return orchestrator.list_jobs()


# ── GET /api/upload/logs/{job_id} ────────────────────────────────────────────
@router.get("/upload/logs/{job_id}")
def stream_upload_logs(
    job_id: str,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """Server-Sent Events: progress updates, then one terminal event."""
    try:
        events = orchestrator.watch(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return StreamingResponse(
        _sse_lines(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── DELETE /api/upload/history/{job_id} ──────────────────────────────────────
@router.delete("/upload/history/{job_id}")
def delete_upload_job(
    job_id: str,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """Delete one job; a running worker is cancelled first."""
    if not orchestrator.delete_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"deleted": job_id}


# ── DELETE /api/upload/history ───────────────────────────────────────────────
@router.delete("/upload/history")
def delete_upload_history(orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    count = orchestrator.delete_all_jobs()
    return {"deleted": count}
