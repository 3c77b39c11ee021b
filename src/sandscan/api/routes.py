# src/sandscan/api/routes.py
import json
import logging

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from sandscan.api.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    CancelResponse,
    JobListResponse,
    JobStatusResponse,
)
from sandscan.engine.pipeline import done_payload

router = APIRouter()

# idle seconds between SSE keepalive comments
KEEPALIVE_SECONDS = 15.0


def _manager(request: Request):
    return request.app.state.job_manager


@router.post(
    "/api/analyze-repo",
    summary="Submit a repository for sandboxed supply-chain analysis",
    response_description="Job ID and submission status",
    tags=["Analysis Jobs"],
    response_model=AnalyzeResponse,
    responses={
        200: {"description": "Job submitted successfully"},
        400: {"description": "Missing fields, unknown project type or malformed repository URL"},
        500: {"description": "Internal server error"}
    },
)
def analyze_repo(body: AnalyzeRequest, request: Request):
    """
    Start an analysis job and return immediately. Progress is available from the
    status endpoint and as a live event stream.
    """
    job_id = _manager(request).start_analysis(body.repo_url, body.project_type)
    return AnalyzeResponse(success=True, job_id=job_id, status="pending", message="Repository analysis started")


@router.get(
    "/api/job/{job_id}/status",
    summary="Get analysis job status",
    tags=["Analysis Jobs"],
    response_model=JobStatusResponse,
    responses={
        200: {"description": "Job status"},
        404: {"description": "Job not found"},
    },
)
def get_job_status(job_id: str, request: Request):
    return JobStatusResponse.from_job(_manager(request).get_status(job_id))


@router.get(
    "/api/job/{job_id}/details",
    summary="Get the full analysis record of a job",
    response_description="Job with logs, alerts, commits, dependencies and AI summary",
    tags=["Analysis Jobs"],
    responses={
        200: {"description": "Full job record"},
        404: {"description": "Job not found"},
    },
)
def get_job_details(job_id: str, request: Request):
    job = _manager(request).get_details(job_id)
    return {"success": True, "job": job.model_dump(mode="json")}


@router.get(
    "/api/job/{job_id}/events",
    summary="Stream live job events (server-sent events)",
    tags=["Analysis Jobs"],
    responses={
        200: {"description": "text/event-stream of log, alert, progress and done events"},
        404: {"description": "Job not found"},
    },
)
def stream_job_events(job_id: str, request: Request):
    """
    Stream log, alert, progress and done events for one job. A job that already
    finished gets a single done event built from its stored record.
    """
    manager = _manager(request)
    bus = manager.services.bus
    subscription = bus.subscribe(job_id)
    try:
        job = manager.get_status(job_id)
    except Exception:
        bus.unsubscribe(subscription)
        raise

    def _format(kind, data, sequence=None):
        prefix = f"id: {sequence}\n" if sequence is not None else ""
        return f"{prefix}event: {kind}\ndata: {json.dumps(data, default=str)}\n\n"

    def _events():
        try:
            if job.is_terminal:
                yield _format("done", {**done_payload(job), "status": job.status})
                return
            while True:
                event = subscription.get(timeout=KEEPALIVE_SECONDS)
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                yield _format(event.kind, event.data, event.sequence)
                if event.kind == "done":
                    return
        finally:
            bus.unsubscribe(subscription)
            logging.info(f"[job_id={job_id}] Event stream closed")

    return StreamingResponse(_events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


@router.post(
    "/api/job/{job_id}/cancel",
    summary="Request cancellation of a running analysis job",
    tags=["Analysis Jobs"],
    response_model=CancelResponse,
    responses={
        200: {"description": "Cancellation requested, or job already finished"},
        404: {"description": "Job not found"},
    },
)
def cancel_job(job_id: str, request: Request):
    if _manager(request).cancel(job_id):
        return CancelResponse(success=True, job_id=job_id, message="Cancellation requested")
    return CancelResponse(success=False, job_id=job_id, message="Job is not running")


@router.get(
    "/api/jobs",
    summary="List recent analysis jobs",
    tags=["Analysis Jobs"],
    response_model=JobListResponse,
    responses={
        200: {"description": "Most recent jobs first"},
    },
)
def list_jobs(request: Request, limit: int = Query(50, ge=1, le=500), status: str = None):
    jobs = _manager(request).list_jobs(limit=limit, status=status)
    return JobListResponse(jobs=[j.model_dump(mode="json") for j in jobs])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get(
    "/api/services",
    summary="Status of the sandbox runtime and the threat oracle",
    tags=["Services"],
)
def services_status(request: Request):
    services = _manager(request).services
    return {
        "success": True,
        "services": {
            "docker": services.sandbox.service_status(),
            "oracle": services.oracle.status(),
        },
        "active_jobs": _manager(request).active_jobs(),
    }
