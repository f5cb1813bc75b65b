"""Runner callbacks and job inspection.

Remote runners authenticate with the job's internal id; anything addressed by
the public id is either read-only (progress, records) or needs the operator
token.

  GET  /api/runtime-utils/jobs/progress      → live log stream (public id)
  POST /api/runtime-utils/jobs/logs          → append log lines (internal id)
  POST /api/runtime-utils/jobs/system-info   → telemetry snapshot (internal id)
  GET  /api/runtime-utils/jobs/metadata      → runner configuration
  GET  /api/runtime-utils/jobs/complete      → completion signal (internal id)
  POST /api/runtime-utils/jobs/artifact      → upload one artifact (internal id)
  GET  /api/runtime-utils/jobs/active        → dashboard summary
  GET  /api/runtime-utils/jobs/{id}/record   → completed job record
  POST /api/runtime-utils/jobs/{id}/fail-fast → operator cancellation
"""

from __future__ import annotations

import hmac
import logging
import tempfile
from typing import AsyncIterator

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Query
from fastapi import Request
from fastapi import status
from sse_starlette.sse import EventSourceResponse

from runtime_utils.formatting import MB
from runtime_utils.formatting import truncate_with_dots
from runtime_utils.jobs.base import JobBase
from runtime_utils.jobs.registry import JobRegistry
from runtime_utils.schemas import ActiveJobList
from runtime_utils.schemas import ActiveJobOut
from runtime_utils.schemas import CompletedJobRecord
from runtime_utils.schemas import SystemHardwareInfo

router = APIRouter(prefix="/api/runtime-utils/jobs", tags=["jobs"])
logger = logging.getLogger(__name__)

MAX_LOG_LINE_LENGTH = 10_000
ARTIFACT_SPOOL_BYTES = 8 * MB
ARTIFACT_CHUNK_BYTES = MB


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.job_registry


def _has_operator_token(registry: JobRegistry, token: str | None) -> bool:
    expected = registry.settings.runtime_utils_token
    return bool(token and expected and hmac.compare_digest(token, expected))


def require_operator(
    registry: JobRegistry = Depends(get_registry),
    x_runtime_utils_token: str | None = Header(default=None),
) -> None:
    if not _has_operator_token(registry, x_runtime_utils_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def _get_job(registry: JobRegistry, job_id: str, *, public: bool) -> JobBase:
    job = registry.try_get_job(job_id, public=public)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


def _get_running_job(registry: JobRegistry, job_id: str) -> JobBase:
    job = _get_job(registry, job_id, public=False)
    if job.completed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Job already completed",
            headers={"X-Job-Completed": "true"},
        )
    return job


# ---------------------------------------------------------------------------
# Progress stream
# ---------------------------------------------------------------------------


async def _progress_events(job: JobBase) -> AsyncIterator[dict]:
    # Flush markers carry no data; every event is written out as it is yielded
    async for line in job.stream_logs():
        if line is not None:
            yield {"data": line}


@router.get("/progress")
async def job_progress(jobId: str = Query(...), registry: JobRegistry = Depends(get_registry)):
    job = _get_job(registry, jobId, public=True)
    return EventSourceResponse(_progress_events(job))


# ---------------------------------------------------------------------------
# Runner callbacks
# ---------------------------------------------------------------------------


@router.post("/logs")
async def post_logs(
    jobId: str = Query(...),
    lines: list[str] = Body(...),
    registry: JobRegistry = Depends(get_registry),
):
    job = _get_running_job(registry, jobId)
    job.raw_logs_received(truncate_with_dots(line, MAX_LOG_LINE_LENGTH) for line in lines)
    return {"accepted": len(lines)}


@router.post("/system-info")
async def post_system_info(
    info: SystemHardwareInfo,
    jobId: str = Query(...),
    progressSummary: str | None = Query(default=None),
    registry: JobRegistry = Depends(get_registry),
):
    job = _get_running_job(registry, jobId)
    job.update_system_info(info, progressSummary)
    return {"status": "ok"}


@router.get("/metadata")
async def get_metadata(
    jobId: str = Query(...),
    registry: JobRegistry = Depends(get_registry),
    x_runtime_utils_token: str | None = Header(default=None),
) -> dict[str, str]:
    job = registry.try_get_job(jobId, public=False)
    if job is None and _has_operator_token(registry, x_runtime_utils_token):
        job = registry.try_get_job(jobId, public=True)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    if job.record_remote_runner_contact():
        logger.info("Initial remote runner contact for %s", job.external_id)

    return job.metadata.to_dict()


@router.get("/complete")
async def complete_job(jobId: str = Query(...), registry: JobRegistry = Depends(get_registry)):
    job = _get_job(registry, jobId, public=False)
    job.notify_job_completion()
    return {"status": "ok"}


@router.post("/artifact")
async def upload_artifact(
    request: Request,
    jobId: str = Query(...),
    fileName: str = Query(...),
    registry: JobRegistry = Depends(get_registry),
):
    job = _get_running_job(registry, jobId)
    if not JobBase.is_valid_artifact_name(fileName):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file name")

    with tempfile.SpooledTemporaryFile(max_size=ARTIFACT_SPOOL_BYTES) as spool:
        async for chunk in request.stream():
            spool.write(chunk)
        spool.seek(0)
        accepted = await job.artifact_received(fileName, spool)

    return {"accepted": accepted}


# ---------------------------------------------------------------------------
# Inspection / operator
# ---------------------------------------------------------------------------


@router.get("/active", response_model=ActiveJobList)
def active_jobs(registry: JobRegistry = Depends(get_registry)):
    jobs = []
    for job in registry.get_all_active_jobs():
        info = job.last_system_info
        jobs.append(
            ActiveJobOut(
                external_id=job.external_id,
                title=job.title,
                job_type=job.job_type,
                started_at=job.start_time,
                elapsed=job.get_elapsed_time(include_seconds=False),
                github_commenter_login=job.github_commenter_login,
                tracking_issue_url=job.tracking_issue.html_url if job.tracking_issue else None,
                progress_summary=job.last_progress_summary,
                cpu_usage_percentage=info.cpu_usage_percentage if info else None,
                memory_usage_percentage=info.memory_usage_percentage if info else None,
            )
        )
    return ActiveJobList(jobs=jobs)


@router.get("/{job_id}/record", response_model=CompletedJobRecord)
async def completed_job_record(job_id: str, registry: JobRegistry = Depends(get_registry)):
    record = await registry.completed_jobs.try_get(job_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    return record


@router.post("/{job_id}/fail-fast", dependencies=[Depends(require_operator)])
async def fail_fast_job(
    job_id: str,
    message: str = Query(default="Cancelled by operator"),
    registry: JobRegistry = Depends(get_registry),
):
    job = _get_job(registry, job_id, public=True)
    job.fail_fast(message, cancelled_by_author=False)
    return {"status": "ok", "completed": job.completed}
