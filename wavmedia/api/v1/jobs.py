from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from wavmedia.core.errors import JobDataError
from wavmedia.queue import JobRecord
from wavmedia.runtime import MediaRuntime
from wavmedia.schemas.api import EnqueueOut, JobOut, QueueCountsOut

router = APIRouter()


def get_runtime(request: Request) -> MediaRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="media runtime not started")
    return runtime


def _job_out(job: JobRecord) -> JobOut:
    return JobOut(
        job_id=job.id,
        queue=job.queue,
        name=job.name,
        state=job.state,
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        payload=job.payload or {},
        result=job.result,
        last_error=job.last_error,
        run_at=job.run_at,
        finished_at=job.finished_at,
    )


@router.post("/jobs/{queue}", response_model=EnqueueOut, status_code=202)
async def enqueue_job(
    queue: str,
    payload: Dict[str, Any] = Body(...),
    runtime: MediaRuntime = Depends(get_runtime),
):
    if runtime.queue.definition(queue) is None:
        raise HTTPException(status_code=404, detail=f"unknown queue: {queue}")
    try:
        job_id = await runtime.queue.enqueue(queue, payload)
    except JobDataError as e:
        raise HTTPException(status_code=422, detail=e.message)
    return EnqueueOut(job_id=str(job_id), queue=queue)


@router.get("/jobs/{job_id}", response_model=JobOut)
async def get_job(
    job_id: str,
    runtime: MediaRuntime = Depends(get_runtime),
):
    job = await runtime.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_out(job)


@router.get("/queues", response_model=list[QueueCountsOut])
async def list_queues(runtime: MediaRuntime = Depends(get_runtime)):
    out: list[QueueCountsOut] = []
    for definition in runtime.queue.queues:
        counts = await runtime.queue.counts(definition.name)
        out.append(
            QueueCountsOut(
                queue=definition.name,
                concurrency=definition.concurrency,
                waiting=counts.get("waiting", 0),
                active=counts.get("active", 0),
                completed=counts.get("completed", 0),
                failed=counts.get("failed", 0),
            )
        )
    return out
