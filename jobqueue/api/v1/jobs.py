from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from jobqueue.api.deps import Registry
from jobqueue.domain.errors import JobNotFound, InvalidState, PayloadValidationError, StoreUnavailable
from jobqueue.domain.models import JobOptions, JobView, QueueCounts
from jobqueue.domain.states import JobState

router = APIRouter()

class JobCreate(BaseModel):
    job_type: str = Field(min_length=1)
    payload: Any = None
    options: JobOptions = Field(default_factory=JobOptions)

class JobCreated(BaseModel):
    id: UUID

def _unavailable(e: StoreUnavailable) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

@router.post("/{queue_name}/jobs", response_model=JobCreated, status_code=status.HTTP_201_CREATED)
async def create_job(queue_name: str, body: JobCreate, registry: Registry):
    try:
        job_id = await registry.enqueue(queue_name, body.job_type, body.payload, body.options)
    except PayloadValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)
    return JobCreated(id=job_id)

@router.get("/{queue_name}/jobs", response_model=list[JobView])
async def list_jobs(
    queue_name: str,
    registry: Registry,
    state: Optional[JobState] = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    try:
        return await registry.list_jobs(queue_name, state=state, limit=limit)
    except StoreUnavailable as e:
        raise _unavailable(e)

@router.get("/{queue_name}/jobs/{job_id}", response_model=JobView)
async def get_job(queue_name: str, job_id: UUID, registry: Registry):
    try:
        return await registry.get_job(queue_name, job_id)
    except JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except StoreUnavailable as e:
        raise _unavailable(e)

@router.delete("/{queue_name}/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_job(queue_name: str, job_id: UUID, registry: Registry):
    try:
        await registry.remove_job(queue_name, job_id)
    except JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except InvalidState as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@router.get("/{queue_name}/counts", response_model=QueueCounts)
async def get_counts(queue_name: str, registry: Registry):
    try:
        return await registry.get_counts(queue_name)
    except StoreUnavailable as e:
        raise _unavailable(e)
