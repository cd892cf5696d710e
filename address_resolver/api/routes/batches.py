from fastapi import APIRouter, Depends, HTTPException, status

from address_resolver.core.config import get_settings
from address_resolver.core.errors import ValidationError
from address_resolver.jobs.batch import BatchQueueProcessor
from address_resolver.schemas.batches import (
    BatchAccepted,
    BatchProgressOut,
    BatchRequest,
    BatchResultOut,
    BatchResultsOut,
    QueueStatsOut,
)
from address_resolver.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


def get_batch_processor(repository=Depends(get_repository)) -> BatchQueueProcessor:
    settings = get_settings()
    return BatchQueueProcessor(
        repository,
        max_identifiers=settings.batch_max_identifiers,
        stagger_seconds=settings.batch_chunk_stagger_seconds,
        default_chunk_size=settings.batch_chunk_size,
    )


@router.post("/batches", response_model=BatchAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_batch(payload: BatchRequest, processor=Depends(get_batch_processor)) -> BatchAccepted:
    try:
        batch = await processor.enqueue(payload.identifiers, payload.chunk_size, priority=payload.priority)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return BatchAccepted(
        job_id=batch.job_id,
        total=batch.total,
        chunks=batch.chunks,
        progress_url=f"/batches/{batch.job_id}/progress",
        results_url=f"/batches/{batch.job_id}/results",
    )


@router.get("/batches/{job_id}/progress", response_model=BatchProgressOut)
async def get_batch_progress(job_id: str, processor=Depends(get_batch_processor)) -> BatchProgressOut:
    try:
        progress = await processor.get_progress(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="batch not found")
    return BatchProgressOut(**progress.to_dict())


@router.get("/batches/{job_id}/results", response_model=BatchResultsOut)
async def get_batch_results(job_id: str, processor=Depends(get_batch_processor)) -> BatchResultsOut:
    try:
        records = await processor.get_results(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if records is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="batch results not found or expired")
    return BatchResultsOut(
        job_id=job_id,
        count=len(records),
        results=[BatchResultOut(**record.to_dict()) for record in records],
    )


@router.get("/queue/stats", response_model=QueueStatsOut)
async def get_queue_stats(repository=Depends(get_repository)) -> QueueStatsOut:
    try:
        stats = await repository.queue_stats()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return QueueStatsOut(**stats)
