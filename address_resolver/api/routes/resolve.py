from collections.abc import Callable

from fastapi import APIRouter, Depends, HTTPException, status

from address_resolver.core.config import get_settings
from address_resolver.core.errors import ValidationError, WorkerCrashedError
from address_resolver.jobs.pool import PoolJob, Resolver, WorkerPool
from address_resolver.pipeline.resolver import build_pipeline, get_pipeline
from address_resolver.pipeline.types import PostalHint, normalize_identifier
from address_resolver.schemas.resolution import (
    ResolutionOut,
    ResolveBatchItemOut,
    ResolveBatchOut,
    ResolveBatchRequest,
    ResolveBatchSummaryOut,
    ResolveRequest,
)

router = APIRouter()


def get_resolver_factory() -> Callable[[], Resolver]:
    settings = get_settings()
    return lambda: build_pipeline(settings)


@router.post("", response_model=ResolutionOut)
async def resolve_identifier(payload: ResolveRequest, pipeline=Depends(get_pipeline)) -> ResolutionOut:
    try:
        identifier = normalize_identifier(payload.identifier)
        hint = PostalHint.from_parts(payload.outward, payload.inward)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    result = await pipeline.resolve(identifier, hint)
    return ResolutionOut(**result.to_dict())


@router.post("/batch", response_model=ResolveBatchOut)
async def resolve_batch(
    payload: ResolveBatchRequest,
    resolver_factory=Depends(get_resolver_factory),
) -> ResolveBatchOut:
    settings = get_settings()
    if len(payload.items) > settings.resolve_batch_max_items:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"batch of {len(payload.items)} exceeds the limit of {settings.resolve_batch_max_items} items",
        )

    jobs: list[PoolJob] = []
    for position, item in enumerate(payload.items):
        try:
            jobs.append(
                PoolJob(
                    identifier=normalize_identifier(item.identifier),
                    postal_hint=PostalHint.from_parts(item.outward, item.inward),
                    key=position,
                )
            )
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"items[{position}]: {exc}",
            ) from exc

    pool = WorkerPool(resolver_factory, worker_count=settings.pool_worker_count)
    try:
        summary = await pool.run(jobs)
    except WorkerCrashedError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return ResolveBatchOut(
        results=[
            ResolveBatchItemOut(identifier=message.job.identifier, **message.result.to_dict())
            for message in summary.ordered()
        ],
        summary=ResolveBatchSummaryOut(
            total=summary.total,
            succeeded=summary.succeeded,
            failed=summary.failed,
            elapsed_ms=summary.elapsed_ms,
            average_response_time_ms=summary.average_response_time_ms,
        ),
    )
