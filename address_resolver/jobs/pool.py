"""Coordinator/worker dispatch for resolving many identifiers in parallel.

The coordinator owns the FIFO of pending jobs. Workers never touch it: they announce
themselves with ``Ready``, receive one ``JobMessage`` at a time, answer with a
``ResultMessage`` and finally acknowledge ``NoMoreJobs`` with ``Done``. A worker task
that ends before sending ``Done`` fails the whole run with ``WorkerCrashedError``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from address_resolver.core.errors import WorkerCrashedError
from address_resolver.pipeline.types import PostalHint, ResolutionResult

logger = logging.getLogger(__name__)


class Resolver(Protocol):
    async def resolve(self, identifier: str, postal_hint: PostalHint | None = None) -> ResolutionResult: ...


@dataclass(frozen=True, slots=True)
class PoolJob:
    identifier: str
    postal_hint: PostalHint | None = None
    key: Any = None


@dataclass(frozen=True, slots=True)
class Ready:
    worker_id: int


@dataclass(frozen=True, slots=True)
class JobMessage:
    position: int
    job: PoolJob


@dataclass(frozen=True, slots=True)
class NoMoreJobs:
    pass


@dataclass(frozen=True, slots=True)
class ResultMessage:
    worker_id: int
    position: int
    job: PoolJob
    result: ResolutionResult


@dataclass(frozen=True, slots=True)
class Done:
    worker_id: int


@dataclass(frozen=True, slots=True)
class Exited:
    worker_id: int
    error: BaseException | None = None


InboxMessage = Union[JobMessage, NoMoreJobs]
OutboxMessage = Union[Ready, ResultMessage, Done, Exited]
ResultCallback = Callable[[ResultMessage], Awaitable[None]]


@dataclass(slots=True)
class PoolSummary:
    results: list[ResultMessage] = field(default_factory=list)
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    elapsed_ms: int = 0
    average_response_time_ms: float = 0.0

    def ordered(self) -> list[ResultMessage]:
        """Results in submission order rather than arrival order."""
        return sorted(self.results, key=lambda message: message.position)


async def run_worker(
    worker_id: int,
    inbox: asyncio.Queue[InboxMessage],
    outbox: asyncio.Queue[OutboxMessage],
    resolver_factory: Callable[[], Resolver],
) -> None:
    resolver = resolver_factory()
    await outbox.put(Ready(worker_id))
    while True:
        message = await inbox.get()
        if isinstance(message, NoMoreJobs):
            await outbox.put(Done(worker_id))
            return
        result = await resolver.resolve(message.job.identifier, message.job.postal_hint)
        await outbox.put(
            ResultMessage(worker_id=worker_id, position=message.position, job=message.job, result=result)
        )


class WorkerPool:
    def __init__(
        self,
        resolver_factory: Callable[[], Resolver],
        *,
        worker_count: int = 4,
        on_result: ResultCallback | None = None,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.resolver_factory = resolver_factory
        self.worker_count = worker_count
        self.on_result = on_result

    async def run(self, jobs: Sequence[PoolJob]) -> PoolSummary:
        started_at = time.perf_counter()
        pending: deque[tuple[int, PoolJob]] = deque(enumerate(jobs))
        outbox: asyncio.Queue[OutboxMessage] = asyncio.Queue()
        inboxes: dict[int, asyncio.Queue[InboxMessage]] = {}
        tasks: dict[int, asyncio.Task[None]] = {}
        worker_count = min(self.worker_count, max(1, len(jobs)))

        for worker_id in range(worker_count):
            inboxes[worker_id] = asyncio.Queue()
            task = asyncio.create_task(
                run_worker(worker_id, inboxes[worker_id], outbox, self.resolver_factory),
                name=f"resolver-worker-{worker_id}",
            )
            task.add_done_callback(_exit_notifier(worker_id, outbox))
            tasks[worker_id] = task

        def dispatch(worker_id: int) -> None:
            if pending:
                position, job = pending.popleft()
                inboxes[worker_id].put_nowait(JobMessage(position=position, job=job))
            else:
                inboxes[worker_id].put_nowait(NoMoreJobs())

        summary = PoolSummary(total=len(jobs))
        finished: set[int] = set()
        try:
            while len(finished) < worker_count:
                message = await outbox.get()
                if isinstance(message, Ready):
                    dispatch(message.worker_id)
                elif isinstance(message, ResultMessage):
                    summary.results.append(message)
                    if self.on_result is not None:
                        await self.on_result(message)
                    dispatch(message.worker_id)
                elif isinstance(message, Done):
                    finished.add(message.worker_id)
                elif isinstance(message, Exited) and message.worker_id not in finished:
                    logger.error("worker exited before done worker_id=%s error=%r", message.worker_id, message.error)
                    raise WorkerCrashedError(
                        f"worker {message.worker_id} exited before finishing: {message.error!r}",
                        worker_id=message.worker_id,
                    ) from message.error
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        summary.succeeded = sum(1 for message in summary.results if message.result.success)
        summary.failed = len(summary.results) - summary.succeeded
        summary.elapsed_ms = int((time.perf_counter() - started_at) * 1000)
        if summary.results:
            summary.average_response_time_ms = sum(
                message.result.response_time_ms for message in summary.results
            ) / len(summary.results)
        logger.info(
            "pool run finished total=%s succeeded=%s failed=%s elapsed_ms=%s",
            summary.total,
            summary.succeeded,
            summary.failed,
            summary.elapsed_ms,
        )
        return summary


def _exit_notifier(worker_id: int, outbox: asyncio.Queue[OutboxMessage]) -> Callable[[asyncio.Task[None]], None]:
    def notify(task: asyncio.Task[None]) -> None:
        error = None if task.cancelled() else task.exception()
        outbox.put_nowait(Exited(worker_id=worker_id, error=error))

    return notify
