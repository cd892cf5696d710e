"""Error taxonomy shared by the pipeline, its collaborators and the worker pool."""

from __future__ import annotations


class ResolverError(Exception):
    """Base class for address resolution failures."""

    error_code = "RESOLVER_ERROR"


class ValidationError(ResolverError):
    """Raised for malformed identifiers or batch input."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ResolverTimeoutError(ResolverError):
    """A step or the whole pipeline exceeded its timeout."""

    error_code = "TIMEOUT_ERROR"

    def __init__(self, message: str, *, timeout_seconds: float, step: str | None = None) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.step = step


class APIError(ResolverError):
    """Non-2xx response or network failure from an external collaborator."""

    error_code = "API_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        collaborator: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.collaborator = collaborator


class ParseError(ResolverError):
    """A collaborator answered with an unexpected response shape."""

    error_code = "PARSE_ERROR"

    def __init__(self, message: str, *, collaborator: str | None = None) -> None:
        super().__init__(message)
        self.collaborator = collaborator


class WorkerCrashedError(ResolverError):
    """A pool worker ended before acknowledging the end of the job stream."""

    error_code = "WORKER_CRASHED"

    def __init__(self, message: str, *, worker_id: int) -> None:
        super().__init__(message)
        self.worker_id = worker_id
