"""Exception taxonomy for ingestion and retrieval."""

from typing import Optional


class RagError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class TransientProviderError(RagError):
    """Embedding provider hiccup (rate limit, network blip); safe to retry."""


class PermanentIngestionError(RagError):
    """Document cannot be ingested (empty, unsupported); never retried."""

    def __init__(self, message: str, file_name: Optional[str] = None):
        self.file_name = file_name
        super().__init__(message)


class IndexWriteError(RagError):
    """Sparse index commit failed."""


class QueryParseError(RagError):
    """Sparse query could not be parsed."""


class RetrievalLegError(RagError):
    """Dense or sparse retrieval leg failed."""

    def __init__(self, leg: str, cause: BaseException):
        self.leg = leg
        self.cause = cause
        super().__init__(f"{leg} retrieval failed: {cause!r}")


class RetrievalTimeoutError(RetrievalLegError):
    """A retrieval stage missed its deadline."""

    def __init__(self, leg: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(leg, TimeoutError(f"exceeded {timeout_seconds:.2f}s"))


def is_transient(exc: BaseException) -> bool:
    """Whether an embedding failure is worth retrying."""
    return isinstance(exc, (TransientProviderError, ConnectionError, TimeoutError))
