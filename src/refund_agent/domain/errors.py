"""Error taxonomy shared by clients, services and the orchestrator."""

from __future__ import annotations

from typing import Optional


class RefundAgentError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(RefundAgentError):
    """A mandatory setting is missing or malformed."""


class ServiceError(RefundAgentError):
    """An external service (HTTP, model, storage) did not deliver."""


class NetworkTimeout(ServiceError):
    """Connect/read timeout or dropped connection."""


class HttpError(ServiceError):
    def __init__(self, status: int, message: Optional[str] = None) -> None:
        self.status = int(status)
        super().__init__(message or f"HTTP error {self.status}")


class EmptyResponse(ServiceError):
    """The upstream answered but delivered no usable content."""


class RateLimitExceeded(ServiceError):
    """Rate limiting persisted through every retry attempt."""


class ExtractionFailed(ServiceError):
    """No parseable amount could be read from the model output."""


class DatabaseError(RefundAgentError):
    pass


class NoFilenameExtracted(RefundAgentError):
    """A receipt request did not name any receipt file."""


class QueryRejected(RefundAgentError):
    """Generated query text fell outside the accepted grammar."""


class OperationCancelled(RefundAgentError):
    pass


class SlotBusy(RefundAgentError):
    """Another long-running operation currently owns the processing slot."""

    def __init__(self, current: str) -> None:
        self.current = current
        super().__init__(f"Another operation is still running: {current}")
