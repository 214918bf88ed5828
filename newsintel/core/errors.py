"""Error taxonomy shared by the engines and the job queue.

Write paths (embedding, categorization, analysis jobs) let these errors reach
the job queue so retries and dead-lettering can be tracked. Read paths
(search, recommendation, trending feeds) catch them and degrade.
"""
from typing import Any, Dict, Optional


class NewsIntelError(Exception):
    """Base class for all pipeline errors."""

    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, "details": self.details}


class ProviderUnavailable(NewsIntelError):
    """Every configured provider failed or none is configured."""


class EmbeddingUnavailable(ProviderUnavailable):
    """The embedding provider chain was exhausted."""


class ProviderTimeout(NewsIntelError):
    """A provider call exceeded its bounded wait."""


class ValidationError(NewsIntelError):
    """Malformed input, typically a job payload. Never retried."""

    retryable = False


class TransientStoreError(NewsIntelError):
    """Query or connection failure against the data store."""


class ConfigurationError(NewsIntelError):
    """Invalid weights, thresholds or windows detected at startup."""

    retryable = False


class QueueStopped(NewsIntelError):
    """The job queue is not accepting new work (emergency stop or closed)."""

    retryable = False


class NotInitialized(NewsIntelError):
    """A component was used before ``initialize()`` completed."""

    retryable = False
