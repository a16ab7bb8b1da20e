"""Error taxonomy for the ingestion pipeline and its storage engines."""
from typing import Any


class IngestorError(Exception):
    """Base exception for the event ingestor."""


class NormalizationError(IngestorError):
    """
    A raw payload could not be reduced to canonical fields.

    Carries the fields that were resolved before the failure so the
    rejected record can still be attributed to a client where possible.
    """

    def __init__(self, message: str, partial: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.partial = partial or {}


class PipelineError(IngestorError):
    """An ingestion attempt failed without a stored record describing it."""


class StorageFault(PipelineError):
    """A storage write or read failed (or was simulated to fail)."""


class InconsistentStateError(PipelineError):
    """An identity record references an event that no longer exists."""


class RaceRepairFailure(InconsistentStateError):
    """The identity that won a registration race could not be resolved."""
