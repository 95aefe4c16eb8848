from __future__ import annotations

from backend.src.contracts.models import ExtractionErrorKind


class PriceWatchError(Exception):
    """Base class for pipeline errors."""


class ExtractionError(PriceWatchError):
    """Raised inside the extractor; converted to an ExtractionFailure at its boundary."""

    def __init__(self, kind: ExtractionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class PersistenceError(PriceWatchError):
    """Snapshot or alert storage failed; aborts the downstream chain for one product."""


class DispatchError(PriceWatchError):
    """A notification could not be handed to the sink."""
