"""
Error taxonomy for the ingestion and alerting engine.

Every error that affects a pass ends up in that pass's run record, so each
class carries enough context to render a one-line summary with ``str()``.
"""

from __future__ import annotations


class FuelWatchError(Exception):
    """Base class for all engine errors."""


class ValidationError(FuelWatchError):
    """
    Malformed or out-of-range input. The whole batch is rejected before any write.

    Attributes:
        details: per-row messages, e.g. ``"Row 3: lat: must be between -90 and 90"``
    """

    def __init__(self, message: str, details: list[str] | None = None):
        self.details = list(details or [])
        super().__init__(message)

    def summary(self) -> list[str]:
        return [str(self), *self.details]


class NoRowsError(ValidationError):
    """Input was empty or carried only a header line."""

    def __init__(self, message: str = "No data rows found in CSV"):
        super().__init__(message)


class FieldCountError(ValidationError):
    """A row's field count differs from the header's."""

    def __init__(self, row_number: int, found: int, expected: int):
        self.row_number = row_number
        self.found = found
        self.expected = expected
        super().__init__(f"Row {row_number} has {found} fields but expected {expected} fields")


class ReconciliationError(FuelWatchError):
    """A single record could not be merged into storage."""

    def __init__(self, station_id: str, message: str):
        self.station_id = station_id
        super().__init__(f"Failed to upsert station {station_id}: {message}")


class ResolutionError(FuelWatchError):
    """
    A postcode could not be turned into coordinates.

    ``retryable`` is True for timeouts and upstream outages, False when the
    geocoder positively says the postcode does not exist.
    """

    def __init__(self, postcode: str, message: str, retryable: bool = False):
        self.postcode = postcode
        self.retryable = retryable
        super().__init__(message)


class DispatchError(FuelWatchError):
    """The push transport did not accept a notification."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class AuthorizationError(FuelWatchError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class FeedError(FuelWatchError):
    """The upstream price feed could not be read."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
