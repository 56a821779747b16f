# notportable/errors.py
from __future__ import annotations


class NotPortableError(Exception):
    """Base class for every recoverable failure in this package."""


class SensorUnavailable(NotPortableError):
    """Opening or claiming the sensor failed; detection is disabled."""


class SensorTimeout(NotPortableError):
    """A single sample attempt timed out waiting on the echo line."""


class NoBaseline(NotPortableError):
    """No usable samples while establishing the baseline."""


class ParseSkip(NotPortableError):
    """One malformed line/block; the rest of the file is still parsed."""


class DispatchFailure(NotPortableError):
    """Collector returned non-200 or the transport failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
