#!/usr/bin/env python3
"""Error taxonomy shared across the acquisition pipeline.

Pipeline stages return these as values at their boundary instead of raising
them, so callers can decide whether to skip, fall back or continue.
"""

from enum import Enum
from typing import Optional


class PipelineError(Exception):
    """Base class for all classified pipeline failures."""

    kind: Enum

    def describe(self) -> str:
        """Short ``KIND: message`` form used in logs and run results."""
        return f"{self.kind.value}: {self}"


class FetchErrorKind(Enum):
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    CONNECTION_FAILED = "connection_failed"
    UNKNOWN = "unknown"


class FetchError(PipelineError):
    """Transport failure while retrieving a remote document.

    Attributes:
        kind: Failure classification.
        url: The requested URL.
        status: HTTP status code for ``HTTP_STATUS`` failures.
    """

    def __init__(self, kind: FetchErrorKind, url: str, message: str = "", status: Optional[int] = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.url = url
        self.status = status


class ExtractionErrorKind(Enum):
    NO_CONTENT = "no_content"
    PARSE_FAILURE = "parse_failure"


class ExtractionError(PipelineError):
    """No extraction strategy produced a usable article."""

    def __init__(self, kind: ExtractionErrorKind, url: str, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
        self.url = url


class FeedErrorKind(Enum):
    PARSE_FAILURE = "feed_parse_failure"


class FeedParseError(PipelineError):
    """Feed document that could not be parsed into any entries."""

    def __init__(self, url: str, message: str = ""):
        super().__init__(message or "feed could not be parsed")
        self.kind = FeedErrorKind.PARSE_FAILURE
        self.url = url


class StoreErrorKind(Enum):
    OPERATION_FAILED = "store_operation_failed"


class StoreError(PipelineError):
    """A persistence operation failed inside the database worker."""

    def __init__(self, operation: str, message: str = ""):
        super().__init__(message or f"{operation} failed")
        self.kind = StoreErrorKind.OPERATION_FAILED
        self.operation = operation


__all__ = [
    "PipelineError",
    "FetchError",
    "FetchErrorKind",
    "ExtractionError",
    "ExtractionErrorKind",
    "FeedParseError",
    "StoreError",
]
