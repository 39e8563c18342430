"""
Error types raised by xapi_query.

Callers can tell apart a store that failed, a query that was built wrong,
and a query that had no data to aggregate.
"""

from typing import Any, Optional


class XAPIQueryError(Exception):
    """Base class for all xapi_query errors."""


class StoreError(XAPIQueryError):
    """A Learning Record Store could not serve the request."""


class HttpError(StoreError):
    """The LRS answered with a non-success status."""

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None, body: Any = None):
        super().__init__(message or "HTTP request failed")
        self.status = status
        self.body = body


class StoreUnreachableError(StoreError):
    """Network failure (DNS, refused connection, timeout) talking to the LRS."""


class StatementParseError(XAPIQueryError):
    """A raw statement document could not be mapped to the object model."""


class InvalidDurationError(StatementParseError):
    """A result duration was neither an ISO 8601 string nor a number of seconds."""


class ConfigurationError(XAPIQueryError):
    """Missing or frozen configuration."""


class QueryError(XAPIQueryError):
    """Base class for errors raised while building or running a query."""


class InvalidQueryError(QueryError, ValueError):
    pass


class InvalidPeriodError(QueryError, ValueError):
    pass


class NoDataError(QueryError, ZeroDivisionError):
    """An aggregate was requested over zero statements."""
