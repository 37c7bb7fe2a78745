"""
Error taxonomy for the dashboard API.

Every failure that reaches the request boundary is one of these and is
rendered as the JSON envelope ``{"success": false, "error": ..., "details": ...}``
by the handlers registered in main.py.
"""

from typing import Optional


class DashboardError(Exception):
    """Base class for errors converted to the response envelope."""

    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class NotFoundError(DashboardError):
    """An identifier lookup matched zero rows."""

    status_code = 404


class InvalidInputError(DashboardError):
    """Unrecognized action, enum value or state transition."""

    status_code = 400


class UpstreamFailure(DashboardError):
    """The store was unreachable or a query failed."""

    status_code = 500
