"""Exception hierarchy shared by the service layer and the web boundary.

Every error carries the HTTP status it is reported with, so the web layer can
map them uniformly.
"""

from __future__ import annotations


class LensFlowError(Exception):
    """Base exception for all domain errors."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFoundError(LensFlowError):
    """Order, defect, user or organization is absent or outside the caller's scope."""

    status_code = 404


class ValidationError(LensFlowError):
    status_code = 400


class InvalidStateError(LensFlowError):
    """The order's current status does not permit the requested operation."""

    status_code = 400


class ForbiddenError(LensFlowError):
    status_code = 403


class ConflictError(LensFlowError):
    status_code = 409


class AuthenticationError(LensFlowError):
    status_code = 401


class ConfigurationError(LensFlowError):
    status_code = 500


class ExternalSyncFailure(LensFlowError):
    """Raised by the partner client. Always caught by the status mirror."""

    status_code = 502


__all__ = [
    "LensFlowError",
    "NotFoundError",
    "ValidationError",
    "InvalidStateError",
    "ForbiddenError",
    "ConflictError",
    "AuthenticationError",
    "ConfigurationError",
    "ExternalSyncFailure",
]
