"""Exception types raised by the client."""

from __future__ import annotations

import enum


class ErrorCategory(enum.Enum):
    """Broad classification of an error."""

    GENERAL = "GeneralError"
    CONNECTIVITY = "ConnectivityError"


class GremcosError(Exception):
    """Base class of all errors raised by this package."""

    category: ErrorCategory = ErrorCategory.GENERAL

    def __init__(self, message: str = "", *, category: ErrorCategory | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class ConnectivityError(GremcosError):
    """The connection to the peer is broken or could not be used."""

    category = ErrorCategory.CONNECTIVITY


class NoConnectionError(ConnectivityError):
    """An operation was attempted on a socket that is not connected."""

    def __init__(self, message: str = "no connection") -> None:
        super().__init__(message)