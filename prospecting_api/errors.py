from __future__ import annotations


class ProspectingError(Exception):
    """Base class for engine errors."""


class PreconditionError(ProspectingError):
    """start() was rejected; the run never began."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class DirectoryError(ProspectingError):
    """The directory provider failed or is not configured. Aborts the run."""


class ChannelError(ProspectingError):
    """Messaging channel call failed or returned a malformed acknowledgement."""
