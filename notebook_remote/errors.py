"""
Exceptions raised by notebook-remote.
"""

from typing import Optional


class NotebookError(Exception):
    """Base class for all notebook-remote errors."""


class InvalidState(NotebookError, ValueError):
    """A structural edit is ill-defined for the current document."""


class NoSuchNeighbor(NotebookError, LookupError):
    """Move or merge asked for a cell that does not exist in that direction."""

    def __init__(self, direction: str):
        super().__init__(f"No cell {direction} of the current one")
        self.direction = direction


class KernelNotReady(NotebookError):
    """A kernel request was issued while the session cannot accept it."""


class AlreadyStarted(NotebookError, RuntimeError):
    """start() was called on a session that already has a kernel."""


class TransportFailure(NotebookError, ConnectionError):
    """A network or transport level error on a remote call."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class AmbiguousSaveResponse(NotebookError):
    """The store accepted the request but did not answer with 204."""

    def __init__(self, status_code: int):
        super().__init__(f"Unexpected save status {status_code}")
        self.status_code = status_code
