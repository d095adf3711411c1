"""Broker exceptions.

Each error carries the HTTP status the route layer should answer with, so
handlers can translate any ``TermhubError`` into a JSON response without a
per-type lookup table.
"""

from __future__ import annotations


class TermhubError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SessionNotFound(TermhubError):
    """Unknown session id on lookup, rename or terminate."""

    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InvalidWorkingDirectory(TermhubError):
    """Requested working directory is outside the workspace or unusable."""

    status_code = 400


class SpawnFailure(TermhubError):
    """The backing process could not be started."""

    status_code = 500
