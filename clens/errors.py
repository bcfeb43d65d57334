"""Exceptions raised by clens lookups."""
from __future__ import annotations


class ClensError(Exception):
    """Base class for errors a caller is expected to report."""


class SessionNotFoundError(ClensError, FileNotFoundError):
    """Raised when a session id has no captured JSONL file."""

    def __init__(self, session_id: str):
        super().__init__(f"Session file not found: {session_id}")
        self.session_id = session_id


class JourneyLookupError(ClensError, LookupError):
    """Raised when a journey id prefix matches no journey or more than one."""
