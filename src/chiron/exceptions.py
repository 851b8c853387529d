"""Custom exceptions for Chiron."""

from typing import Optional


class ChironError(Exception):
    """Base class for errors surfaced by the session and safety pipeline."""


class SessionNotFoundError(ChironError):
    """Raised when no persisted record exists for a session id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class CorruptSessionError(ChironError):
    """Raised when a persisted session record cannot be parsed into a valid Session."""

    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id} is corrupt: {reason}")


class StorageIOError(ChironError):
    """Raised when the storage layer fails to read or write a session record."""

    def __init__(self, operation: str, session_id: str, cause: Optional[OSError] = None):
        self.operation = operation
        self.session_id = session_id
        self.cause = cause
        message = f"Failed to {operation} session {session_id}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class BackendUnavailableError(ChironError):
    """Raised when the inference backend cannot produce a response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ExportPartialFailure(ChironError):
    """Raised when an export could not read any of the requested sessions.

    Also carried on export reports when only some sessions were skipped.
    """

    def __init__(self, skipped: dict[str, str], sessions_read: int = 0):
        self.skipped = dict(skipped)
        self.sessions_read = sessions_read
        message = f"Skipped {len(self.skipped)} session(s) during export"
        if sessions_read == 0:
            message += "; no sessions could be read"
        super().__init__(message)


class ResearchError(ChironError):
    """Raised when a research source cannot be reached or has no usable content."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)
