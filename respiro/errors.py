"""
Respiro Errors
==============

Exception taxonomy for the nudge-decision core. Nothing here is user-fatal:
the monitoring loop catches these per cycle, records a diagnostic and moves on.
"""

from typing import Optional


class RespiroError(Exception):
    """Base class for all Respiro errors."""


class CaptureFailure(RespiroError):
    """Raised when the screen could not be captured."""


class ClassificationError(RespiroError):
    """Base class for failures of the vision classification step."""


class ClassificationUnavailable(ClassificationError):
    """Raised when the classifier could not be reached (transport failure, budget exhausted)."""


class ClassificationTimeout(ClassificationUnavailable):
    """Raised when the classifier did not answer within the configured timeout."""

    def __init__(self, timeout: float):
        super().__init__(f"Classification timed out after {timeout:.1f}s")
        self.timeout = timeout


class ClassificationMalformed(ClassificationError):
    """Raised when the classifier answered with something we cannot interpret."""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class StoreIOFailure(RespiroError):
    """Raised when a read or write against the event store fails."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Store operation '{operation}' failed{detail}")
        self.operation = operation
        self.cause = cause


class ConfigurationMissing(RespiroError):
    """Raised when an optional setting is absent and the caller must pick a default."""

    def __init__(self, setting: str):
        super().__init__(f"Configuration '{setting}' is not set")
        self.setting = setting


class SessionAlreadyClosed(RespiroError):
    """Raised when a practice session that already has an outcome is closed again."""

    def __init__(self, session_id: int):
        super().__init__(f"Practice session {session_id} is already closed")
        self.session_id = session_id
