"""Exception taxonomy for the support core.

Every error carries a short ``error_type`` string.  Tools use it to build
the structured ``{"success": False, "message": ..., "error_type": ...}``
results the model sees, and the API layer uses it to pick a fixed,
non-technical sentence for the end user.
"""

from __future__ import annotations


class ChatdeskError(Exception):
    """Base class for all domain errors."""

    error_type = "internal_error"


class RateLimited(ChatdeskError):
    """Raised when a session exceeds its message budget for the window."""

    error_type = "rate_limited"

    def __init__(self, session_key: str, retry_after: float):
        self.session_key = session_key
        self.retry_after = retry_after
        super().__init__(
            f"Session {session_key} exceeded its message budget; "
            f"retry in {retry_after:.0f}s"
        )


class InvalidSession(ChatdeskError):
    """The session key, widget or phone-number id does not resolve to a tenant."""

    error_type = "invalid_session"


class ToolFailure(ChatdeskError):
    """A tool could not complete its primary effect.

    The message is shown to the model as-is, so keep it user-safe.
    """

    error_type = "tool_failure"

    def __init__(self, message: str, error_type: str | None = None):
        if error_type:
            self.error_type = error_type
        super().__init__(message)


class OrgNotFound(ChatdeskError):
    error_type = "org_not_found"


class CalendarNotConnected(ChatdeskError):
    """The organization has no usable calendar credential."""

    error_type = "calendar_not_connected"


class AvailabilityCheckFailed(ChatdeskError):
    error_type = "availability_check_failed"


class PersistenceFailure(ChatdeskError):
    """A write or read against the persistence collaborator failed."""

    error_type = "persistence_failure"


class DuplicateKeyError(PersistenceFailure):
    """Insert collided with an existing primary/unique key."""

    error_type = "duplicate_key"


class ModelInvocationFailure(ChatdeskError):
    """The model collaborator was unreachable or errored for this turn."""

    error_type = "model_invocation_failure"


class InvalidSettings(ChatdeskError):
    """Owner-supplied configuration was rejected."""

    error_type = "invalid_settings"
