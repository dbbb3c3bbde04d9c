"""Exceptions raised by the token timer core."""


class TokenTimerError(Exception):
    """Base class for recoverable core errors."""


class SessionError(TokenTimerError):
    """A timer transition was requested that the current state does not allow."""


class CorruptedSessionError(TokenTimerError):
    """A persisted session has non-positive token or minute counts."""

    def __init__(self, session, message: str | None = None):
        self.session = session
        super().__init__(
            message
            or f"Corrupted session {session.id}: original_tokens={session.original_tokens}, "
            f"total_minutes={session.total_minutes}"
        )


class GrantAdvanceError(TokenTimerError):
    """A recurrence step produced no valid calendar date."""


class GrantNotFoundError(TokenTimerError):
    """No scheduled grant exists with the requested id."""
