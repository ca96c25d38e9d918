"""Error types shared across tmux-claude components."""

from __future__ import annotations


class TmuxClaudeError(Exception):
    """Base class for all recoverable tmux-claude errors."""


class DiscoveryError(TmuxClaudeError):
    """tmux was unreachable, timed out, or produced output of an unexpected shape."""


class SnapshotError(TmuxClaudeError):
    """The system process enumeration failed or timed out."""


class ParseError(TmuxClaudeError):
    """A single activity-log line or socket message could not be decoded."""


class ParkingError(TmuxClaudeError):
    pass


class NoTemplateMatch(ParkingError):
    def __init__(self, session_name: str) -> None:
        super().__init__(f"no sesh template matches session {session_name!r}")
        self.session_name = session_name


class NotParked(ParkingError):
    def __init__(self, session_name: str) -> None:
        super().__init__(f"session {session_name!r} is not parked")
        self.session_name = session_name


class ParkError(ParkingError):
    pass


class UnparkError(ParkingError):
    pass


class PreferencesError(TmuxClaudeError):
    """Per-session preferences or todos could not be written."""
