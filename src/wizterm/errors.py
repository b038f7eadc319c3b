"""Exceptions raised by the PTY session manager and the tmux adapter."""

from __future__ import annotations


class PTYError(Exception):
    """Base class for every session-manager failure."""


class SessionNotFound(PTYError):
    """The referenced session id is not in the session table."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SpawnFailed(PTYError):
    """PTY allocation, command spawn, or tmux attach failed."""


class LockFailed(PTYError):
    """The session table is no longer usable (manager was shut down)."""


class ExternalToolFailed(PTYError):
    """tmux is missing or an invocation exited non-zero."""


class IOFailed(PTYError):
    """An underlying system call on a live session failed."""


class WriteFailed(IOFailed):
    pass


class ResizeFailed(IOFailed):
    pass


class KillFailed(IOFailed):
    pass
