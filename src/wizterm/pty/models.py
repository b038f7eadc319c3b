"""Public request/descriptor models for the PTY session manager."""

from __future__ import annotations

from pydantic import BaseModel, Field

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
# struct winsize fields are unsigned short
MAX_DIMENSION = 0xFFFF


class SpawnRequest(BaseModel):
    """Request to create a new PTY session. Every field is optional."""

    command: str | None = Field(
        default=None,
        description="Program to run. Defaults to the user's shell.",
    )
    args: list[str] | None = Field(default=None, description="Arguments for command.")
    cwd: str | None = Field(
        default=None,
        description="Working directory; '~' is expanded. Defaults to the home directory.",
    )
    cols: int | None = Field(default=None, gt=0, le=MAX_DIMENSION)
    rows: int | None = Field(default=None, gt=0, le=MAX_DIMENSION)


class SessionInfo(BaseModel):
    """Serializable descriptor of a managed session."""

    id: str
    command: str
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None
    created_at: str  # ISO-8601, UTC
    cols: int
    rows: int
    is_alive: bool
    is_tmux: bool = False


class ReconnectableSession(BaseModel):
    """A tmux session in the private namespace that can be re-attached."""

    session_id: str
    tmux_session_name: str
    created_at: int  # unix seconds, as reported by tmux
    attached: bool
