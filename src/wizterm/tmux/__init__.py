"""tmux-backed session persistence."""

from wizterm.tmux.adapter import (
    DEFAULT_TMUX_CONFIG,
    TMUX_SESSION_PREFIX,
    TMUX_SOCKET_NAME,
    Multiplexer,
    TmuxAdapter,
    TmuxSessionInfo,
    find_tmux,
)

__all__ = [
    "DEFAULT_TMUX_CONFIG",
    "TMUX_SESSION_PREFIX",
    "TMUX_SOCKET_NAME",
    "Multiplexer",
    "TmuxAdapter",
    "TmuxSessionInfo",
    "find_tmux",
]
