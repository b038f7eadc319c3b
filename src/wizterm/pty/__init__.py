"""PTY session management — pseudo-terminal sessions with optional tmux persistence.

Every session runs its child in its own process group on a fresh PTY pair,
with a relay thread forwarding output to an event sink.  When tmux is
available the child is a tmux attach client, so the shell survives the
host process.
"""

from wizterm.pty.manager import PTYManager, SpawnStrategy
from wizterm.pty.models import ReconnectableSession, SessionInfo, SpawnRequest
from wizterm.pty.relay import EventSink, OutputRelay
from wizterm.pty.session import PTYSession

__all__ = [
    "EventSink",
    "OutputRelay",
    "PTYManager",
    "PTYSession",
    "ReconnectableSession",
    "SessionInfo",
    "SpawnRequest",
    "SpawnStrategy",
]
