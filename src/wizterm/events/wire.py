"""Wire — decouples PTY output relays from UI subscribers.

Relay threads publish terminal output and exit events onto the wire; any
number of subscribers (TUI, CLI, RPC bridge) read them from their own
queue.  Publishing happens from background threads, so subscriber queues
are ``queue.Queue`` and the subscriber list is lock-guarded.
"""

from __future__ import annotations

import enum
import queue
import threading
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    TERMINAL_OUTPUT = "terminal_output"
    TERMINAL_EXIT = "terminal_exit"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Thread-safe broadcast bus: relays -> UI subscribers.

    Implements the relay's ``EventSink`` protocol.
    """

    def __init__(self) -> None:
        self._subscribers: list[queue.Queue[WireEvent | None]] = []
        self._lock = threading.Lock()
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        with self._lock:
            if self._closed:
                return
            subscribers = list(self._subscribers)
        for q in subscribers:
            q.put_nowait(event)

    def send_output(self, session_id: str, data: bytes) -> None:
        self.send(
            WireEvent(
                type=EventType.TERMINAL_OUTPUT,
                data={"session_id": session_id, "data": data},
            )
        )

    def send_exit(self, session_id: str, exit_code: int | None) -> None:
        self.send(
            WireEvent(
                type=EventType.TERMINAL_EXIT,
                data={"session_id": session_id, "exit_code": exit_code},
            )
        )

    def subscribe(self) -> queue.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: queue.Queue[WireEvent | None] = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        """Unsubscribe from events."""
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscribers = list(self._subscribers)
        for q in subscribers:
            q.put_nowait(None)
