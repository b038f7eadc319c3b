"""Output relay — one background reader thread per PTY session."""

from __future__ import annotations

import logging
import os
import selectors
import threading
from typing import Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


@runtime_checkable
class EventSink(Protocol):
    """Receiver for relay events. Called from relay threads."""

    def send_output(self, session_id: str, data: bytes) -> None: ...

    def send_exit(self, session_id: str, exit_code: int | None) -> None: ...


class OutputRelay:
    """Forward raw PTY output to an event sink until EOF or ``stop()``.

    The relay owns a private duplicate of the master descriptor, so the
    session can close its own copy without racing a blocked read.  It
    waits on that descriptor and on a wake pipe; ``stop()`` writes to the
    pipe, which is the normative way to end the thread when the
    subordinate side is still held open by some other process.

    Exactly one exit event is emitted per relay, after the last output
    chunk.
    """

    def __init__(
        self,
        session_id: str,
        master_fd: int,
        sink: EventSink,
        exit_status: Callable[[], int | None] | None = None,
    ) -> None:
        self.session_id = session_id
        self._sink = sink
        self._exit_status = exit_status
        self._read_fd = os.dup(master_fd)
        self._wake_r, self._wake_w = os.pipe()
        self._stopping = threading.Event()
        # Guards the fds against reuse after the reader has closed them
        self._fd_lock = threading.Lock()
        self._fds_closed = False
        self._thread = threading.Thread(
            target=self._run, name=f"pty-relay-{session_id[:8]}", daemon=True
        )

    def start(self) -> None:
        try:
            self._thread.start()
        except RuntimeError:
            self._close_fds()
            raise

    def stop(self) -> None:
        """Ask the reader to finish. Safe to call more than once."""
        if self._stopping.is_set():
            return
        self._stopping.set()
        with self._fd_lock:
            if self._fds_closed:
                return
            try:
                os.write(self._wake_w, b"\0")
            except OSError:
                pass

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread. Returns True if it has finished."""
        if self._thread.ident is None:
            return True
        if self._thread is threading.current_thread():
            # A sink callback killed its own session
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        sel = selectors.DefaultSelector()
        sel.register(self._read_fd, selectors.EVENT_READ)
        sel.register(self._wake_r, selectors.EVENT_READ)
        try:
            while not self._stopping.is_set():
                ready = sel.select()
                if any(key.fd == self._wake_r for key, _ in ready):
                    break
                try:
                    data = os.read(self._read_fd, CHUNK_SIZE)
                except OSError as e:
                    # EIO once the subordinate side has no more openers
                    logger.debug("PTY relay %s read ended: %s", self.session_id, e)
                    break
                if not data:
                    break
                self._emit_output(data)
        finally:
            sel.close()
            self._close_fds()
            self._emit_exit()

    def _emit_output(self, data: bytes) -> None:
        try:
            self._sink.send_output(self.session_id, data)
        except Exception:
            logger.exception("Event sink failed on output for %s", self.session_id)

    def _emit_exit(self) -> None:
        exit_code: int | None = None
        if self._exit_status is not None:
            try:
                exit_code = self._exit_status()
            except Exception as e:
                logger.debug("Exit status probe failed for %s: %s", self.session_id, e)
        logger.info("PTY session %s output ended (code=%s)", self.session_id, exit_code)
        try:
            self._sink.send_exit(self.session_id, exit_code)
        except Exception:
            logger.exception("Event sink failed on exit for %s", self.session_id)

    def _close_fds(self) -> None:
        with self._fd_lock:
            if self._fds_closed:
                return
            self._fds_closed = True
            for fd in (self._read_fd, self._wake_r, self._wake_w):
                try:
                    os.close(fd)
                except OSError:
                    pass
