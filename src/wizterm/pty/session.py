"""PTY session — one pseudo-terminal pair and the child attached to it."""

from __future__ import annotations

import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from wizterm.errors import KillFailed, ResizeFailed, SpawnFailed, WriteFailed
from wizterm.pty.models import SessionInfo
from wizterm.pty.relay import EventSink, OutputRelay

logger = logging.getLogger(__name__)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    # struct winsize: rows, cols, xpixel, ypixel
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    """Runs in the child after setsid(): make the PTY its controlling tty.

    Only an ioctl on an already-imported module: no imports, no locks and
    no logging, so it is safe to run between fork and exec while relay
    threads are alive in the parent.
    """
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


@dataclass
class PTYSession:
    """A child process running on the subordinate side of a PTY.

    ``command``/``args``/``cwd`` describe what the user asked for.  For a
    tmux-backed session the process actually executed is the tmux attach
    client, so the executed argv is passed separately to :meth:`open`.

    Owned handles:
    - master descriptor (resize serialized by ``_master_lock``)
    - writer (every write serialized by ``_writer_lock``)
    - child process (``subprocess.Popen``, own process group)
    - output relay thread
    """

    id: str
    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    cols: int = 80
    rows: int = 24
    persistent: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    _master_fd: int = field(default=-1, init=False, repr=False)
    _proc: subprocess.Popen | None = field(default=None, init=False, repr=False)
    _pgid: int = field(default=0, init=False, repr=False)
    _relay: OutputRelay | None = field(default=None, init=False, repr=False)
    _writer_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )
    _master_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    @classmethod
    def open(
        cls,
        session_id: str,
        *,
        command: str,
        args: list[str],
        cwd: str | None,
        cols: int,
        rows: int,
        sink: EventSink,
        argv: list[str],
        exec_cwd: str,
        env: dict[str, str],
        persistent: bool = False,
    ) -> PTYSession:
        """Allocate a PTY, spawn ``argv`` on it and start the output relay.

        Either returns a fully established session or raises
        :class:`SpawnFailed` with every acquired resource released.
        """
        session = cls(
            id=session_id,
            command=command,
            args=list(args),
            cwd=cwd,
            cols=cols,
            rows=rows,
            persistent=persistent,
        )

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnFailed(f"Failed to open PTY: {e}") from e

        try:
            _set_winsize(slave_fd, cols, rows)
            session._proc = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=exec_cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, ValueError, struct.error, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnFailed(f"Failed to spawn {argv[0]}: {e}") from e
        finally:
            # Parent never keeps the subordinate side
            os.close(slave_fd)

        session._master_fd = master_fd
        proc = session._proc
        try:
            session._pgid = os.getpgid(proc.pid)
        except ProcessLookupError:
            session._pgid = proc.pid

        try:
            relay = OutputRelay(
                session_id, master_fd, sink, exit_status=session._probe_exit_code
            )
            relay.start()
        except (OSError, RuntimeError) as e:
            session._force_kill()
            session._close_master()
            raise SpawnFailed(f"Failed to start output relay: {e}") from e
        session._relay = relay

        logger.info(
            "PTY session %s started: pid=%d cmd=%s%s",
            session_id,
            proc.pid,
            " ".join(argv),
            " (tmux)" if persistent else "",
        )
        return session

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, data: bytes) -> None:
        """Write all of ``data`` to the child's input."""
        with self._writer_lock:
            if self._master_fd < 0:
                raise WriteFailed(f"Session {self.id} is closed")
            view = memoryview(data)
            try:
                while view:
                    written = os.write(self._master_fd, view)
                    view = view[written:]
            except OSError as e:
                raise WriteFailed(f"Failed to write to PTY: {e}") from e

    def resize(self, cols: int, rows: int) -> None:
        with self._master_lock:
            if self._master_fd < 0:
                raise ResizeFailed(f"Session {self.id} is closed")
            try:
                _set_winsize(self._master_fd, cols, rows)
            except (OSError, struct.error) as e:
                raise ResizeFailed(f"Failed to resize PTY: {e}") from e
            self.cols = cols
            self.rows = rows

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def exit_code(self) -> int | None:
        return self._proc.poll() if self._proc is not None else None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def terminate(self, grace: float = 0.5) -> int | None:
        """Hang up the child's process group, escalating to SIGKILL.

        Releases the relay and the master descriptor afterwards.  Returns
        the child's exit code when known.
        """
        try:
            if self.is_alive:
                self._signal_group(signal.SIGHUP)
                if not self._wait(grace):
                    self._signal_group(signal.SIGKILL)
                    self._wait(2.0)
        finally:
            self.close()
        return self.exit_code

    def close(self) -> None:
        """Stop the relay and close the master. The child is left alone."""
        relay = self._relay
        if relay is not None:
            relay.stop()
            if not relay.join(timeout=2.0):
                logger.debug("Output relay for %s still running", self.id)
        self._close_master()

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            command=self.command,
            args=list(self.args),
            cwd=self.cwd,
            created_at=self.created_at.isoformat(),
            cols=self.cols,
            rows=self.rows,
            is_alive=self.is_alive,
            is_tmux=self.persistent,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _signal_group(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self._pgid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            raise KillFailed(f"Failed to kill process: {e}") from e

    def _wait(self, timeout: float) -> bool:
        if self._proc is None:
            return True
        try:
            self._proc.wait(timeout=timeout)
            return True
        except subprocess.TimeoutExpired:
            return False

    def _force_kill(self) -> None:
        try:
            self._signal_group(signal.SIGKILL)
        except KillFailed as e:
            logger.warning("Error killing PTY session %s: %s", self.id, e)
        self._wait(2.0)

    def _probe_exit_code(self) -> int | None:
        # The relay sees EOF slightly before the child is reapable
        deadline = time.monotonic() + 1.0
        while time.monotonic() < deadline:
            code = self.exit_code
            if code is not None:
                return code
            time.sleep(0.02)
        return None

    def _close_master(self) -> None:
        with self._writer_lock, self._master_lock:
            if self._master_fd >= 0:
                try:
                    os.close(self._master_fd)
                except OSError:
                    pass
                self._master_fd = -1
