"""PTY Manager — owns the session table and every session lifecycle."""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict
from pathlib import Path

from wizterm.config import WizTermConfig
from wizterm.errors import (
    ExternalToolFailed,
    KillFailed,
    LockFailed,
    PTYError,
    ResizeFailed,
    SessionNotFound,
)
from wizterm.history import NullHistory, SessionHistory, TerminalPreferences
from wizterm.pty.models import (
    MAX_DIMENSION,
    ReconnectableSession,
    SessionInfo,
    SpawnRequest,
)
from wizterm.pty.relay import EventSink
from wizterm.pty.session import PTYSession
from wizterm.tmux.adapter import Multiplexer, TmuxAdapter

logger = logging.getLogger(__name__)

_FALLBACK_SHELL = "/bin/sh"


class SpawnStrategy(enum.Enum):
    """How a new session's child is attached to its PTY."""

    DIRECT = "direct"  # the command runs on the PTY itself
    MULTIPLEXED = "multiplexed"  # a tmux attach client runs on the PTY


class _SessionTable:
    """id -> PTYSession, guarded by a single lock.

    The lock is held only for dict operations, never across a system call
    that can block.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, PTYSession] = {}
        self._lock = threading.Lock()
        self._closed = False

    def ensure_open(self) -> None:
        with self._lock:
            self._check_open()

    def _check_open(self) -> None:
        if self._closed:
            raise LockFailed("Session table is closed; the manager was shut down")

    def insert_if_absent(self, session: PTYSession) -> PTYSession:
        """Insert ``session`` unless its id is present. Returns the entry in the table."""
        with self._lock:
            self._check_open()
            existing = self._sessions.get(session.id)
            if existing is not None:
                return existing
            self._sessions[session.id] = session
            return session

    def get(self, session_id: str) -> PTYSession | None:
        with self._lock:
            self._check_open()
            return self._sessions.get(session_id)

    def pop(self, session_id: str) -> PTYSession | None:
        with self._lock:
            self._check_open()
            return self._sessions.pop(session_id, None)

    def remove(self, session: PTYSession) -> bool:
        """Remove ``session`` only if it is still the entry for its id."""
        with self._lock:
            self._check_open()
            if self._sessions.get(session.id) is session:
                del self._sessions[session.id]
                return True
            return False

    def snapshot(self) -> list[PTYSession]:
        with self._lock:
            self._check_open()
            return list(self._sessions.values())

    def close(self) -> list[PTYSession]:
        """Refuse further access and hand back every remaining entry."""
        with self._lock:
            self._closed = True
            sessions = list(self._sessions.values())
            self._sessions.clear()
            return sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions


class PTYManager:
    """Manages the lifecycle of PTY sessions, optionally backed by tmux.

    - Sessions are visible in the table only once fully constructed
    - A failed tmux-backed spawn falls back to a direct PTY transparently
    - Persistent sessions whose tmux session vanished are swept on list
    - Output and exit events go to the ``sink`` from per-session relays

    Thread-safe: every public method may be called from any thread.
    """

    def __init__(
        self,
        sink: EventSink,
        multiplexer: Multiplexer | None = None,
        config: WizTermConfig | None = None,
        history: SessionHistory | None = None,
    ) -> None:
        self._sink = sink
        self._config = config or WizTermConfig()
        self._mux = multiplexer
        self._history: SessionHistory = history or NullHistory()
        self._table = _SessionTable()
        # One reconnect per id at a time; never taken while holding the table lock
        self._reconnect_locks: dict[str, threading.Lock] = {}
        self._reconnect_locks_guard = threading.Lock()

        # Resolved once; tmux availability is not re-probed per call
        self._use_tmux = bool(
            self._config.tmux.enabled and multiplexer is not None and multiplexer.available
        )
        logger.info(
            "PTY manager ready (tmux persistence %s)",
            "on" if self._use_tmux else "off",
        )

    @classmethod
    def from_config(
        cls,
        config: WizTermConfig,
        sink: EventSink,
        history: SessionHistory | None = None,
    ) -> PTYManager:
        """Build a manager with a real tmux adapter wired from ``config``."""
        adapter = TmuxAdapter(
            config_path=config.tmux_config_path,
            socket_name=config.tmux.socket_name,
            session_prefix=config.tmux.session_prefix,
            shell=config.terminal.shell,
        )
        return cls(sink, multiplexer=adapter, config=config, history=history)

    # ------------------------------------------------------------------
    # Spawn
    # ------------------------------------------------------------------

    def spawn(self, request: SpawnRequest | None = None) -> SessionInfo:
        """Create a session and return its descriptor.

        Raises:
            SpawnFailed: if no strategy could start the session.
            LockFailed: if the manager has been shut down.
        """
        self._table.ensure_open()
        request = request or SpawnRequest()
        prefs = self._load_preferences()
        session_id = str(uuid.uuid4())
        command = request.command or self._default_shell(prefs)
        args = list(request.args or [])
        cols, rows = self._geometry(request.cols, request.rows, prefs)

        logger.info("Spawning PTY session: %s %s %s", session_id, command, args)

        plan = self._spawn_plan()
        for strategy in plan:
            try:
                if strategy is SpawnStrategy.MULTIPLEXED:
                    session = self._launch_multiplexed(
                        session_id, command, args, request.cwd, cols, rows
                    )
                else:
                    session = self._launch_direct(
                        session_id, command, args, request.cwd, cols, rows
                    )
            except PTYError as e:
                if strategy is plan[-1]:
                    raise
                logger.warning(
                    "tmux-backed spawn of %s failed, falling back to direct PTY: %s",
                    session_id,
                    e,
                )
                continue
            return self._finish_spawn(session)

        raise AssertionError("spawn plan is never empty")

    def _spawn_plan(self) -> tuple[SpawnStrategy, ...]:
        if self._use_tmux:
            return (SpawnStrategy.MULTIPLEXED, SpawnStrategy.DIRECT)
        return (SpawnStrategy.DIRECT,)

    def _launch_direct(
        self,
        session_id: str,
        command: str,
        args: list[str],
        cwd: str | None,
        cols: int,
        rows: int,
    ) -> PTYSession:
        return PTYSession.open(
            session_id,
            command=command,
            args=args,
            cwd=cwd,
            cols=cols,
            rows=rows,
            sink=self._sink,
            argv=[command, *args],
            exec_cwd=self._resolve_cwd(cwd),
            env=self._child_env(),
        )

    def _launch_multiplexed(
        self,
        session_id: str,
        command: str,
        args: list[str],
        cwd: str | None,
        cols: int,
        rows: int,
    ) -> PTYSession:
        assert self._mux is not None
        self._mux.create_detached(
            session_id, cwd=cwd or _home_dir(), command=[command, *args]
        )
        try:
            return self._attach(session_id, command, args, cwd, cols, rows)
        except PTYError:
            self._discard_backing(session_id)
            raise

    def _attach(
        self,
        session_id: str,
        command: str,
        args: list[str],
        cwd: str | None,
        cols: int,
        rows: int,
    ) -> PTYSession:
        assert self._mux is not None
        exe, attach_args = self._mux.attach_invocation(session_id)
        return PTYSession.open(
            session_id,
            command=command,
            args=args,
            cwd=cwd,
            cols=cols,
            rows=rows,
            sink=self._sink,
            argv=[exe, *attach_args],
            exec_cwd=_home_dir(),
            env=self._child_env(),
            persistent=True,
        )

    def _finish_spawn(self, session: PTYSession) -> SessionInfo:
        try:
            self._table.insert_if_absent(session)
        except LockFailed:
            self._release(session, kill_backing=True)
            raise
        self._record_start(session)
        return session.info()

    # ------------------------------------------------------------------
    # Per-session operations
    # ------------------------------------------------------------------

    def write(self, session_id: str, data: bytes) -> None:
        """Send input bytes to a session.

        Raises:
            SessionNotFound, WriteFailed
        """
        self._require(session_id).write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Resize a session's PTY.

        Raises:
            SessionNotFound, ResizeFailed
        """
        session = self._require(session_id)
        if not (0 < cols <= MAX_DIMENSION and 0 < rows <= MAX_DIMENSION):
            raise ResizeFailed(f"Invalid size {cols}x{rows}")
        logger.debug("Resizing %s to %dx%d", session_id, cols, rows)
        session.resize(cols, rows)

    def kill(self, session_id: str) -> None:
        """Remove a session from the table and terminate it.

        For tmux-backed sessions the tmux session is destroyed too; failure
        there is logged and not raised.

        Raises:
            SessionNotFound, KillFailed
        """
        session = self._table.pop(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        exit_code = self._release(session, kill_backing=True)
        self._record_end(session_id, exit_code)
        logger.info("Killed PTY session: %s", session_id)

    def get(self, session_id: str) -> SessionInfo | None:
        session = self._table.get(session_id)
        return session.info() if session is not None else None

    def list_sessions(self) -> list[SessionInfo]:
        """All sessions in creation order, after sweeping stale tmux-backed ones."""
        if self._use_tmux:
            self.sweep()
        sessions = sorted(self._table.snapshot(), key=lambda s: s.created_at)
        return [s.info() for s in sessions]

    def sweep(self) -> list[str]:
        """Drop tmux-backed entries whose tmux session no longer exists.

        Returns the ids removed.
        """
        if not self._use_tmux:
            return []
        assert self._mux is not None

        candidates = [s for s in self._table.snapshot() if s.persistent]
        # tmux is queried without holding the table lock
        stale = [s for s in candidates if not self._mux.exists(s.id)]

        removed: list[str] = []
        for session in stale:
            if not self._table.remove(session):
                continue
            try:
                exit_code = session.terminate(self._config.terminal.kill_grace_seconds)
            except KillFailed as e:
                logger.warning("Error releasing stale session %s: %s", session.id, e)
                exit_code = None
            self._record_end(session.id, exit_code)
            removed.append(session.id)
            logger.info("Removed session %s: tmux session no longer exists", session.id)
        return removed

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def list_reconnectable(self) -> list[ReconnectableSession]:
        """tmux sessions in our namespace, attached or not."""
        if not self._use_tmux:
            return []
        assert self._mux is not None
        return [ReconnectableSession(**asdict(info)) for info in self._mux.list_sessions()]

    def reconnect(
        self, session_id: str, cols: int | None = None, rows: int | None = None
    ) -> SessionInfo:
        """Attach a fresh PTY to an existing tmux session.

        Idempotent: a live entry for ``session_id`` is returned unchanged.

        Raises:
            ExternalToolFailed: tmux persistence is not available.
            SessionNotFound: no such tmux session.
            SpawnFailed: the attach client could not be started.
        """
        self._table.ensure_open()
        if not self._use_tmux:
            raise ExternalToolFailed("tmux persistence is not available")

        # A second attach client for the same id would duplicate its output
        # and its exit event would end the live session for subscribers
        with self._reconnect_lock(session_id):
            return self._reconnect(session_id, cols, rows)

    def _reconnect_lock(self, session_id: str) -> threading.Lock:
        with self._reconnect_locks_guard:
            return self._reconnect_locks.setdefault(session_id, threading.Lock())

    def _reconnect(
        self, session_id: str, cols: int | None, rows: int | None
    ) -> SessionInfo:
        assert self._mux is not None

        existing = self._table.get(session_id)
        if existing is not None:
            if existing.is_alive:
                logger.info("Session %s already connected", session_id)
                return existing.info()
            # The old attach client exited; replace the entry
            if self._table.remove(existing):
                existing.close()

        if not self._mux.exists(session_id):
            raise SessionNotFound(session_id)

        prefs = self._load_preferences()
        cols, rows = self._geometry(cols, rows, prefs)
        session = self._attach(
            session_id,
            command=self._default_shell(prefs),
            args=[],
            cwd=None,
            cols=cols,
            rows=rows,
        )

        try:
            self._table.insert_if_absent(session)
        except LockFailed:
            session.terminate(self._config.terminal.kill_grace_seconds)
            raise

        logger.info("Reconnected to tmux session for %s", session_id)
        return session.info()

    # ------------------------------------------------------------------
    # tmux config passthroughs
    # ------------------------------------------------------------------

    def is_using_tmux(self) -> bool:
        return self._use_tmux

    def read_tmux_config(self) -> str:
        return self._require_mux().read_config()

    def write_tmux_config(self, content: str) -> None:
        self._require_mux().write_config(content)

    def reset_tmux_config(self) -> str:
        return self._require_mux().reset_config()

    def tmux_config_path(self) -> Path:
        return self._require_mux().config_path

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self, kill_persistent: bool = False) -> None:
        """Release every session. Called when the host application exits.

        tmux-backed sessions are only detached (their tmux session keeps
        running) unless ``kill_persistent`` is set.  The manager refuses
        further requests afterwards.
        """
        sessions = self._table.close()
        grace = self._config.terminal.kill_grace_seconds
        for session in sessions:
            if session.persistent and not kill_persistent:
                try:
                    session.terminate(grace)
                except KillFailed as e:
                    logger.warning("Error detaching session %s: %s", session.id, e)
                logger.info("Detached from tmux-backed session %s", session.id)
                continue
            try:
                exit_code = self._release(session, kill_backing=True)
            except KillFailed as e:
                logger.warning("Error killing session %s: %s", session.id, e)
                exit_code = None
            self._record_end(session.id, exit_code)
        logger.info("All PTY sessions released")

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._table

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, session_id: str) -> PTYSession:
        session = self._table.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _require_mux(self) -> Multiplexer:
        if self._mux is None:
            raise ExternalToolFailed("No multiplexer configured")
        return self._mux

    def _release(self, session: PTYSession, kill_backing: bool) -> int | None:
        """Terminate a session already out of the table."""
        try:
            return session.terminate(self._config.terminal.kill_grace_seconds)
        finally:
            if kill_backing and session.persistent:
                self._discard_backing(session.id)

    def _discard_backing(self, session_id: str) -> None:
        if self._mux is None:
            return
        try:
            self._mux.kill(session_id)
        except PTYError as e:
            logger.warning("Failed to kill tmux session for %s: %s", session_id, e)

    def _load_preferences(self) -> TerminalPreferences | None:
        try:
            return self._history.load_preferences()
        except Exception as e:
            logger.warning("Failed to load terminal preferences: %s", e)
            return None

    def _default_shell(self, prefs: TerminalPreferences | None) -> str:
        if prefs is not None and prefs.shell_path:
            return prefs.shell_path
        return self._config.terminal.shell or os.environ.get("SHELL") or _FALLBACK_SHELL

    def _geometry(
        self, cols: int | None, rows: int | None, prefs: TerminalPreferences | None
    ) -> tuple[int, int]:
        """Requested size, else the preferred size, else the configured default."""
        terminal = self._config.terminal
        return (
            cols or (prefs and prefs.cols) or terminal.default_cols,
            rows or (prefs and prefs.rows) or terminal.default_rows,
        )

    def _resolve_cwd(self, cwd: str | None) -> str:
        if cwd:
            expanded = os.path.expanduser(cwd)
            if os.path.isdir(expanded):
                return expanded
            logger.warning("Working directory %s does not exist, using home", expanded)
        return _home_dir()

    def _child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = self._config.terminal.term
        # tmux refuses to attach from inside another tmux client
        env.pop("TMUX", None)
        env.pop("TMUX_PANE", None)
        return env

    def _record_start(self, session: PTYSession) -> None:
        try:
            self._history.record_session_start(
                session.id,
                session.command,
                session.args,
                session.cwd,
                int(session.created_at.timestamp()),
            )
        except Exception as e:
            logger.warning("Failed to record start of %s: %s", session.id, e)

    def _record_end(self, session_id: str, exit_code: int | None) -> None:
        try:
            self._history.record_session_end(session_id, int(time.time()), exit_code)
        except Exception as e:
            logger.warning("Failed to record end of %s: %s", session_id, e)


def _home_dir() -> str:
    home = os.path.expanduser("~")
    return home if os.path.isdir(home) else "/"
