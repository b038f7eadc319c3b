"""tmux adapter — optional session persistence through a private tmux server.

Every invocation targets a dedicated socket (``-L wizterm``) and a dedicated
config file, so the user's own tmux server and config are never touched.
Session names are ``<prefix><session id>``; the mapping is reversible.

The adapter holds no connection: each call is a fresh ``tmux`` process.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from wizterm.errors import ExternalToolFailed

logger = logging.getLogger(__name__)

TMUX_SESSION_PREFIX = "wizterm-"
TMUX_SOCKET_NAME = "wizterm"

# Checked when neither PATH nor the login shell knows about tmux
# (GUI-launched processes often get a minimal PATH).
_WELL_KNOWN_PATHS = (
    "/opt/homebrew/bin/tmux",
    "/usr/local/bin/tmux",
    "/usr/bin/tmux",
)

# stderr fragments meaning "the target is already gone"
_GONE_MARKERS = (
    "session not found",
    "can't find session",
    "no server running",
    "error connecting to",
)

DEFAULT_TMUX_CONFIG = """\
# wiz-term - Transparent tmux config
# This makes tmux invisible while preserving session persistence
# Edit this file to customize tmux behavior

# === Visual Elements: OFF ===
set -g status off                    # Hide status bar
set -g pane-border-status off        # Hide pane borders
set -g visual-activity off           # No activity alerts
set -g visual-bell off               # No bell flash
set -g visual-silence off            # No silence alerts

# === Mouse: Pass-through to applications ===
set -g mouse on                      # Enable mouse support
# Use Shift+scroll to access tmux scrollback

# === Performance ===
set -g escape-time 10                # 10ms escape delay (vim-friendly)

# === Copy Mode ===
set -g mode-keys vi                  # vi keys if entering copy-mode

# === Terminal Compatibility ===
set -g default-terminal "xterm-256color"
set -ga terminal-overrides ",xterm-256color:Tc"  # True color support
set -gq allow-passthrough on         # Let escape sequences through (images, etc)

# === UTF-8 Support ===
set -gq utf8 on                      # Older tmux
set -gq mouse-utf8 on                # Older tmux
setw -gq utf8 on

# === Session Behavior ===
set -g detach-on-destroy on          # Detach instead of switching sessions
set -g remain-on-exit off
set -g history-limit 50000           # Generous scrollback
"""


@dataclass
class TmuxSessionInfo:
    """One session on the private tmux server."""

    session_id: str
    tmux_session_name: str
    created_at: int  # unix seconds
    attached: bool


@runtime_checkable
class Multiplexer(Protocol):
    """What the session manager needs from a persistence backend."""

    @property
    def available(self) -> bool: ...

    @property
    def config_path(self) -> Path: ...

    def create_detached(
        self, session_id: str, cwd: str | None = None, command: list[str] | None = None
    ) -> str: ...

    def exists(self, session_id: str) -> bool: ...

    def list_sessions(self) -> list[TmuxSessionInfo]: ...

    def kill(self, session_id: str) -> None: ...

    def attach_invocation(self, session_id: str) -> tuple[str, list[str]]: ...

    def read_config(self) -> str: ...

    def write_config(self, content: str) -> None: ...

    def reset_config(self) -> str: ...


def find_tmux(shell: str | None = None) -> str | None:
    """Locate the tmux binary.

    Tries, in order: the current ``PATH``; the user's login shell (which
    sources their profile and so recovers the full ``PATH``); a few
    well-known install locations.
    """
    found = shutil.which("tmux")
    if found:
        logger.debug("Found tmux via PATH: %s", found)
        return found

    login_shell = shell or os.environ.get("SHELL") or "/bin/sh"
    try:
        # -l sources the profile; -i is avoided because it misbehaves with zsh
        result = subprocess.run(
            [login_shell, "-l", "-c", "command -v tmux"],
            capture_output=True,
            text=True,
            timeout=10,
            stdin=subprocess.DEVNULL,
        )
        if result.returncode == 0:
            candidate = result.stdout.strip().splitlines()[-1:] or [""]
            path = candidate[0].strip()
            if path and os.path.isfile(path) and os.access(path, os.X_OK):
                logger.info("Found tmux via login shell: %s", path)
                return path
        else:
            logger.debug("Login shell query failed: %s", result.stderr.strip())
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Login shell query for tmux failed: %s", e)

    for path in _WELL_KNOWN_PATHS:
        if os.path.isfile(path) and os.access(path, os.X_OK):
            logger.info("Found tmux at well-known path: %s", path)
            return path

    logger.warning("tmux not found via PATH, login shell, or common locations")
    return None


@retry(
    retry=retry_if_exception_type((BlockingIOError, InterruptedError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def _run_tmux(argv: list[str]) -> subprocess.CompletedProcess[str]:
    """Run one tmux command. Transient fork failures (EAGAIN/EINTR) are retried."""
    return subprocess.run(
        argv,
        capture_output=True,
        text=True,
        stdin=subprocess.DEVNULL,
    )


class TmuxAdapter:
    """tmux-backed implementation of :class:`Multiplexer`.

    The binary is located lazily on first use and cached for the lifetime
    of the adapter.  Pass ``binary`` to skip the lookup (an empty string
    means "tmux is unavailable").
    """

    def __init__(
        self,
        config_path: Path | str,
        socket_name: str = TMUX_SOCKET_NAME,
        session_prefix: str = TMUX_SESSION_PREFIX,
        shell: str | None = None,
        binary: str | None = None,
    ) -> None:
        self._config_path = Path(config_path).expanduser()
        self.socket_name = socket_name
        self.session_prefix = session_prefix
        self._shell = shell
        self._binary = binary
        self._located = binary is not None
        self._locate_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Binary / naming
    # ------------------------------------------------------------------

    def locate(self) -> str | None:
        """Path to tmux, or None. Resolved once and cached."""
        with self._locate_lock:
            if not self._located:
                self._binary = find_tmux(self._shell)
                self._located = True
            return self._binary or None

    @property
    def available(self) -> bool:
        return self.locate() is not None

    def session_name(self, session_id: str) -> str:
        return f"{self.session_prefix}{session_id}"

    def session_id_from_name(self, name: str) -> str | None:
        if not name.startswith(self.session_prefix):
            return None
        return name[len(self.session_prefix) :] or None

    def version(self) -> str | None:
        binary = self.locate()
        if binary is None:
            return None
        try:
            result = _run_tmux([binary, "-V"])
        except OSError:
            return None
        return result.stdout.strip() if result.returncode == 0 else None

    def _argv(self, *args: str) -> list[str]:
        binary = self.locate()
        if binary is None:
            raise ExternalToolFailed("tmux not found")
        return [binary, "-L", self.socket_name, "-f", str(self._config_path), *args]

    def _invoke(self, *args: str) -> subprocess.CompletedProcess[str]:
        argv = self._argv(*args)
        try:
            return _run_tmux(argv)
        except OSError as e:
            raise ExternalToolFailed(f"Failed to execute tmux: {e}") from e

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def create_detached(
        self, session_id: str, cwd: str | None = None, command: list[str] | None = None
    ) -> str:
        """Create a detached session.

        ``command`` is the argv to run inside the session; by default the
        user's shell.  Returns the tmux session name.
        """
        name = self.session_name(session_id)
        self.ensure_config()

        args = ["new-session", "-d", "-s", name]
        if cwd:
            start_dir = os.path.expanduser(cwd)
            # tmux silently falls back to $HOME for a bad -c; refuse instead
            if not os.path.isdir(start_dir):
                raise ExternalToolFailed(
                    f"Working directory does not exist: {start_dir}"
                )
            args += ["-c", start_dir]
        # The command must be the last argument; tmux runs it via sh -c
        if command:
            args.append(shlex.join(command))
        else:
            args.append(self._shell or os.environ.get("SHELL") or "/bin/sh")

        result = self._invoke(*args)
        if result.returncode != 0:
            raise ExternalToolFailed(
                f"Failed to create tmux session: {result.stderr.strip()}"
            )
        logger.info("Created tmux session: %s (config: %s)", name, self._config_path)
        return name

    def exists(self, session_id: str) -> bool:
        if self.locate() is None:
            return False
        try:
            # '=' forces an exact match; tmux otherwise accepts prefixes
            result = self._invoke("has-session", "-t", f"={self.session_name(session_id)}")
        except ExternalToolFailed as e:
            logger.warning("tmux has-session failed: %s", e)
            return False
        return result.returncode == 0

    def list_sessions(self) -> list[TmuxSessionInfo]:
        """Sessions on the private server whose names carry our prefix."""
        if self.locate() is None:
            return []
        try:
            result = self._invoke(
                "list-sessions",
                "-F",
                "#{session_name}:#{session_created}:#{session_attached}",
            )
        except ExternalToolFailed as e:
            logger.warning("tmux list-sessions failed: %s", e)
            return []

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if _is_gone(stderr) or "no sessions" in stderr:
                logger.debug("No tmux server running")
            else:
                logger.warning("tmux list-sessions failed: %s", stderr)
            return []

        sessions: list[TmuxSessionInfo] = []
        for line in result.stdout.splitlines():
            parts = line.rsplit(":", 2)
            if len(parts) != 3:
                continue
            name, created, attached = parts
            session_id = self.session_id_from_name(name)
            if session_id is None:
                continue
            try:
                created_at = int(created)
            except ValueError:
                continue
            sessions.append(
                TmuxSessionInfo(
                    session_id=session_id,
                    tmux_session_name=name,
                    created_at=created_at,
                    attached=attached.strip() != "0",
                )
            )
        return sessions

    def kill(self, session_id: str) -> None:
        """Kill a session. A session that is already gone is not an error."""
        name = self.session_name(session_id)
        result = self._invoke("kill-session", "-t", f"={name}")
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if not _is_gone(stderr):
                raise ExternalToolFailed(f"Failed to kill tmux session: {stderr}")
            logger.debug("tmux session %s already gone", name)
            return
        logger.info("Killed tmux session: %s", name)

    def attach_invocation(self, session_id: str) -> tuple[str, list[str]]:
        """(executable, args) that attach a terminal to the session. Not executed."""
        argv = self._argv("attach-session", "-t", f"={self.session_name(session_id)}")
        return argv[0], argv[1:]

    # ------------------------------------------------------------------
    # Config file
    # ------------------------------------------------------------------

    @property
    def config_path(self) -> Path:
        return self._config_path

    def ensure_config(self) -> Path:
        """Create the config file with defaults if it does not exist yet."""
        path = self._config_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                path.write_text(DEFAULT_TMUX_CONFIG, encoding="utf-8")
                logger.info("Created default tmux config at: %s", path)
        except OSError as e:
            raise ExternalToolFailed(f"Failed to write tmux config: {e}") from e
        return path

    def read_config(self) -> str:
        """Current config text, or the defaults if nothing was written yet."""
        if not self._config_path.exists():
            return DEFAULT_TMUX_CONFIG
        try:
            return self._config_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ExternalToolFailed(f"Failed to read tmux config: {e}") from e

    def write_config(self, content: str) -> None:
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)
            self._config_path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ExternalToolFailed(f"Failed to write tmux config: {e}") from e
        logger.info("Updated tmux config at: %s", self._config_path)

    def reset_config(self) -> str:
        """Overwrite the config with the defaults and return them."""
        self.write_config(DEFAULT_TMUX_CONFIG)
        logger.info("Reset tmux config to defaults at: %s", self._config_path)
        return DEFAULT_TMUX_CONFIG


def _is_gone(stderr: str) -> bool:
    return any(marker in stderr for marker in _GONE_MARKERS)
