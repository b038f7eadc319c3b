"""Session history — records of session starts/ends and terminal preferences.

The session manager only talks to the :class:`SessionHistory` protocol; its
own correctness never depends on these calls succeeding.  Two
implementations are provided: :class:`NullHistory` and a JSONL-file backed
:class:`JsonlSessionHistory`.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class TerminalPreferences(BaseModel):
    """User preferences that affect new sessions. Unset fields mean "no preference"."""

    shell_path: str | None = Field(default=None)
    cols: int | None = Field(default=None, gt=0)
    rows: int | None = Field(default=None, gt=0)


@runtime_checkable
class SessionHistory(Protocol):
    def record_session_start(
        self,
        session_id: str,
        command: str,
        args: list[str],
        cwd: str | None,
        timestamp: int,
    ) -> None: ...

    def record_session_end(
        self, session_id: str, ended_at: int, exit_code: int | None
    ) -> None: ...

    def load_preferences(self) -> TerminalPreferences | None: ...


class NullHistory:
    """Records nothing, has no preferences."""

    def record_session_start(
        self,
        session_id: str,
        command: str,
        args: list[str],
        cwd: str | None,
        timestamp: int,
    ) -> None:
        pass

    def record_session_end(
        self, session_id: str, ended_at: int, exit_code: int | None
    ) -> None:
        pass

    def load_preferences(self) -> TerminalPreferences | None:
        return None


@dataclass
class SessionRecord:
    id: str
    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    created_at: int = 0
    ended_at: int | None = None
    exit_code: int | None = None


class JsonlSessionHistory:
    """Append-only JSONL log of session starts and ends.

    Each line is either ``{"_type": "start", ...}`` or ``{"_type": "end", ...}``;
    :meth:`records` replays the file into one :class:`SessionRecord` per id.
    Preferences live in a separate JSON file.
    """

    def __init__(self, path: Path | str, preferences_path: Path | str | None = None) -> None:
        self.path = Path(path)
        self.preferences_path = Path(preferences_path) if preferences_path else None
        self._lock = threading.Lock()

    def record_session_start(
        self,
        session_id: str,
        command: str,
        args: list[str],
        cwd: str | None,
        timestamp: int,
    ) -> None:
        self._append(
            {
                "_type": "start",
                "id": session_id,
                "command": command,
                "args": list(args),
                "cwd": cwd,
                "created_at": timestamp,
            }
        )

    def record_session_end(
        self, session_id: str, ended_at: int, exit_code: int | None
    ) -> None:
        self._append(
            {
                "_type": "end",
                "id": session_id,
                "ended_at": ended_at,
                "exit_code": exit_code,
            }
        )

    def records(self) -> list[SessionRecord]:
        """All recorded sessions, newest first."""
        if not self.path.exists():
            return []
        by_id: dict[str, SessionRecord] = {}
        with self._lock, open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt history line in %s", self.path)
                    continue
                kind = entry.get("_type")
                sid = entry.get("id")
                if not sid:
                    continue
                if kind == "start":
                    by_id[sid] = SessionRecord(
                        id=sid,
                        command=entry.get("command", ""),
                        args=entry.get("args", []),
                        cwd=entry.get("cwd"),
                        created_at=entry.get("created_at", 0),
                    )
                elif kind == "end" and sid in by_id:
                    by_id[sid].ended_at = entry.get("ended_at")
                    by_id[sid].exit_code = entry.get("exit_code")
        return sorted(by_id.values(), key=lambda r: r.created_at, reverse=True)

    def active(self) -> list[SessionRecord]:
        """Recorded sessions without an end record."""
        return [r for r in self.records() if r.ended_at is None]

    def load_preferences(self) -> TerminalPreferences | None:
        if self.preferences_path is None or not self.preferences_path.exists():
            return None
        try:
            with open(self.preferences_path, encoding="utf-8") as f:
                return TerminalPreferences.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable preferences %s: %s", self.preferences_path, e)
            return None

    def save_preferences(self, prefs: TerminalPreferences) -> None:
        if self.preferences_path is None:
            raise ValueError("No preferences file configured")
        self.preferences_path.parent.mkdir(parents=True, exist_ok=True)
        self.preferences_path.write_text(
            prefs.model_dump_json(indent=2), encoding="utf-8"
        )

    def _append(self, entry: dict[str, Any]) -> None:
        line = json.dumps(entry, ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
