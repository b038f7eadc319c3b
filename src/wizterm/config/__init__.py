"""Configuration — Pydantic models for wizterm settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from wizterm.tmux.adapter import TMUX_SESSION_PREFIX, TMUX_SOCKET_NAME


class TerminalConfig(BaseModel):
    """Defaults applied to new PTY sessions."""

    default_cols: int = Field(default=80, gt=0)
    default_rows: int = Field(default=24, gt=0)
    shell: str | None = Field(
        default=None,
        description="Shell for new sessions. Falls back to $SHELL, then /bin/sh.",
    )
    term: str = Field(default="xterm-256color", description="TERM for child processes")
    kill_grace_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Time between SIGHUP and SIGKILL when killing a session",
    )


class TmuxConfig(BaseModel):
    """tmux persistence settings.

    Sessions live on a private server (``tmux -L <socket_name>``) so they
    survive restarts without touching the user's own tmux setup.
    """

    enabled: bool = Field(default=True, description="Use tmux when it is installed")
    socket_name: str = Field(default=TMUX_SOCKET_NAME)
    session_prefix: str = Field(default=TMUX_SESSION_PREFIX)
    config_path: str | None = Field(
        default=None, description="tmux config file. Defaults to <data_dir>/tmux.conf"
    )


class WizTermConfig(BaseModel):
    """Top-level wizterm configuration."""

    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    tmux: TmuxConfig = Field(default_factory=TmuxConfig)
    data_dir: str = Field(
        default="~/.local/share/wiz-term", description="Directory for wizterm state"
    )
    history_file: str | None = Field(
        default=None,
        description="Session history (JSONL). Defaults to <data_dir>/sessions.jsonl",
    )

    @property
    def data_path(self) -> Path:
        return Path(os.path.expanduser(self.data_dir))

    @property
    def tmux_config_path(self) -> Path:
        if self.tmux.config_path:
            return Path(os.path.expanduser(self.tmux.config_path))
        return self.data_path / "tmux.conf"

    @property
    def history_path(self) -> Path:
        if self.history_file:
            return Path(os.path.expanduser(self.history_file))
        return self.data_path / "sessions.jsonl"

    @property
    def preferences_path(self) -> Path:
        return self.data_path / "preferences.json"

    @classmethod
    def load(cls, config_path: str | None = None) -> WizTermConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            WIZTERM_SHELL     - Shell for new sessions
            WIZTERM_TMUX      - "0" disables tmux persistence, "1" enables it
            WIZTERM_DATA_DIR  - Directory for tmux config, history, preferences
            WIZTERM_COLS      - Default columns
            WIZTERM_ROWS      - Default rows
        """
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        terminal = config_data.get("terminal", {})
        tmux = config_data.get("tmux", {})

        env_shell = os.environ.get("WIZTERM_SHELL")
        if env_shell:
            terminal["shell"] = env_shell

        env_cols = os.environ.get("WIZTERM_COLS")
        if env_cols:
            terminal["default_cols"] = int(env_cols)

        env_rows = os.environ.get("WIZTERM_ROWS")
        if env_rows:
            terminal["default_rows"] = int(env_rows)

        env_tmux = os.environ.get("WIZTERM_TMUX")
        if env_tmux:
            tmux["enabled"] = env_tmux.strip().lower() not in ("0", "false", "no", "off")

        env_data_dir = os.environ.get("WIZTERM_DATA_DIR")
        if env_data_dir:
            config_data["data_dir"] = env_data_dir

        if terminal:
            config_data["terminal"] = terminal
        if tmux:
            config_data["tmux"] = tmux

        return cls.model_validate(config_data)
