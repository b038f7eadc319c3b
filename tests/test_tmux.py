"""Tests for wizterm.tmux.adapter (TmuxAdapter, find_tmux, _run_tmux)."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from wizterm.errors import ExternalToolFailed
from wizterm.tmux.adapter import (
    DEFAULT_TMUX_CONFIG,
    TMUX_SESSION_PREFIX,
    Multiplexer,
    TmuxAdapter,
    _run_tmux,
    find_tmux,
)

TMUX = "/usr/bin/tmux"


def _done(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(
        args=[TMUX], returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture
def adapter(tmp_path) -> TmuxAdapter:
    return TmuxAdapter(config_path=tmp_path / "tmux.conf", binary=TMUX, shell="/bin/bash")


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


class TestNaming:
    def test_session_name_has_prefix(self, adapter) -> None:
        assert adapter.session_name("abc") == f"{TMUX_SESSION_PREFIX}abc"

    def test_name_round_trip(self, adapter) -> None:
        name = adapter.session_name("1234-5678")
        assert adapter.session_id_from_name(name) == "1234-5678"

    def test_foreign_name_is_rejected(self, adapter) -> None:
        assert adapter.session_id_from_name("main") is None
        assert adapter.session_id_from_name(TMUX_SESSION_PREFIX) is None

    def test_adapter_satisfies_protocol(self, adapter) -> None:
        assert isinstance(adapter, Multiplexer)


# ---------------------------------------------------------------------------
# Locating tmux
# ---------------------------------------------------------------------------


class TestFindTmux:
    def test_found_on_path(self) -> None:
        with patch("wizterm.tmux.adapter.shutil.which", return_value="/opt/bin/tmux"):
            assert find_tmux() == "/opt/bin/tmux"

    def test_login_shell_fallback(self, tmp_path) -> None:
        fake = tmp_path / "tmux"
        fake.write_text("#!/bin/sh\n")
        fake.chmod(0o755)
        with (
            patch("wizterm.tmux.adapter.shutil.which", return_value=None),
            patch(
                "wizterm.tmux.adapter.subprocess.run",
                return_value=_done(stdout=f"motd noise\n{fake}\n"),
            ) as run,
        ):
            assert find_tmux("/bin/zsh") == str(fake)
        argv = run.call_args.args[0]
        assert argv == ["/bin/zsh", "-l", "-c", "command -v tmux"]

    def test_well_known_paths(self) -> None:
        with (
            patch("wizterm.tmux.adapter.shutil.which", return_value=None),
            patch("wizterm.tmux.adapter.subprocess.run", return_value=_done(1)),
            patch("wizterm.tmux.adapter._WELL_KNOWN_PATHS", ("/custom/tmux",)),
            patch("wizterm.tmux.adapter.os.path.isfile", return_value=True),
            patch("wizterm.tmux.adapter.os.access", return_value=True),
        ):
            assert find_tmux("/bin/sh") == "/custom/tmux"

    def test_not_found_anywhere(self) -> None:
        with (
            patch("wizterm.tmux.adapter.shutil.which", return_value=None),
            patch(
                "wizterm.tmux.adapter.subprocess.run",
                side_effect=subprocess.TimeoutExpired("sh", 10),
            ),
            patch("wizterm.tmux.adapter._WELL_KNOWN_PATHS", ()),
        ):
            assert find_tmux("/bin/sh") is None

    def test_locate_is_cached(self, tmp_path) -> None:
        adapter = TmuxAdapter(config_path=tmp_path / "tmux.conf")
        with patch("wizterm.tmux.adapter.find_tmux", return_value=TMUX) as finder:
            assert adapter.locate() == TMUX
            assert adapter.locate() == TMUX
            assert adapter.available
        assert finder.call_count == 1

    def test_empty_binary_means_unavailable(self, tmp_path) -> None:
        adapter = TmuxAdapter(config_path=tmp_path / "tmux.conf", binary="")
        assert adapter.available is False
        with pytest.raises(ExternalToolFailed, match="tmux not found"):
            adapter.attach_invocation("abc")


# ---------------------------------------------------------------------------
# _run_tmux — transient failure retry
# ---------------------------------------------------------------------------


class TestRetry:
    def test_retries_on_blocking_io_error(self) -> None:
        run = MagicMock(side_effect=[BlockingIOError("EAGAIN"), _done(stdout="ok")])
        with patch("wizterm.tmux.adapter.subprocess.run", run):
            assert _run_tmux([TMUX, "-V"]).stdout == "ok"
        assert run.call_count == 2

    def test_gives_up_after_3_attempts(self) -> None:
        run = MagicMock(side_effect=InterruptedError("EINTR"))
        with patch("wizterm.tmux.adapter.subprocess.run", run):
            with pytest.raises(InterruptedError):
                _run_tmux([TMUX, "-V"])
        assert run.call_count == 3

    def test_does_not_retry_missing_binary(self) -> None:
        run = MagicMock(side_effect=FileNotFoundError("tmux"))
        with patch("wizterm.tmux.adapter.subprocess.run", run):
            with pytest.raises(FileNotFoundError):
                _run_tmux([TMUX, "-V"])
        assert run.call_count == 1


# ---------------------------------------------------------------------------
# Session operations
# ---------------------------------------------------------------------------


class TestCreateDetached:
    def test_argv_uses_private_socket_and_config(self, adapter, tmp_path) -> None:
        with patch("wizterm.tmux.adapter.subprocess.run", return_value=_done()) as run:
            name = adapter.create_detached("abc", cwd=str(tmp_path))
        assert name == "wizterm-abc"
        argv = run.call_args.args[0]
        assert argv[:5] == [TMUX, "-L", "wizterm", "-f", str(tmp_path / "tmux.conf")]
        assert argv[5:10] == ["new-session", "-d", "-s", "wizterm-abc", "-c"]
        assert argv[10] == str(tmp_path)
        assert argv[-1] == "/bin/bash"

    def test_writes_default_config_first(self, adapter, tmp_path) -> None:
        with patch("wizterm.tmux.adapter.subprocess.run", return_value=_done()):
            adapter.create_detached("abc")
        assert (tmp_path / "tmux.conf").read_text() == DEFAULT_TMUX_CONFIG

    def test_command_is_shell_quoted(self, adapter) -> None:
        with patch("wizterm.tmux.adapter.subprocess.run", return_value=_done()) as run:
            adapter.create_detached("abc", command=["/bin/sh", "-c", "echo hi there"])
        assert run.call_args.args[0][-1] == "/bin/sh -c 'echo hi there'"

    def test_missing_cwd_is_rejected(self, adapter) -> None:
        with patch("wizterm.tmux.adapter.subprocess.run") as run:
            with pytest.raises(ExternalToolFailed, match="does not exist"):
                adapter.create_detached("abc", cwd="/nonexistent/path/xyz")
        run.assert_not_called()

    def test_nonzero_exit_raises(self, adapter) -> None:
        with patch(
            "wizterm.tmux.adapter.subprocess.run",
            return_value=_done(1, stderr="duplicate session: wizterm-abc"),
        ):
            with pytest.raises(ExternalToolFailed, match="duplicate session"):
                adapter.create_detached("abc")


class TestQueries:
    def test_exists_uses_exact_target(self, adapter) -> None:
        with patch("wizterm.tmux.adapter.subprocess.run", return_value=_done()) as run:
            assert adapter.exists("abc") is True
        assert run.call_args.args[0][-3:] == ["has-session", "-t", "=wizterm-abc"]

    def test_exists_false_on_nonzero(self, adapter) -> None:
        with patch(
            "wizterm.tmux.adapter.subprocess.run",
            return_value=_done(1, stderr="can't find session: wizterm-abc"),
        ):
            assert adapter.exists("abc") is False

    def test_exists_false_when_unavailable(self, tmp_path) -> None:
        adapter = TmuxAdapter(config_path=tmp_path / "tmux.conf", binary="")
        assert adapter.exists("abc") is False

    def test_list_sessions_filters_prefix(self, adapter) -> None:
        stdout = (
            "wizterm-aaa:1700000000:0\n"
            "main:1700000001:1\n"
            "wizterm-bbb:1700000002:1\n"
            "garbage line\n"
            "wizterm-ccc:notanumber:0\n"
        )
        with patch("wizterm.tmux.adapter.subprocess.run", return_value=_done(stdout=stdout)):
            sessions = adapter.list_sessions()

        assert [s.session_id for s in sessions] == ["aaa", "bbb"]
        assert sessions[0].tmux_session_name == "wizterm-aaa"
        assert sessions[0].created_at == 1700000000
        assert sessions[0].attached is False
        assert sessions[1].attached is True

    def test_list_sessions_no_server(self, adapter) -> None:
        with patch(
            "wizterm.tmux.adapter.subprocess.run",
            return_value=_done(1, stderr="no server running on /tmp/tmux-0/wizterm"),
        ):
            assert adapter.list_sessions() == []

    def test_version(self, adapter) -> None:
        with patch(
            "wizterm.tmux.adapter.subprocess.run", return_value=_done(stdout="tmux 3.4\n")
        ):
            assert adapter.version() == "tmux 3.4"


class TestKill:
    def test_kill(self, adapter) -> None:
        with patch("wizterm.tmux.adapter.subprocess.run", return_value=_done()) as run:
            adapter.kill("abc")
        assert run.call_args.args[0][-3:] == ["kill-session", "-t", "=wizterm-abc"]

    @pytest.mark.parametrize(
        "stderr",
        [
            "session not found: wizterm-abc",
            "can't find session: wizterm-abc",
            "no server running on /tmp/tmux-0/wizterm",
            "error connecting to /tmp/tmux-0/wizterm (No such file or directory)",
        ],
    )
    def test_already_gone_is_success(self, adapter, stderr) -> None:
        with patch("wizterm.tmux.adapter.subprocess.run", return_value=_done(1, stderr=stderr)):
            adapter.kill("abc")

    def test_other_failure_raises(self, adapter) -> None:
        with patch(
            "wizterm.tmux.adapter.subprocess.run",
            return_value=_done(1, stderr="permission denied"),
        ):
            with pytest.raises(ExternalToolFailed, match="permission denied"):
                adapter.kill("abc")


class TestAttachInvocation:
    def test_not_executed(self, adapter, tmp_path) -> None:
        with patch("wizterm.tmux.adapter.subprocess.run") as run:
            exe, args = adapter.attach_invocation("abc")
        run.assert_not_called()
        assert exe == TMUX
        assert args == [
            "-L",
            "wizterm",
            "-f",
            str(tmp_path / "tmux.conf"),
            "attach-session",
            "-t",
            "=wizterm-abc",
        ]


# ---------------------------------------------------------------------------
# Config file
# ---------------------------------------------------------------------------


class TestConfigFile:
    def test_read_missing_returns_defaults(self, adapter, tmp_path) -> None:
        assert adapter.read_config() == DEFAULT_TMUX_CONFIG
        assert not (tmp_path / "tmux.conf").exists()

    def test_write_then_read(self, adapter) -> None:
        adapter.write_config("set -g status on\n")
        assert adapter.read_config() == "set -g status on\n"

    def test_write_creates_parent_dirs(self, tmp_path) -> None:
        adapter = TmuxAdapter(config_path=tmp_path / "a" / "b" / "tmux.conf", binary=TMUX)
        adapter.write_config("x\n")
        assert (tmp_path / "a" / "b" / "tmux.conf").read_text() == "x\n"

    def test_reset(self, adapter) -> None:
        adapter.write_config("custom\n")
        assert adapter.reset_config() == DEFAULT_TMUX_CONFIG
        assert adapter.read_config() == DEFAULT_TMUX_CONFIG

    def test_ensure_config_keeps_existing(self, adapter) -> None:
        adapter.write_config("custom\n")
        adapter.ensure_config()
        assert adapter.read_config() == "custom\n"

    def test_default_config_content(self) -> None:
        assert "set -g status off" in DEFAULT_TMUX_CONFIG
        assert "set -g history-limit 50000" in DEFAULT_TMUX_CONFIG
        assert "set -g escape-time 10" in DEFAULT_TMUX_CONFIG
        assert "detach-on-destroy on" in DEFAULT_TMUX_CONFIG
