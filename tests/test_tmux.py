"""Tests for amux_core.tmux: tmux helper functions and async queries."""

import asyncio
import os
import subprocess
from unittest.mock import patch, MagicMock, AsyncMock

import pytest

from amux_core.identity import UnsafeIdentifierError
from amux_core.tmux import (
    DEFAULT_TIMEOUT,
    TmuxQueryError,
    _tmux_cmd,
    attach_command,
    get_session_name,
    has_session_async,
    has_tmux,
    in_tmux,
    kill_session,
    list_sessions,
    list_sessions_async,
    open_attach_window,
    pane_cwd,
    session_exists,
    window_exists,
)


def _run_async(coro):
    """Run an async coroutine in a fresh event loop (safe across tests)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _fake_proc(returncode=0, stdout=b""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, b""))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


UNSAFE = ["foo bar", "x;rm -rf ~", "$(id)", "", "a" * 100, "name\n"]


# ---------------------------------------------------------------------------
# environment
# ---------------------------------------------------------------------------

class TestHasTmux:
    @patch("shutil.which", return_value="/usr/bin/tmux")
    def test_installed(self, mock_which):
        assert has_tmux() is True

    @patch("shutil.which", return_value=None)
    def test_not_installed(self, mock_which):
        assert has_tmux() is False


class TestInTmux:
    def test_in_tmux(self):
        with patch.dict(os.environ, {"TMUX": "/tmp/tmux-1000/default,123,0"}):
            assert in_tmux() is True

    def test_not_in_tmux(self):
        env = os.environ.copy()
        env.pop("TMUX", None)
        with patch.dict(os.environ, env, clear=True):
            assert in_tmux() is False

    @patch("amux_core.tmux.subprocess.run")
    def test_session_name_targets_own_pane(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="dash\n")
        with patch.dict(os.environ, {"TMUX_PANE": "%3"}):
            assert get_session_name() == "dash"
        args = mock_run.call_args[0][0]
        assert args[args.index("-t") + 1] == "%3"


class TestTmuxCmd:
    def test_plain(self):
        env = os.environ.copy()
        env.pop("AMUX_TMUX_SOCKET", None)
        with patch.dict(os.environ, env, clear=True):
            assert _tmux_cmd("list-sessions") == ["tmux", "list-sessions"]

    def test_socket_from_env(self):
        with patch.dict(os.environ, {"AMUX_TMUX_SOCKET": "/tmp/amux.sock"}):
            assert _tmux_cmd("ls") == ["tmux", "-S", "/tmp/amux.sock", "ls"]

    def test_explicit_socket(self):
        assert _tmux_cmd("ls", socket_path="/s") == ["tmux", "-S", "/s", "ls"]


# ---------------------------------------------------------------------------
# identifier validation happens before any process starts
# ---------------------------------------------------------------------------

class TestUnsafeIdentifiers:
    @pytest.mark.parametrize("name", UNSAFE)
    @patch("amux_core.tmux.subprocess.run")
    def test_sync_helpers_never_run(self, mock_run, name):
        for func in (session_exists, kill_session, attach_command, pane_cwd):
            with pytest.raises(UnsafeIdentifierError):
                func(name)
        with pytest.raises(UnsafeIdentifierError):
            open_attach_window("dash", name, "title")
        mock_run.assert_not_called()

    @pytest.mark.parametrize("name", UNSAFE)
    @patch("amux_core.tmux.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    def test_async_queries_never_run(self, mock_exec, name):
        with pytest.raises(UnsafeIdentifierError):
            _run_async(has_session_async(name))
        mock_exec.assert_not_called()


# ---------------------------------------------------------------------------
# synchronous helpers
# ---------------------------------------------------------------------------

class TestSessionExists:
    @patch("amux_core.tmux.subprocess.run")
    def test_exists(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0)
        assert session_exists("factory-TC-001") is True
        args = mock_run.call_args[0][0]
        assert args[-2:] == ["-t", "=factory-TC-001"]

    @patch("amux_core.tmux.subprocess.run")
    def test_not_exists(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1)
        assert session_exists("factory-TC-001") is False


class TestListSessions:
    @patch("amux_core.tmux.subprocess.run")
    def test_parses_names(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="a-1\nb-2\n")
        assert list_sessions() == ["a-1", "b-2"]

    @patch("amux_core.tmux.subprocess.run")
    def test_no_server(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout="")
        assert list_sessions() == []


class TestWindows:
    def test_attach_command_clears_tmux(self):
        assert attach_command("qa-1") == "TMUX= tmux attach-session -t =qa-1"

    @patch("amux_core.tmux.subprocess.run")
    def test_open_attach_window(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="@7\n")
        assert open_attach_window("dash", "qa-1", "🔍 ⚪ QA-S-1") == "@7"
        args = mock_run.call_args[0][0]
        assert "new-window" in args
        assert args[args.index("-t") + 1] == "dash:"
        assert args[args.index("-n") + 1] == "🔍 ⚪ QA-S-1"
        assert args[-1] == "TMUX= tmux attach-session -t =qa-1"

    @patch("amux_core.tmux.subprocess.run")
    def test_open_attach_window_uses_session_cwd(self, mock_run, tmp_path):
        mock_run.side_effect = [
            MagicMock(returncode=0, stdout=f"{tmp_path}\n"),
            MagicMock(returncode=0, stdout="@8\n"),
        ]
        assert open_attach_window("dash", "qa-1", "title") == "@8"
        args = mock_run.call_args[0][0]
        assert args[args.index("-c") + 1] == str(tmp_path)

    @patch("amux_core.tmux.subprocess.run")
    def test_pane_cwd_missing_directory(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="/no/such/dir\n")
        assert pane_cwd("qa-1") is None
        mock_run.return_value = MagicMock(returncode=1, stdout="")
        assert pane_cwd("qa-1") is None

    @patch("amux_core.tmux.subprocess.run")
    def test_window_exists(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1)
        assert window_exists("@3") is False

    @patch("amux_core.paths.subprocess.run")
    def test_kill_session_logged(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0)
        kill_session("qa-1")
        args = mock_run.call_args[0][0]
        assert args[-3:] == ["kill-session", "-t", "=qa-1"]
        assert mock_run.call_args.kwargs["timeout"] == DEFAULT_TIMEOUT


class TestSyncTimeouts:
    @patch("amux_core.tmux.subprocess.run")
    def test_queries_are_bounded(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="")
        session_exists("qa-1")
        list_sessions()
        window_exists("@3")
        for call in mock_run.call_args_list:
            assert call.kwargs["timeout"] == DEFAULT_TIMEOUT

    @patch("amux_core.tmux.subprocess.run")
    def test_hung_query_raises(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="tmux", timeout=DEFAULT_TIMEOUT)
        with pytest.raises(TmuxQueryError, match="has-session timed out"):
            session_exists("qa-1")
        with pytest.raises(TmuxQueryError):
            open_attach_window("dash", "qa-1", "title")

    @patch("amux_core.paths.subprocess.run")
    def test_hung_kill_raises(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="tmux", timeout=DEFAULT_TIMEOUT)
        with pytest.raises(TmuxQueryError, match="kill-session"):
            kill_session("qa-1")


# ---------------------------------------------------------------------------
# async queries
# ---------------------------------------------------------------------------

class TestAsyncQueries:
    @patch("amux_core.tmux.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    def test_list_sessions_async(self, mock_exec):
        mock_exec.return_value = _fake_proc(0, b"factory-TC-001\nplanner-alpha\n")
        assert _run_async(list_sessions_async()) == {"factory-TC-001", "planner-alpha"}

    @patch("amux_core.tmux.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    def test_list_sessions_no_server(self, mock_exec):
        mock_exec.return_value = _fake_proc(1, b"")
        assert _run_async(list_sessions_async()) == set()

    @patch("amux_core.tmux.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    def test_missing_binary(self, mock_exec):
        mock_exec.side_effect = FileNotFoundError("tmux")
        with pytest.raises(TmuxQueryError):
            _run_async(list_sessions_async())

    @patch("amux_core.tmux.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    def test_timeout_kills_process(self, mock_exec):
        proc = _fake_proc()

        async def hang():
            await asyncio.sleep(10)

        proc.communicate = hang
        mock_exec.return_value = proc
        with pytest.raises(TmuxQueryError, match="timed out"):
            _run_async(list_sessions_async(timeout=0.05))
        proc.kill.assert_called_once()

    @patch("amux_core.tmux.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    def test_has_session_async(self, mock_exec):
        mock_exec.return_value = _fake_proc(0)
        assert _run_async(has_session_async("qa-1")) is True
        assert mock_exec.call_args[0][-2:] == ("-t", "=qa-1")
