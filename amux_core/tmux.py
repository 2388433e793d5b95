"""Tmux queries and window management for amux.

Every function that puts a session identifier into a tmux argv validates
it first (identity.validate_identifier) and raises UnsafeIdentifierError
before any process is started.

The ``*_async`` functions are the ground-truth queries used by the
engine on the event loop.  Every tmux call, sync or async, is bounded by
DEFAULT_TIMEOUT and raises TmuxQueryError when tmux does not answer.
"""

import asyncio
import os
import shlex
import subprocess

from amux_core.identity import validate_identifier
from amux_core.paths import configure_logger, run_shell_logged

_log = configure_logger("amux.tmux")

DEFAULT_TIMEOUT = 2.0


class TmuxQueryError(Exception):
    """Raised when tmux could not be queried (missing binary, timeout)."""


def _tmux_cmd(*args: str, socket_path: str | None = None) -> list[str]:
    """tmux argv for *args*, honouring *socket_path* or AMUX_TMUX_SOCKET."""
    cmd = ["tmux"]
    sp = socket_path or os.environ.get("AMUX_TMUX_SOCKET")
    if sp:
        cmd.extend(["-S", sp])
    cmd.extend(args)
    return cmd


def has_tmux() -> bool:
    """True when a tmux binary is on PATH."""
    import shutil
    return shutil.which("tmux") is not None


def in_tmux() -> bool:
    """True when this process runs inside a tmux client."""
    return bool(os.environ.get("TMUX"))


# ---------------------------------------------------------------------------
# Synchronous helpers (CLI and TUI actions)
# ---------------------------------------------------------------------------

def _run_sync(*args: str, timeout: float = DEFAULT_TIMEOUT, **kwargs) -> subprocess.CompletedProcess:
    """``subprocess.run`` for tmux *args*, bounded by *timeout* seconds.

    Raises TmuxQueryError when tmux does not answer in time.
    """
    try:
        return subprocess.run(_tmux_cmd(*args), capture_output=True, timeout=timeout, **kwargs)
    except subprocess.TimeoutExpired:
        _log.warning("tmux: %s timed out after %.1fs", args[0], timeout)
        raise TmuxQueryError(f"tmux {args[0]} timed out after {timeout}s") from None


def _run_logged(*args: str, timeout: float = DEFAULT_TIMEOUT) -> None:
    """Run a state-changing tmux command through the shared command log."""
    try:
        run_shell_logged(_tmux_cmd(*args), prefix="tmux", capture_output=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        _log.warning("tmux: %s timed out after %.1fs", args[0], timeout)
        raise TmuxQueryError(f"tmux {args[0]} timed out after {timeout}s") from None


def session_exists(name: str) -> bool:
    """Synchronous has-session for CLI and dashboard actions."""
    validate_identifier(name)
    result = _run_sync("has-session", "-t", f"={name}")
    return result.returncode == 0


def list_sessions() -> list[str]:
    """Return the names of all live tmux sessions ([] when no server runs)."""
    result = _run_sync("list-sessions", "-F", "#{session_name}", text=True)
    if result.returncode != 0:
        return []
    return [line for line in result.stdout.strip().splitlines() if line]


def kill_session(name: str) -> None:
    """Kill session *name* (exact match)."""
    validate_identifier(name)
    _run_logged("kill-session", "-t", f"={name}")


def get_session_name() -> str:
    """Name of the session this process runs in ("" outside tmux)."""
    target = ["-t", os.environ["TMUX_PANE"]] if os.environ.get("TMUX_PANE") else []
    result = _run_sync("display-message", "-p", *target, "#{session_name}", text=True)
    return result.stdout.strip()


def attach_command(name: str) -> str:
    """Shell command that attaches to session *name* from inside tmux."""
    validate_identifier(name)
    # TMUX must be cleared or tmux refuses to nest.
    return f"TMUX= tmux attach-session -t {shlex.quote('=' + name)}"


def pane_cwd(name: str) -> str | None:
    """Working directory of the active pane in session *name*, if it exists."""
    validate_identifier(name)
    result = _run_sync("display-message", "-t", f"={name}:", "-p", "#{pane_current_path}",
                       text=True)
    cwd = result.stdout.strip()
    if result.returncode != 0 or not cwd or not os.path.isdir(cwd):
        return None
    return cwd


def open_attach_window(host_session: str, name: str, title: str) -> str:
    """Open a background window in *host_session* attached to session *name*.

    The window starts in the session's working directory when it is known.
    Returns the new window ID (``@N``).
    """
    validate_identifier(name)
    cwd_args = []
    cwd = pane_cwd(name)
    if cwd:
        cwd_args = ["-c", cwd]
    result = _run_sync("new-window", "-d", "-t", f"{host_session}:", "-n", title, *cwd_args,
                       "-P", "-F", "#{window_id}", attach_command(name),
                       text=True, check=True)
    return result.stdout.strip()


def rename_window(window_id: str, title: str) -> None:
    """Rename a window by ID."""
    _run_sync("rename-window", "-t", window_id, title)


def kill_window(window_id: str) -> None:
    """Kill a tmux window by ID."""
    _run_logged("kill-window", "-t", window_id)


def window_exists(window_id: str) -> bool:
    """Check if a tmux window still exists."""
    result = _run_sync("list-panes", "-t", window_id, text=True)
    return result.returncode == 0


def select_window(window_id: str) -> bool:
    """Switch to a window by ID. Returns True on success."""
    result = _run_sync("select-window", "-t", window_id)
    return result.returncode == 0


# ---------------------------------------------------------------------------
# Async ground-truth queries (engine)
# ---------------------------------------------------------------------------

async def _run_async(*args: str, timeout: float = DEFAULT_TIMEOUT) -> tuple[int, str]:
    """Run tmux with *args* and return (returncode, stdout).

    Raises TmuxQueryError when tmux is missing or does not answer within
    *timeout* seconds (the process is killed).
    """
    cmd = _tmux_cmd(*args)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE)
    except (FileNotFoundError, PermissionError) as e:
        raise TmuxQueryError(f"cannot run tmux: {e}") from e
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        _log.warning("tmux: %s timed out after %.1fs", args[0], timeout)
        raise TmuxQueryError(f"tmux {args[0]} timed out after {timeout}s") from None
    _log.debug("tmux: %s rc=%s", shlex.join(cmd), proc.returncode)
    return proc.returncode, stdout.decode(errors="replace")


async def list_sessions_async(timeout: float = DEFAULT_TIMEOUT) -> set[str]:
    """Return the set of live session names.

    A non-zero exit (typically "no server running") means no sessions.
    """
    rc, out = await _run_async("list-sessions", "-F", "#{session_name}", timeout=timeout)
    if rc != 0:
        return set()
    return {line for line in out.strip().splitlines() if line}


async def has_session_async(name: str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    """Check whether session *name* is alive."""
    validate_identifier(name)
    rc, _ = await _run_async("has-session", "-t", f"={name}", timeout=timeout)
    return rc == 0


