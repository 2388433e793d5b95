"""Centralized path management for amux.

All amux-related files live under ~/.amux/:
- ~/.amux/config.yaml   - Optional settings (see amux_core.config)
- ~/.amux/debug/        - Log files and the debug toggle
"""

import logging
import os
import shlex
import subprocess
from pathlib import Path


def amux_home() -> Path:
    """Return the amux home directory (~/.amux/).

    AMUX_HOME overrides the location (used by tests and shared setups).
    """
    override = os.environ.get("AMUX_HOME")
    d = Path(override) if override else Path.home() / ".amux"
    d.mkdir(parents=True, exist_ok=True)
    return d


def debug_dir() -> Path:
    """Return the debug/logs directory (~/.amux/debug/)."""
    d = amux_home() / "debug"
    d.mkdir(parents=True, exist_ok=True)
    return d


def config_file() -> Path:
    """Return the path of the optional YAML config file."""
    return amux_home() / "config.yaml"


def debug_enabled() -> bool:
    """Check if debug logging is enabled.

    Looks for ~/.amux/debug/enabled (just needs to exist).
    """
    return (debug_dir() / "enabled").exists()


def set_debug(enabled: bool = True) -> None:
    """Enable or disable debug logging."""
    flag = debug_dir() / "enabled"
    if enabled:
        flag.touch()
    elif flag.exists():
        flag.unlink()


def command_log_file() -> Path:
    """Return the path to the shared log file (~/.amux/debug/amux.log)."""
    return debug_dir() / "amux.log"


def configure_logger(name: str, max_bytes: int = 10_000_000) -> logging.Logger:
    """Return logger *name*, attaching the shared rotating file handler once.

    Everything amux logs goes to ``~/.amux/debug/amux.log``; nothing is
    printed.  DEBUG records are kept only while the debug flag exists.
    """
    from logging.handlers import RotatingFileHandler

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = RotatingFileHandler(command_log_file(), maxBytes=max_bytes, backupCount=1)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s", datefmt="%H:%M:%S"
    ))
    logger.addHandler(handler)
    logger.propagate = False
    logger.setLevel(logging.DEBUG if debug_enabled() else logging.INFO)
    return logger


_shell_log = configure_logger("amux.shell")


def log_shell_command(cmd: list[str] | str, prefix: str = "shell",
                      returncode: int | None = None) -> None:
    """Record an external command, or its failure when *returncode* is set."""
    cmd_str = shlex.join(cmd) if isinstance(cmd, list) else cmd
    if returncode is None:
        _shell_log.info("%s: %s", prefix, cmd_str)
    elif returncode == 0:
        _shell_log.info("%s ok: %s", prefix, cmd_str)
    else:
        _shell_log.warning("%s rc=%d: %s", prefix, returncode, cmd_str)


def run_shell_logged(cmd: list[str], prefix: str = "shell", **kwargs) -> subprocess.CompletedProcess:
    """``subprocess.run`` that logs the command and any non-zero exit."""
    log_shell_command(cmd, prefix)
    result = subprocess.run(cmd, **kwargs)
    if result.returncode != 0:
        log_shell_command(cmd, prefix, result.returncode)
    return result
