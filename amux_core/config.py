"""YAML configuration for amux.

Settings come from ~/.amux/config.yaml (every key optional), then
environment overrides, then explicit overrides passed by the CLI.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

import yaml

from amux_core.paths import config_file, configure_logger

_log = configure_logger("amux.config")

DEFAULT_STATE_FILE = "_featstate/agent_states.json"

ENV_STATE_FILE = "AMUX_STATE_FILE"
ENV_WORKSPACE = "AMUX_WORKSPACE"


class ConfigError(Exception):
    """Raised when config.yaml holds an unusable value."""


@dataclass(frozen=True)
class Settings:
    """Resolved amux settings.  Paths are absolute."""

    workspace: Path
    state_file: Path
    command_dir: Path
    hooks_dir: Path
    launch_script: Path
    debounce_ms: int = 250
    poll_interval: float = 5.0
    command_poll_interval: float = 2.0
    monitor_interval: float = 3.0
    monitor_max_lifetime: float = 2 * 60 * 60
    tmux_timeout: float = 2.0

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @property
    def state_updates_dir(self) -> Path:
        return self.hooks_dir / "state_updates"


_NUMERIC_KEYS = {
    "debounce_ms": int,
    "poll_interval": float,
    "command_poll_interval": float,
    "monitor_interval": float,
    "monitor_max_lifetime": float,
    "tmux_timeout": float,
}


def _read_config_file(path: Path) -> dict:
    """Load the YAML config file, returning {} when absent or empty."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    known = {f.name for f in fields(Settings)}
    unknown = set(data) - known
    if unknown:
        _log.warning("config: ignoring unknown keys %s", sorted(unknown))
    return {k: v for k, v in data.items() if k in known}


def _resolve_path(value, workspace: Path) -> Path:
    p = Path(os.path.expanduser(str(value)))
    return p if p.is_absolute() else workspace / p


def load_settings(
    workspace: Optional[str] = None,
    state_file: Optional[str] = None,
    path: Optional[Path] = None,
) -> Settings:
    """Build Settings from config.yaml, the environment and explicit overrides.

    Precedence (highest first): explicit arguments, AMUX_* environment
    variables, config.yaml, defaults.  Relative paths are resolved against
    the workspace, which defaults to the current directory.
    """
    raw = _read_config_file(path or config_file())

    ws_value = workspace or os.environ.get(ENV_WORKSPACE) or raw.get("workspace")
    ws = Path(os.path.expanduser(str(ws_value))).resolve() if ws_value else Path.cwd()

    sf_value = state_file or os.environ.get(ENV_STATE_FILE) or raw.get("state_file") or DEFAULT_STATE_FILE
    command_dir = raw.get("command_dir") or "_logs/vscode_commands"
    hooks_dir = raw.get("hooks_dir") or "_logs/hooks"
    launch_script = raw.get("launch_script") or "_scripts/asuperherohasemerged.sh"

    settings = Settings(
        workspace=ws,
        state_file=_resolve_path(sf_value, ws),
        command_dir=_resolve_path(command_dir, ws),
        hooks_dir=_resolve_path(hooks_dir, ws),
        launch_script=_resolve_path(launch_script, ws),
    )

    numeric = {}
    for key, conv in _NUMERIC_KEYS.items():
        if key not in raw:
            continue
        try:
            value = conv(raw[key])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"config: {key} must be a number, got {raw[key]!r}") from e
        if value <= 0:
            raise ConfigError(f"config: {key} must be positive, got {value}")
        numeric[key] = value
    if numeric:
        settings = replace(settings, **numeric)

    _log.debug("settings: workspace=%s state_file=%s", settings.workspace, settings.state_file)
    return settings
