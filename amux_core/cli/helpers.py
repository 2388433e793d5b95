"""Shared helpers for the amux CLI package.

HelpGroup, the settings overrides set by the top-level group, and the
session table used by ``amux sessions``.
"""

import click

from amux_core.agents import STATE_ICONS, kind_emoji
from amux_core.config import ConfigError, Settings, load_settings
from amux_core.paths import configure_logger

_log = configure_logger("amux.cli")


# Module-level state set by the cli() group callback via set_overrides()
_workspace_override: str | None = None
_state_file_override: str | None = None

# Shared Click settings: make -h and --help both work everywhere
CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def set_overrides(workspace: str | None, state_file: str | None) -> None:
    """Record -C / --state-file (called by the cli group callback)."""
    global _workspace_override, _state_file_override
    _workspace_override = workspace
    _state_file_override = state_file


def current_settings() -> Settings:
    """Load settings honouring the command-line overrides."""
    try:
        return load_settings(workspace=_workspace_override, state_file=_state_file_override)
    except ConfigError as e:
        _log.warning("cli: %s", e)
        raise click.ClickException(str(e)) from e


class HelpGroup(click.Group):
    """Click Group that treats 'help' as an alias for --help everywhere.

    Handles ``amux help`` and ``amux spawn help``.
    """

    group_class = type  # auto-propagate HelpGroup to child groups

    def resolve_command(self, ctx, args):
        if args and args[0] == "help":
            if super().get_command(ctx, "help") is not None:
                return super().resolve_command(ctx, args)
            args = ["--help"] + args[1:]
        cmd_name, cmd, remaining = super().resolve_command(ctx, args)
        if (remaining and remaining[0] == "help"
                and cmd is not None and not isinstance(cmd, click.Group)):
            remaining = ["--help"] + remaining[1:]
        return cmd_name, cmd, remaining


def session_rows(records, alive: set[str] | None) -> list[tuple[str, ...]]:
    """Rows of (glyph, display, identifier, state, health, live) for a table."""
    rows = []
    for record in records:
        if alive is None:
            live = "?"
        else:
            live = "yes" if record.identifier in alive else "no"
        rows.append((
            f"{kind_emoji(record.agent_kind)} {STATE_ICONS[record.display_state]}",
            record.display_name,
            record.identifier,
            record.display_state.value,
            record.health_state.value,
            live,
        ))
    return rows


def format_table(headers: tuple[str, ...], rows: list[tuple[str, ...]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(c)) for w, c in zip(widths, row)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip()]
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)).rstrip())
    return "\n".join(lines)
