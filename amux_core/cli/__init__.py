"""Click CLI definitions for amux.

The ``cli`` Click group, ``main`` entry point, and the one-shot commands
live here.  Shared helpers (HelpGroup, settings overrides) are in
``cli.helpers``.

Command groups are split into submodules:
- cli.bridge   — commands sent to a running engine (spawn, kill, refresh)
- cli.tui      — the dashboard and the headless monitor
"""

import click

from amux_core import tmux
from amux_core.agents import LifecycleState
from amux_core.diff import diff
from amux_core.identity import UnsafeIdentifierError
from amux_core.monitor import TRIGGER_STATES, write_trigger
from amux_core.presentation import ConsolePresentation
from amux_core.registry import SessionRegistry
from amux_core.state_store import SessionStateStore, StateFileError, StateLockTimeout, write_session_state

from amux_core.cli.helpers import (
    CONTEXT_SETTINGS,
    HelpGroup,
    current_settings,
    format_table,
    session_rows,
    set_overrides,
)


@click.group(invoke_without_command=True, cls=HelpGroup, context_settings=CONTEXT_SETTINGS)
@click.option("-C", "workspace", default=None, envvar="AMUX_WORKSPACE",
              help="Workspace root (or set AMUX_WORKSPACE)")
@click.option("--state-file", "state_file", default=None,
              help="Agent state file (default: <workspace>/_featstate/agent_states.json)")
@click.pass_context
def cli(ctx, workspace: str | None, state_file: str | None):
    """amux: track agent sessions running in tmux."""
    set_overrides(workspace, state_file)
    if ctx.invoked_subcommand is None:
        # Late import: tui_cmd is registered by cli/tui.py submodule
        from amux_core.cli.tui import tui_cmd
        ctx.invoke(tui_cmd)


@cli.command("sessions")
@click.option("--live", "live_only", is_flag=True, default=False,
              help="Only show sessions tmux reports as alive")
def sessions_cmd(live_only: bool):
    """List sessions from the state file with their tmux status."""
    settings = current_settings()
    store = SessionStateStore(settings.state_file)
    try:
        snapshot = store.refresh()
    except StateFileError as e:
        raise click.ClickException(f"{settings.state_file}: {e}")
    if snapshot is None:
        click.echo(f"No state file at {settings.state_file}")
        return

    registry = SessionRegistry(ConsolePresentation())
    registry.apply(diff(None, snapshot), snapshot)
    try:
        alive = set(tmux.list_sessions()) if tmux.has_tmux() else None
    except tmux.TmuxQueryError as e:
        raise click.ClickException(str(e))
    records = registry.records()
    if live_only and alive is not None:
        records = [r for r in records if r.identifier in alive]
    if not records:
        click.echo("No sessions.")
        return
    headers = ("", "NAME", "SESSION", "STATE", "HEALTH", "LIVE")
    click.echo(format_table(headers, session_rows(records, alive)))
    if snapshot.last_updated:
        click.echo(f"\nlast updated: {snapshot.last_updated}")


@cli.command("state")
@click.argument("identifier")
@click.argument("state", type=click.Choice(sorted(s.value for s in LifecycleState)))
@click.option("--display", "display_name", default=None,
              help="New display name to announce with the trigger")
@click.option("--direct", is_flag=True, default=False,
              help="Write the state file instead of a trigger file")
def state_cmd(identifier: str, state: str, display_name: str | None, direct: bool):
    """Report a session's state the way agent hooks do.

    By default writes <hooks>/state_updates/IDENTIFIER.trigger, which a
    running engine consumes within a few seconds.  With --direct the
    session's entry in the state file is updated instead.
    """
    settings = current_settings()
    lifecycle = LifecycleState(state)
    try:
        if direct:
            write_session_state(settings.state_file, identifier, lifecycle, origin="cli")
            click.echo(f"{identifier} = {state} ({settings.state_file})")
            return
        if lifecycle not in TRIGGER_STATES:
            raise click.ClickException(f"'{state}' can only be set with --direct")
        path = write_trigger(settings.hooks_dir, identifier, lifecycle, display_name)
    except UnsafeIdentifierError as e:
        raise click.ClickException(str(e))
    except (StateFileError, StateLockTimeout) as e:
        raise click.ClickException(f"{settings.state_file}: {e}")
    click.echo(f"{identifier} = {state} ({path})")


@cli.command("debug")
@click.argument("mode", type=click.Choice(["on", "off"]))
def debug_cmd(mode: str):
    """Turn debug logging on or off (~/.amux/debug/amux.log)."""
    from amux_core.paths import command_log_file, set_debug
    set_debug(mode == "on")
    click.echo(f"debug logging {mode} ({command_log_file()})")


HELP_TEXT = """\
amux: track agent sessions running in tmux

  amux                      Open the dashboard (same as 'amux tui')
  amux monitor              Run the engine headless, printing notifications
  amux sessions             List sessions from the state file
  amux state ID STATE       Report a state change for a session
  amux spawn KIND [TASK]    Launch an agent through the running engine
  amux kill ID              Stop a session through the running engine
  amux refresh              Reconcile the running engine against tmux
  amux debug on|off         Toggle debug logging

Configuration: ~/.amux/config.yaml, AMUX_STATE_FILE, AMUX_WORKSPACE,
AMUX_TMUX_SOCKET, or -C / --state-file."""


@cli.command("help")
def help_cmd():
    """Show a command overview."""
    click.echo(HELP_TEXT)


# ---------------------------------------------------------------------------
# Import submodules to register their commands on ``cli``.
# This must be at the bottom of the file, after ``cli`` is defined.
# ---------------------------------------------------------------------------
from amux_core.cli import bridge, tui  # noqa: E402, F401


def main():
    cli()
