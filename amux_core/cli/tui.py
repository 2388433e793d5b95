"""Dashboard and headless monitor commands."""

import asyncio

import click

from amux_core.context import AgentContext
from amux_core.presentation import ConsolePresentation

from amux_core.cli import cli
from amux_core.cli.helpers import current_settings


@cli.command("tui")
def tui_cmd():
    """Open the interactive dashboard."""
    from amux_core.tui.app import AgentMonitorApp
    app = AgentMonitorApp(current_settings())
    app.run()


async def _run_headless(context: AgentContext) -> None:
    try:
        result = await context.start()
        if result is not None:
            click.echo(f"Tracking {len(context.registry)} sessions ({result.summary()})")
        click.echo(f"Watching {context.settings.state_file}. Press Ctrl+C to stop.")
        await context.wait_closed()
    finally:
        context.close()


@cli.command("monitor")
@click.option("-q", "--quiet", is_flag=True, default=False,
              help="Only print notifications, not every state change")
def monitor_cmd(quiet: bool):
    """Run the engine without a UI.

    Keeps the registry in sync with the state file and tmux, consumes
    trigger files and serves the command directory, printing
    notifications as sessions finish, fail or disappear.
    """
    settings = current_settings()
    context = AgentContext(settings, ConsolePresentation(verbose=not quiet))
    try:
        asyncio.run(_run_headless(context))
    except KeyboardInterrupt:
        click.echo("\nStopped.")
