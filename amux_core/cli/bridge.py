"""Commands delivered to a running engine through the command directory."""

import click

from amux_core.agents import AgentKind, ModelTier
from amux_core.command_client import CommandClient, CommandTimeout

from amux_core.cli import cli
from amux_core.cli.helpers import current_settings


def _send(command: dict, timeout: float) -> None:
    settings = current_settings()
    client = CommandClient(settings.command_dir, timeout=timeout)
    try:
        reply = client.send(command)
    except CommandTimeout as e:
        raise click.ClickException(str(e))
    click.echo(reply)


@cli.command("spawn")
@click.argument("kind", type=click.Choice([k.value for k in AgentKind]))
@click.argument("task_id", default=None, required=False)
@click.option("--model", default=ModelTier.SONNET.value,
              type=click.Choice([m.value for m in ModelTier]),
              help="Model tier for the agent")
@click.option("--timeout", default=90.0, show_default=True,
              help="Seconds to wait for the engine to answer")
def spawn_cmd(kind: str, task_id: str | None, model: str, timeout: float):
    """Launch an agent via the workspace launch script.

    The session is named KIND-TASK_ID, or KIND-<phonetic word> when no
    task is given.
    """
    command = {"command": "spawn", "agentType": kind, "model": model}
    if task_id:
        command["taskId"] = task_id
    _send(command, timeout)


@cli.command("kill")
@click.argument("identifier")
@click.option("--timeout", default=15.0, show_default=True)
def kill_cmd(identifier: str, timeout: float):
    """Stop a session (identifier, display name, or unique part of either)."""
    _send({"command": "kill", "identifier": identifier}, timeout)


@cli.command("refresh")
@click.option("--attach", is_flag=True, default=False,
              help="Open terminals for newly discovered sessions")
@click.option("--timeout", default=15.0, show_default=True)
def refresh_cmd(attach: bool, timeout: float):
    """Reconcile the running engine against live tmux sessions."""
    _send({"command": "refresh", "attach": attach}, timeout)
