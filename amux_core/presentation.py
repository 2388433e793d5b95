"""Presentation sinks fed by the session registry.

A presentation shows one status item per tracked session and, for
sessions that were attached, a terminal.  The registry only talks to the
Presentation protocol; the Textual dashboard (amux_core.tui) and the
headless ConsolePresentation below are the two implementations.
"""

from typing import Protocol

import click

from amux_core.agents import LifecycleState, HealthState, STATE_ICONS, STATE_INDICATORS, kind_emoji


class Presentation(Protocol):
    """Interface the registry drives.

    ``create`` returns the terminal handle for the record (or None when
    no terminal was requested or none could be opened).  ``update`` and
    ``dispose`` receive the record, whose ``handle`` is whatever
    ``create`` returned.
    """

    def create(self, record, with_terminal: bool): ...

    def update(self, record) -> None: ...

    def dispose(self, record) -> None: ...

    def notify(self, message: str, level: str = "info") -> None: ...


def notification_message(record, state: LifecycleState) -> str:
    """``Agent session 'FA-S-001' is done (interrupted)``."""
    message = f"Agent session '{record.display_name}' is {state.value}"
    if record.health_state is not HealthState.HEALTHY:
        message += f" ({record.health_state.value})"
    return message


def notification_level(state: LifecycleState) -> str:
    return "info" if state is LifecycleState.DONE else "error"


def status_text(record) -> str:
    """Short status text: emoji plus display name."""
    return f"{kind_emoji(record.agent_kind)} {record.display_name}"


def tooltip_text(record) -> str:
    kind = record.agent_kind.value if record.agent_kind else "other"
    lines = [
        f"Agent: {kind}",
        f"Session: {record.identifier}",
        f"State: {record.display_state.value}",
        f"Health: {record.health_state.value}",
    ]
    if record.health_issues:
        lines.append(f"Issues: {record.health_issues}")
    return "\n".join(lines)


class ConsolePresentation:
    """Headless presentation: echoes status changes and notifications.

    Used by ``amux monitor``.  Terminals cannot be opened without a
    display, so ``create`` never returns a handle.
    """

    _LEVEL_COLORS = {"info": "green", "warning": "yellow", "error": "red"}

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose
        self._last: dict[str, LifecycleState] = {}

    def create(self, record, with_terminal: bool):
        self._last[record.identifier] = record.display_state
        if self.verbose:
            click.echo(f"+ {self._line(record)}")
        return None

    def update(self, record) -> None:
        previous = self._last.get(record.identifier)
        self._last[record.identifier] = record.display_state
        if self.verbose and previous is not record.display_state:
            click.echo(f"~ {self._line(record)}")

    def dispose(self, record) -> None:
        self._last.pop(record.identifier, None)
        if self.verbose:
            click.echo(f"- {record.display_name}")

    def notify(self, message: str, level: str = "info") -> None:
        click.secho(message, fg=self._LEVEL_COLORS.get(level), err=(level == "error"))

    @staticmethod
    def _line(record) -> str:
        indicator = STATE_INDICATORS[record.display_state]
        return (f"{STATE_ICONS[record.display_state]} {status_text(record)} "
                f"[{indicator} {record.display_state.value}]")
