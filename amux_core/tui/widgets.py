"""Widgets for the amux dashboard."""

from collections import Counter

from rich.markup import escape
from textual.containers import VerticalScroll
from textual.widgets import Static

from amux_core.agents import (
    KIND_STYLES,
    LifecycleState,
    STATE_COLORS,
    STATE_ICONS,
    HealthState,
    kind_emoji,
)
from amux_core.presentation import tooltip_text


class StatusBar(Static):
    """Top status bar: session counts per state and the watched file."""

    def update_status(self, records, state_file: str, polling: bool = False) -> None:
        counts = Counter(r.display_state for r in records)
        parts = [f"{STATE_ICONS[s]} {counts[s]}" for s in LifecycleState if counts[s]]
        count_display = "  ".join(parts) if parts else "[dim]no sessions[/dim]"
        mode = "[yellow]polling[/yellow]" if polling else "[green]watching[/green]"
        self.update(f" amux  [bold]{len(records)}[/bold] sessions    {count_display}"
                    f"    {mode} [cyan]{escape(state_file)}[/cyan]")


class SessionRow(Static):
    """One tracked session: the status item for a record."""

    DEFAULT_CSS = """
    SessionRow {
        height: 1;
        padding: 0 1;
    }
    SessionRow.-selected {
        background: $accent 30%;
    }
    SessionRow.-warning {
        color: $warning;
    }
    SessionRow.-prominent {
        color: $primary-lighten-2;
        text-style: bold;
    }
    SessionRow.-error {
        color: $error;
    }
    """

    def __init__(self, record, **kwargs):
        super().__init__(self.render_markup(record), **kwargs)
        self.identifier = record.identifier
        self._apply_classes(record)

    @staticmethod
    def render_markup(record) -> str:
        if record.agent_kind is not None:
            kind_color = KIND_STYLES[record.agent_kind].color
            name = f"[{kind_color}]{escape(record.display_name)}[/{kind_color}]"
        else:
            name = escape(record.display_name)
        health = ""
        if record.health_state is not HealthState.HEALTHY:
            health = f"  [reverse] {record.health_state.value} [/reverse]"
        terminal = "  [dim]⧉[/dim]" if record.handle is not None else ""
        return (
            f"{kind_emoji(record.agent_kind)} {STATE_ICONS[record.display_state]} "
            f"{name}  [dim]{escape(record.identifier)}[/dim]  {record.display_state.value}"
            f"{health}{terminal}"
        )

    def _apply_classes(self, record) -> None:
        color = STATE_COLORS[record.display_state]
        for cls in ("-warning", "-prominent", "-error"):
            self.set_class(cls == f"-{color}", cls)
        self.tooltip = tooltip_text(record)

    def show_record(self, record) -> None:
        self._apply_classes(record)
        self.update(self.render_markup(record))


class SessionList(VerticalScroll, can_focus=False):
    """Scrollable list of session rows."""

    DEFAULT_CSS = """
    SessionList {
        height: 1fr;
        scrollbar-size-vertical: 1;
    }
    """


class LogLine(Static):
    """Single-line log output for notifications."""
    pass
