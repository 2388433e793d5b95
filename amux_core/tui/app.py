"""Textual TUI App for amux."""

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.timer import Timer

from amux_core import tmux as tmux_mod
from amux_core.config import Settings
from amux_core.context import AgentContext
from amux_core.paths import configure_logger
from amux_core.tui.presentation import TuiPresentation
from amux_core.tui.widgets import LogLine, SessionList, SessionRow, StatusBar

_log = configure_logger("amux.tui")


class AgentMonitorApp(App):
    """Live dashboard of agent sessions."""

    TITLE = "amux: agent sessions"

    CSS = """
    Screen {
        layout: vertical;
    }
    StatusBar {
        height: 1;
        background: $surface;
        color: $text;
        padding: 0 1;
        margin-top: 1;
    }
    LogLine {
        height: 1;
        background: $surface;
        color: $text-muted;
        padding: 0 1;
        margin-bottom: 1;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh", show=True),
        Binding("a", "attach", "Attach", show=True),
        Binding("k", "stop", "Stop", show=True),
        Binding("up", "cursor(-1)", "Up", show=False),
        Binding("down", "cursor(1)", "Down", show=False),
    ]

    def __init__(self, settings: Settings):
        super().__init__()
        self.settings = settings
        self.host_session: str | None = None
        self.presentation = TuiPresentation(self)
        self.context = AgentContext(settings, self.presentation)
        self._selected: str | None = None
        self._status_timer: Timer | None = None

    def compose(self) -> ComposeResult:
        yield StatusBar(id="status-bar")
        yield SessionList(id="session-list")
        yield LogLine(id="log-line")

    def on_mount(self) -> None:
        _log.info("TUI mounted")
        if tmux_mod.in_tmux():
            try:
                self.host_session = tmux_mod.get_session_name() or None
            except tmux_mod.TmuxQueryError as e:
                _log.warning("TUI: host session lookup failed: %s", e)
        self.refresh_status()
        self.run_worker(self._start_engine(), exclusive=True, group="engine")
        # The watcher may fall back to polling after startup.
        self._status_timer = self.set_interval(5, self.refresh_status)

    async def _start_engine(self) -> None:
        result = await self.context.start()
        if result is not None:
            self.log_message(f"Tracking {len(self.context.registry)} sessions ({result.summary()})")
        self._ensure_selection()

    def on_unmount(self) -> None:
        self.context.close()

    # --- presentation hooks ---

    def mount_row(self, row: SessionRow) -> None:
        self.query_one("#session-list", SessionList).mount(row)
        self._ensure_selection()

    def unmount_row(self, row: SessionRow) -> None:
        if self._selected == row.identifier:
            self._selected = None
        row.remove()
        self.call_after_refresh(self._ensure_selection)

    def refresh_status(self) -> None:
        try:
            bar = self.query_one("#status-bar", StatusBar)
        except Exception:
            return
        bar.update_status(self.context.registry.records(), str(self.settings.state_file),
                          polling=self.context.watcher.polling)

    def log_message(self, msg: str) -> None:
        """Show a message in the log line."""
        try:
            log = self.query_one("#log-line", LogLine)
            log.update(f" {msg}")
        except Exception:
            pass

    # --- selection ---

    def _row_ids(self) -> list[str]:
        return [i for i in self.presentation.rows if i in self.context.registry]

    def _ensure_selection(self) -> None:
        ids = self._row_ids()
        if self._selected not in ids:
            self._selected = ids[0] if ids else None
        self._highlight()

    def _highlight(self) -> None:
        for identifier, row in self.presentation.rows.items():
            row.set_class(identifier == self._selected, "-selected")

    def action_cursor(self, delta: int) -> None:
        ids = self._row_ids()
        if not ids:
            return
        index = ids.index(self._selected) if self._selected in ids else 0
        self._selected = ids[(index + delta) % len(ids)]
        self._highlight()
        row = self.presentation.rows.get(self._selected)
        if row is not None:
            row.scroll_visible()

    # --- actions ---

    def action_refresh(self) -> None:
        self.run_worker(self._reconcile(attach=False), group="reconcile")

    def action_attach(self) -> None:
        """Open (or switch to) the selected session's terminal.

        With nothing selected, reconcile and open terminals for every
        newly discovered session.
        """
        record = self.context.registry.get(self._selected) if self._selected else None
        if record is None:
            self.run_worker(self._reconcile(attach=True), group="reconcile")
            return
        try:
            if record.handle is not None:
                if not tmux_mod.select_window(record.handle):
                    self.log_message(f"Window for {record.display_name} is gone")
                return
            if not tmux_mod.session_exists(record.identifier):
                self.log_message(f"{record.display_name} is no longer running")
                return
        except tmux_mod.TmuxQueryError as e:
            self.log_message(f"[red]tmux unavailable:[/red] {e}")
            return
        self.run_worker(self._attach(record.identifier), group="attach")

    def action_stop(self) -> None:
        if not self._selected:
            self.log_message("No session selected")
            return
        self.run_worker(self._stop(self._selected), group="stop")

    async def _reconcile(self, attach: bool) -> None:
        self.log_message("Reconciling with tmux...")
        try:
            result = await self.context.reconcile(attach=attach)
        except tmux_mod.TmuxQueryError as e:
            self.log_message(f"[red]tmux unavailable:[/red] {e}")
            return
        self.log_message(f"Reconciled: {result.summary()}")
        self._ensure_selection()

    async def _attach(self, identifier: str) -> None:
        if await self.context.attach(identifier):
            self.log_message(f"Attached {identifier}")
        else:
            self.log_message(f"Could not open a terminal for {identifier}")

    async def _stop(self, identifier: str) -> None:
        try:
            stopped = await self.context.stop_session(identifier)
        except tmux_mod.TmuxQueryError as e:
            self.log_message(f"[red]Could not kill {identifier}:[/red] {e}")
            return
        if stopped:
            self.log_message(f"Stopped {identifier}")
        else:
            self.log_message(f"{identifier} is not tracked")
