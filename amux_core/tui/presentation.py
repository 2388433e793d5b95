"""Presentation adapter between the registry and the dashboard.

Status items are SessionRow widgets.  A terminal is a background tmux
window in the dashboard's own tmux session running ``tmux attach`` for
the agent session; its window name follows the record's terminal title.
"""

from amux_core import tmux
from amux_core.paths import configure_logger
from amux_core.tui.widgets import SessionRow

_log = configure_logger("amux.tui.presentation")

_SEVERITY = {"info": "information", "warning": "warning", "error": "error"}


class TuiPresentation:
    def __init__(self, app) -> None:
        self.app = app
        self.rows: dict[str, SessionRow] = {}
        self._titles: dict[str, str] = {}
        self._warned_no_tmux = False

    def create(self, record, with_terminal: bool):
        row = SessionRow(record)
        self.rows[record.identifier] = row
        self.app.mount_row(row)
        if not with_terminal:
            return None
        return self._open_terminal(record)

    def _open_terminal(self, record):
        host = self.app.host_session
        if not host:
            if not self._warned_no_tmux:
                self._warned_no_tmux = True
                self.notify("Terminals need the dashboard to run inside tmux", "warning")
            return None
        window_id = tmux.open_attach_window(host, record.identifier, record.title)
        self._titles[record.identifier] = record.title
        _log.info("tui: opened window %s for %s", window_id, record.identifier)
        return window_id

    def update(self, record) -> None:
        row = self.rows.get(record.identifier)
        if row is not None:
            row.show_record(record)
        if record.handle is not None and self._titles.get(record.identifier) != record.title:
            tmux.rename_window(record.handle, record.title)
            self._titles[record.identifier] = record.title
        self.app.refresh_status()

    def dispose(self, record) -> None:
        row = self.rows.pop(record.identifier, None)
        if row is not None:
            self.app.unmount_row(row)
        self._titles.pop(record.identifier, None)
        if record.handle is not None and tmux.window_exists(record.handle):
            tmux.kill_window(record.handle)
        self.app.refresh_status()

    def notify(self, message: str, level: str = "info") -> None:
        self.app.log_message(message)
        self.app.notify(message, severity=_SEVERITY.get(level, "information"))
