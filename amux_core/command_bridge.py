"""File-based command RPC.

External tools drop JSON files into the command directory::

    {"command": "spawn", "agentType": "factory", "taskId": "TC-001", "model": "opus"}

Every poll processes each pending ``*.json`` file: the matching handler
runs, its text reply is written to ``<file>.response`` and the command
file is deleted.  Files that are not valid JSON objects are renamed to
``<file>.bad`` so they are not retried on every poll.
"""

import asyncio
import json
from pathlib import Path
from typing import Awaitable, Callable

from amux_core.paths import configure_logger

_log = configure_logger("amux.command_bridge")

DEFAULT_INTERVAL = 2.0

Handler = Callable[[dict], Awaitable[str]]


def pending_commands(directory: Path) -> list[Path]:
    """Command files waiting in *directory*, oldest first."""
    try:
        entries = list(directory.iterdir())
    except OSError:
        return []
    files = []
    for path in entries:
        if path.suffix != ".json" or path.name.endswith(".response.json"):
            continue
        if path.name.startswith("."):
            continue  # half-written by a client
        try:
            files.append((path.stat().st_mtime, path.name, path))
        except FileNotFoundError:
            continue
    return [p for _, _, p in sorted(files)]


class CommandBridge:
    """Polls a directory for command files and dispatches them to handlers."""

    def __init__(self, directory: Path, handlers: dict[str, Handler] | None = None,
                 interval: float = DEFAULT_INTERVAL) -> None:
        self.directory = Path(directory)
        self.handlers: dict[str, Handler] = dict(handlers or {})
        self.interval = interval
        self._task: asyncio.Task | None = None

    def register(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is not None:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        self._task = asyncio.get_running_loop().create_task(self._poll_loop())
        _log.info("command_bridge: polling %s every %ss", self.directory, self.interval)

    def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> int:
        """Process every pending command file.  Returns how many were handled."""
        handled = 0
        for path in pending_commands(self.directory):
            if await self.process(path):
                handled += 1
        return handled

    async def process(self, path: Path) -> bool:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            _log.debug("command_bridge: cannot read %s yet: %s", path.name, e)
            return False
        try:
            command = json.loads(text)
            if not isinstance(command, dict):
                raise ValueError(f"expected an object, got {type(command).__name__}")
        except ValueError as e:
            bad = path.with_name(path.name + ".bad")
            _log.warning("command_bridge: invalid command file %s (%s), moved to %s",
                         path.name, e, bad.name)
            path.replace(bad)
            return False

        name = command.get("command")
        response = await self.dispatch(name, command)
        response_path = path.with_name(path.name + ".response")
        response_path.write_text(response, encoding="utf-8")
        path.unlink(missing_ok=True)
        _log.info("command_bridge: %s -> %s", name, response)
        return True

    async def dispatch(self, name, command: dict) -> str:
        handler = self.handlers.get(name) if isinstance(name, str) else None
        if handler is None:
            return f"Unknown command: {name}"
        try:
            return await handler(command)
        except Exception as e:
            _log.exception("command_bridge: %s failed", name)
            return f"Failed to {name.replace('_', ' ')}: {e}"
