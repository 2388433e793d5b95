"""Per-session monitoring of hook trigger files and process liveness.

Hooks running inside an agent session report state changes by writing a
trigger file::

    <hooks>/state_updates/<identifier>.trigger     state:timestamp[:displayName]
    <hooks>/state_updates/<displayName>.trigger    state:timestamp
    <hooks>/<identifier>.stop                      STOP:timestamp:session[:state]

Each poll consumes at most one file, checked in that order, and deletes
it.  When no file is pending the monitor asks tmux whether the session
still exists; a missing session is marked terminated.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

from amux_core import tmux
from amux_core.agents import LifecycleState, TERMINAL_STATES
from amux_core.identity import is_valid_identifier, validate_identifier
from amux_core.paths import configure_logger
from amux_core.registry import SessionRegistry, TransitionSource

_log = configure_logger("amux.monitor")

TRIGGER_STATES = frozenset({
    LifecycleState.IDLE,
    LifecycleState.BUSY,
    LifecycleState.DONE,
    LifecycleState.ERROR,
    LifecycleState.UNKNOWN,
    LifecycleState.TERMINATED,
})

DEFAULT_INTERVAL = 3.0
DEFAULT_MAX_LIFETIME = 2 * 60 * 60


def parse_trigger(content: str) -> tuple[LifecycleState | None, str | None, str | None]:
    """Parse ``state:timestamp[:displayName]``.

    Returns (state, timestamp, display_name); state is None when the file
    names a state hooks may not set.  A display name is only read from
    exactly three fields; with more, the colons belong to the timestamp.
    """
    parts = content.strip().split(":")
    try:
        state = LifecycleState(parts[0].strip().lower())
    except ValueError:
        state = None
    if state not in TRIGGER_STATES:
        state = None
    display = None
    if len(parts) == 3:
        display = parts[2].strip() or None
        timestamp = parts[1] or None
    else:
        timestamp = ":".join(parts[1:]) or None
    return state, timestamp, display


def parse_stop_file(content: str) -> LifecycleState:
    """Parse ``STOP:timestamp:session[:state]``; missing or bad state means done."""
    parts = content.strip().split(":")
    if len(parts) >= 4:
        try:
            state = LifecycleState(parts[-1].strip().lower())
        except ValueError:
            return LifecycleState.DONE
        if state in TRIGGER_STATES:
            return state
    return LifecycleState.DONE


def trigger_path(hooks_dir: Path, name: str) -> Path:
    return Path(hooks_dir) / "state_updates" / f"{name}.trigger"


def stop_path(hooks_dir: Path, identifier: str) -> Path:
    return Path(hooks_dir) / f"{identifier}.stop"


def write_trigger(hooks_dir: Path, identifier: str, state: LifecycleState,
                  display_name: str | None = None) -> Path:
    """Write a trigger file the way agent hooks do.  Returns its path."""
    validate_identifier(identifier)
    if state not in TRIGGER_STATES:
        raise ValueError(f"state {state.value!r} cannot be set through a trigger file")
    path = trigger_path(hooks_dir, identifier)
    path.parent.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    content = f"{state.value}:{stamp}"
    if display_name:
        content += f":{display_name}"
    path.write_text(content + "\n")
    return path


def _consume(path: Path) -> str | None:
    """Read and delete *path*; None if it is absent or vanished mid-read."""
    try:
        content = path.read_text()
    except OSError:
        return None
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    return content


class SessionMonitor:
    """Owns one polling task per monitored session."""

    def __init__(
        self,
        registry: SessionRegistry,
        hooks_dir: Path,
        lock: asyncio.Lock,
        interval: float = DEFAULT_INTERVAL,
        max_lifetime: float = DEFAULT_MAX_LIFETIME,
        has_session: Callable[[str], Awaitable[bool]] | None = None,
        timeout: float = tmux.DEFAULT_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.hooks_dir = Path(hooks_dir)
        self.lock = lock
        self.interval = interval
        self.max_lifetime = max_lifetime
        self.timeout = timeout
        self._has_session = has_session or self._tmux_has_session
        self._tasks: dict[str, asyncio.Task] = {}
        self._expired: set[str] = set()

    async def _tmux_has_session(self, identifier: str) -> bool:
        return await tmux.has_session_async(identifier, timeout=self.timeout)

    def monitored(self) -> list[str]:
        return list(self._tasks)

    def is_monitoring(self, identifier: str) -> bool:
        return identifier in self._tasks

    def start(self, identifier: str) -> None:
        """Begin monitoring *identifier*.

        No-op if it is already monitored or its monitor ran for the full
        lifetime.
        """
        if identifier in self._tasks or identifier in self._expired:
            return
        task = asyncio.get_running_loop().create_task(self._run(identifier))
        self._tasks[identifier] = task
        task.add_done_callback(lambda t, i=identifier: self._forget(i, t))
        _log.debug("monitor: started %s", identifier)

    def _forget(self, identifier: str, task: asyncio.Task) -> None:
        if self._tasks.get(identifier) is task:
            del self._tasks[identifier]
        if not task.cancelled() and task.exception() is not None:
            _log.error("monitor: task for %s failed: %r", identifier, task.exception())

    def stop(self, identifier: str) -> None:
        task = self._tasks.pop(identifier, None)
        if task is not None:
            task.cancel()

    def close(self) -> None:
        for identifier in list(self._tasks):
            self.stop(identifier)

    async def _run(self, identifier: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_lifetime
        while loop.time() < deadline:
            await asyncio.sleep(self.interval)
            if not await self.check_once(identifier):
                _log.debug("monitor: finished %s", identifier)
                return
        self._expired.add(identifier)
        _log.info("monitor: %s reached maximum lifetime", identifier)

    async def check_once(self, identifier: str) -> bool:
        """Run one poll for *identifier*.  Returns False when monitoring should stop."""
        record = self.registry.get(identifier)
        if record is None or record.lifecycle_state in TERMINAL_STATES:
            return False

        pending = self._pending_signal(identifier, record.display_name)
        if pending is not None:
            state, display = pending
            async with self.lock:
                if display:
                    self.registry.rename(identifier, display)
                if state is not None:
                    self.registry.transition(identifier, state, TransitionSource.TRIGGER_FILE)
            return state not in TERMINAL_STATES

        try:
            alive = await self._has_session(identifier)
        except tmux.TmuxQueryError as e:
            _log.debug("monitor: liveness check for %s failed: %s", identifier, e)
            return True
        if alive:
            return True
        async with self.lock:
            self.registry.transition(identifier, LifecycleState.TERMINATED,
                                     TransitionSource.PROCESS_CHECK)
        return False

    def _pending_signal(self, identifier: str,
                        display_name: str) -> tuple[LifecycleState | None, str | None] | None:
        """Consume the first pending trigger or stop file, if any."""
        candidates = [trigger_path(self.hooks_dir, identifier)]
        if display_name and display_name != identifier and is_valid_identifier(display_name):
            candidates.append(trigger_path(self.hooks_dir, display_name))
        for path in candidates:
            content = _consume(path)
            if content is None:
                continue
            state, _timestamp, display = parse_trigger(content)
            if state is None:
                _log.warning("monitor: ignoring trigger %s with content %r", path.name, content.strip())
            else:
                _log.info("monitor: trigger %s -> %s", path.name, state.value)
            # Display-name triggers are older and carry no display field.
            return state, display if path == candidates[0] else None
        content = _consume(stop_path(self.hooks_dir, identifier))
        if content is not None:
            state = parse_stop_file(content)
            _log.info("monitor: stop file for %s -> %s", identifier, state.value)
            return state, None
        return None
