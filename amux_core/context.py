"""The engine: one object owning every piece of amux's runtime state.

AgentContext is built once per process with a presentation and torn
down with ``close()``.  It wires the pieces together::

    state file -> ChangeWatcher -> queue -> diff -> SessionRegistry -> presentation
    tmux + state file -> GroundTruthReconciler -> SessionRegistry

Applying a diff batch and running a reconciliation pass both hold
``self.lock``, so they never interleave; overlapping requests wait.
"""

import asyncio
from pathlib import Path

from amux_core import tmux
from amux_core.agents import (
    LifecycleState,
    TERMINAL_STATES,
    parse_kind,
    parse_model,
)
from amux_core.command_bridge import CommandBridge
from amux_core.config import Settings
from amux_core.diff import diff
from amux_core.identity import ResolvedIdentity, classify_remainder, resolve, validate_identifier
from amux_core.launcher import plan_launch, run_launch
from amux_core.monitor import SessionMonitor
from amux_core.paths import configure_logger
from amux_core.reconciler import GroundTruthReconciler, ReconcileResult
from amux_core.registry import SessionRegistry, TransitionSource
from amux_core.state_store import (
    SessionStateStore,
    StateFileError,
    StateSnapshot,
    write_session_state,
)
from amux_core.watcher import ChangeWatcher

_log = configure_logger("amux.context")


class AgentContext:
    def __init__(self, settings: Settings, presentation, *, list_alive=None,
                 has_session=None, observer_factory=None) -> None:
        self.settings = settings
        self.presentation = presentation
        self.lock = asyncio.Lock()
        self.store = SessionStateStore(settings.state_file)
        self.registry = SessionRegistry(presentation)
        watcher_kwargs = {"observer_factory": observer_factory} if observer_factory else {}
        self.watcher = ChangeWatcher(self.store, debounce=settings.debounce_seconds,
                                     poll_interval=settings.poll_interval, **watcher_kwargs)
        self.reconciler = GroundTruthReconciler(self.registry, list_alive=list_alive,
                                                timeout=settings.tmux_timeout)
        self.monitor = SessionMonitor(self.registry, settings.hooks_dir, self.lock,
                                      interval=settings.monitor_interval,
                                      max_lifetime=settings.monitor_max_lifetime,
                                      has_session=has_session, timeout=settings.tmux_timeout)
        self.bridge = CommandBridge(settings.command_dir, interval=settings.command_poll_interval)
        self.bridge.register("spawn", self._cmd_spawn)
        self.bridge.register("kill", self._cmd_kill)
        self.bridge.register("register_current_terminal", self._cmd_register_current_terminal)
        self.bridge.register("create_terminal", self._cmd_create_terminal)
        self.bridge.register("update_state", self._cmd_update_state)
        self.bridge.register("refresh", self._cmd_refresh)

        self._previous: StateSnapshot | None = None
        self._queue: asyncio.Queue | None = None
        self._consumer: asyncio.Task | None = None
        self._unsubscribe = None
        self._closed: asyncio.Event | None = None
        self._started = False

    # -- lifecycle -------------------------------------------------------

    async def start(self, attach: bool = False, bridge: bool = True) -> ReconcileResult | None:
        """Load the state file, reconcile against tmux and begin watching.

        Returns the initial reconciliation result, or None when tmux could
        not be queried (the registry then starts empty and fills from the
        state file on the next change or refresh).
        """
        if self._started:
            return None
        self._started = True
        self._closed = asyncio.Event()
        self._queue = asyncio.Queue()
        try:
            self.store.refresh()
        except StateFileError as e:
            self.presentation.notify(f"State file unreadable: {e}", "warning")

        result = None
        try:
            result = await self.reconcile(attach=attach)
        except tmux.TmuxQueryError as e:
            _log.warning("context: initial reconciliation failed: %s", e)
            self.presentation.notify(f"tmux unavailable: {e}", "warning")

        self._unsubscribe = self.watcher.subscribe(self._on_watch_event)
        self.watcher.start()
        self._consumer = asyncio.get_running_loop().create_task(self._consume())
        if bridge:
            self.bridge.start()
        _log.info("context: started (state file %s)", self.settings.state_file)
        return result

    async def serve(self, attach: bool = False) -> None:
        """Start and run until close() is called."""
        await self.start(attach=attach)
        await self.wait_closed()

    async def wait_closed(self) -> None:
        if self._closed is not None:
            await self._closed.wait()

    def close(self) -> None:
        """Tear everything down.  Idempotent."""
        if not self._started:
            return
        self._started = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.watcher.close()
        self.bridge.close()
        self.monitor.close()
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        self.registry.clear()
        if self._closed is not None:
            self._closed.set()
        _log.info("context: closed")

    # -- steady-state updates -------------------------------------------

    def _on_watch_event(self, result) -> None:
        if self._queue is not None:
            self._queue.put_nowait(result)

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            if isinstance(item, StateFileError):
                continue  # logged by the store; last good snapshot stays
            try:
                await self.apply_snapshot(item)
            except Exception:
                _log.exception("context: applying snapshot failed")

    async def apply_snapshot(self, snapshot: StateSnapshot) -> None:
        """Apply the diff between the previous snapshot and *snapshot*."""
        async with self.lock:
            changes = diff(self._previous, snapshot, self.registry.has_live_terminal)
            if changes:
                _log.debug("context: applying %d changes", len(changes))
            self.registry.apply(changes, snapshot)
            self._previous = snapshot
            self._sync_monitors()

    async def reconcile(self, attach: bool = False) -> ReconcileResult:
        """Run one reconciliation pass against the retained snapshot.

        Raises tmux.TmuxQueryError when tmux cannot be queried; the
        registry is left as it was.
        """
        async with self.lock:
            snapshot = self.store.current_snapshot()
            result = await self.reconciler.reconcile(snapshot, attach=attach)
            self._previous = snapshot
            self._sync_monitors()
            return result

    def _sync_monitors(self) -> None:
        """Monitor every local or terminal-owning record that is still live."""
        wanted = set()
        for record in self.registry.records():
            if record.lifecycle_state in TERMINAL_STATES:
                continue
            if record.local or record.handle is not None:
                wanted.add(record.identifier)
        for identifier in self.monitor.monitored():
            if identifier not in wanted:
                self.monitor.stop(identifier)
        for identifier in wanted:
            self.monitor.start(identifier)

    # -- user operations -------------------------------------------------

    async def attach(self, identifier: str) -> bool:
        """Open a terminal for a tracked session."""
        async with self.lock:
            attached = self.registry.attach_terminal(identifier)
            self._sync_monitors()
        return attached

    async def stop_session(self, identifier: str,
                           source: TransitionSource = TransitionSource.USER) -> bool:
        """Mark a session stopped and kill its tmux session."""
        record = self.registry.find_by_identifier(identifier)
        if record is None:
            return False
        async with self.lock:
            self.registry.transition(record.identifier, LifecycleState.STOPPED, source)
            self.monitor.stop(record.identifier)
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, tmux.kill_session, record.identifier)
        return True

    async def spawn(self, agent_type: str, task_id: str | None = None,
                    model: str | None = None):
        """Launch a new agent session and track it with a terminal."""
        kind = parse_kind(agent_type)
        if kind is None:
            raise ValueError(f"Invalid agent type: {agent_type}")
        tier = parse_model(model)
        try:
            alive = await self.reconciler.list_alive()
        except tmux.TmuxQueryError:
            alive = set()
        taken = set(self.registry.identifiers()) | alive
        plan = plan_launch(self.settings.launch_script, kind, task_id or None, tier, taken)
        await run_launch(plan, cwd=self.settings.workspace)
        async with self.lock:
            self.registry.register_local(plan.session_name, plan.identity,
                                         LifecycleState.IDLE, with_terminal=True,
                                         origin="spawn")
            self._sync_monitors()
        return plan

    # -- command bridge handlers -----------------------------------------

    @staticmethod
    def _identity_from_command(command: dict, session: str) -> ResolvedIdentity | None:
        kind = parse_kind(command.get("agentType"))
        if kind is None:
            return resolve(session, command)
        task_id = command.get("taskId") or None
        phonetic = None
        if task_id is None:
            parsed = resolve(session)
            phonetic = parsed.phonetic_token if parsed else None
        else:
            task, phon, suffix = classify_remainder(task_id)
            task_id, phonetic = task or suffix, phon
        return ResolvedIdentity(agent_kind=kind, model_tier=parse_model(command.get("model")),
                                task_id=task_id, phonetic_token=phonetic)

    async def _cmd_spawn(self, command: dict) -> str:
        plan = await self.spawn(command.get("agentType"), command.get("taskId"),
                                command.get("model"))
        return f"Agent spawned: {plan.display_name} ({plan.session_name})"

    async def _cmd_kill(self, command: dict) -> str:
        identifier = command.get("identifier")
        if not identifier or not await self.stop_session(identifier, TransitionSource.COMMAND):
            return f"Agent {identifier} not found"
        return f"Agent {identifier} terminated successfully"

    async def _cmd_register_current_terminal(self, command: dict) -> str:
        session = validate_identifier(command.get("sessionName"))
        existing = self.registry.get(session)
        if existing is not None and existing.local:
            return f"Terminal already registered as agent: {session}"
        identity = self._identity_from_command(command, session)
        async with self.lock:
            record = self.registry.register_local(session, identity, LifecycleState.IDLE,
                                                  with_terminal=False, origin="register")
            self._sync_monitors()
        return f"Registered current terminal as agent: {session} ({record.display_name})"

    async def _cmd_create_terminal(self, command: dict) -> str:
        session = validate_identifier(command.get("sessionName"))
        identity = self._identity_from_command(command, session)
        async with self.lock:
            record = self.registry.register_local(session, identity, LifecycleState.IDLE,
                                                  with_terminal=True, origin="create_terminal")
            self._sync_monitors()
        name = command.get("name") or record.title
        if record.handle is None:
            return f"Session tracked without terminal: {name} ({session})"
        return f"Terminal created and attached: {name} ({session})"

    async def _cmd_update_state(self, command: dict) -> str:
        identifier = validate_identifier(command.get("identifier"))
        raw = str(command.get("state", "")).strip().lower()
        try:
            state = LifecycleState(raw)
        except ValueError:
            raise ValueError(f"invalid state {raw!r}") from None
        path = Path(self.settings.state_file)
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, write_session_state, path, identifier, state)
        return f"State of {identifier} set to {state.value}"

    async def _cmd_refresh(self, command: dict) -> str:
        result = await self.reconcile(attach=bool(command.get("attach")))
        return f"Reconciled: {result.summary()}"
