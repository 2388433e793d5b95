"""Rebuild the registry from tmux ground truth and the state file.

tmux is authoritative for existence: a state-file entry whose session is
not alive is dropped, never created.  Entries whose health is ``dead``
are dropped too.  Records in an absorbing state lose their presentation
on every pass; if their session still qualifies they come back as fresh
records.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable

from amux_core import tmux
from amux_core.agents import HealthState, TERMINAL_STATES
from amux_core.identity import is_valid_identifier, resolve
from amux_core.paths import configure_logger
from amux_core.registry import SessionRegistry
from amux_core.state_store import StateSnapshot, health_of

_log = configure_logger("amux.reconciler")


@dataclass
class ReconcileResult:
    kept: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return f"kept {len(self.kept)}, created {len(self.created)}, removed {len(self.removed)}"


class GroundTruthReconciler:
    def __init__(self, registry: SessionRegistry,
                 list_alive: Callable[[], Awaitable[set[str]]] | None = None,
                 timeout: float = tmux.DEFAULT_TIMEOUT) -> None:
        self.registry = registry
        self.timeout = timeout
        self._list_alive = list_alive or self._list_tmux_sessions

    async def _list_tmux_sessions(self) -> set[str]:
        return await tmux.list_sessions_async(timeout=self.timeout)

    async def list_alive(self) -> set[str]:
        return await self._list_alive()

    def survivors(self, snapshot: StateSnapshot, alive: set[str]) -> list[str]:
        """State-file identifiers that are valid, alive and not dead, in file order."""
        keep = []
        for identifier, payload in snapshot.sessions.items():
            if not is_valid_identifier(identifier):
                _log.warning("reconcile: rejecting unsafe identifier %r", identifier)
                continue
            if identifier not in alive:
                _log.debug("reconcile: %s listed in state file but not alive", identifier)
                continue
            if health_of(payload) is HealthState.DEAD:
                _log.debug("reconcile: %s reported dead", identifier)
                continue
            keep.append(identifier)
        return keep

    async def reconcile(self, snapshot: StateSnapshot, attach: bool = False) -> ReconcileResult:
        """Run one pass.

        Raises tmux.TmuxQueryError (registry untouched) when tmux cannot be
        queried.  With *attach*, newly created records get a terminal.
        """
        alive = await self.list_alive()
        wanted = self.survivors(snapshot, alive)
        wanted_set = set(wanted)
        # Sessions amux spawned or attached itself survive while tmux has them.
        for record in self.registry.records():
            if record.local and record.identifier in alive and record.identifier not in wanted_set:
                wanted.append(record.identifier)
                wanted_set.add(record.identifier)

        result = ReconcileResult()
        for record in self.registry.records():
            if record.identifier not in wanted_set or record.lifecycle_state in TERMINAL_STATES:
                self.registry.remove(record.identifier)
                result.removed.append(record.identifier)

        for identifier in wanted:
            payload = snapshot.get(identifier)
            if identifier in self.registry:
                if payload is not None:
                    self.registry.upsert(identifier, resolve(identifier, payload), payload)
                result.kept.append(identifier)
                continue
            if payload is None:
                # Local record dropped for being in an absorbing state.
                continue
            self.registry.upsert(identifier, resolve(identifier, payload), payload,
                                 with_terminal=attach)
            result.created.append(identifier)

        _log.info("reconcile: %d alive, %s", len(alive), result.summary())
        return result
