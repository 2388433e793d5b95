"""In-memory registry of tracked agent sessions.

The registry owns one AgentSessionRecord per tracked tmux session and
the lifecycle state machine::

    idle -> busy -> {done, error, unknown} -> idle
    any  -> terminated | stopped            (absorbing)

Leaving done/error/unknown needs an explicit signal (state file, trigger
file, bridge command, user action).  Nothing resets those states on a
timer.

Every presentation call is isolated per session: an exception is logged
and the rest of the batch proceeds.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from amux_core.agents import (
    AgentKind,
    HealthState,
    LifecycleState,
    ModelTier,
    DEFAULT_MODEL,
    NOTIFY_STATES,
    TERMINAL_STATES,
)
from amux_core.diff import ChangeKind, SessionChange
from amux_core.identity import (
    ResolvedIdentity,
    UnsafeIdentifierError,
    display_name_for,
    resolve,
    terminal_title,
    validate_identifier,
)
from amux_core.paths import configure_logger
from amux_core.presentation import notification_level, notification_message
from amux_core.state_store import StateSnapshot, health_issues, health_of, normalize_state

_log = configure_logger("amux.registry")


class TransitionSource(Enum):
    STATE_FILE = "state_file"
    TRIGGER_FILE = "trigger_file"
    COMMAND = "command"
    USER = "user"
    PROCESS_CHECK = "process_check"


# Sources allowed to move a session out of done/error/unknown.
EXPLICIT_SOURCES = frozenset({
    TransitionSource.STATE_FILE,
    TransitionSource.TRIGGER_FILE,
    TransitionSource.COMMAND,
    TransitionSource.USER,
})

SETTLED_STATES = frozenset({LifecycleState.DONE, LifecycleState.ERROR, LifecycleState.UNKNOWN})


@dataclass
class AgentSessionRecord:
    identifier: str
    agent_kind: AgentKind | None
    model_tier: ModelTier = DEFAULT_MODEL
    task_id: str | None = None
    phonetic_token: str | None = None
    lifecycle_state: LifecycleState = LifecycleState.UNKNOWN
    health_state: HealthState = HealthState.HEALTHY
    health_issues: str | None = None
    display_name: str = ""
    handle: Any = None
    origin: str | None = None
    timestamp: str | None = None
    last_payload: Any = None
    local: bool = False
    display_override: str | None = None

    @property
    def display_state(self) -> LifecycleState:
        """State shown to the user: terminated while health is dead."""
        if self.health_state is HealthState.DEAD:
            return LifecycleState.TERMINATED
        return self.lifecycle_state

    @property
    def title(self) -> str:
        return terminal_title(self.agent_kind, self.display_state, self.display_name)

    @property
    def terminal(self) -> bool:
        return self.handle is not None


def allowed_transition(current: LifecycleState, new: LifecycleState,
                       source: TransitionSource) -> bool:
    """Return True if *source* may move a session from *current* to *new*."""
    if current in TERMINAL_STATES:
        return False
    if new in TERMINAL_STATES:
        return True
    if current in SETTLED_STATES and source not in EXPLICIT_SOURCES:
        return False
    return True


class SessionRegistry:
    """Identifier → AgentSessionRecord, in insertion order."""

    def __init__(self, presentation) -> None:
        self.presentation = presentation
        self._records: dict[str, AgentSessionRecord] = {}

    # -- read access -----------------------------------------------------

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._records

    def get(self, identifier: str) -> AgentSessionRecord | None:
        return self._records.get(identifier)

    def records(self) -> list[AgentSessionRecord]:
        return list(self._records.values())

    def identifiers(self) -> list[str]:
        return list(self._records)

    def has_live_terminal(self, identifier: str) -> bool:
        record = self._records.get(identifier)
        return record is not None and record.handle is not None

    def find_by_identifier(self, token: str) -> AgentSessionRecord | None:
        """Find a record by identifier, display name, or partial match.

        Order: exact identifier, exact display name, then the record where
        either string contains the other.  An empty token matches nothing,
        and a partial match shared by several records is ambiguous (None).
        """
        if not token:
            return None
        if token in self._records:
            return self._records[token]
        for record in self._records.values():
            if record.display_name == token:
                return record
        partial = [
            record for record in self._records.values()
            if token in record.identifier or record.identifier in token
            or (record.display_name and (token in record.display_name
                                         or record.display_name in token))
        ]
        if len(partial) > 1:
            _log.info("registry: %r matches %d sessions", token, len(partial))
            return None
        return partial[0] if partial else None

    # -- mutation --------------------------------------------------------

    def upsert(self, identifier: str, identity: ResolvedIdentity | None, payload,
               with_terminal: bool = False, local: bool = False) -> LifecycleState:
        """Create or update the record for *identifier* from a state payload.

        The record keeps the payload's nominal state; dead health only
        changes what is displayed.  Returns the displayed state.  Raises
        UnsafeIdentifierError for invalid identifiers.
        """
        validate_identifier(identifier)
        new_state = normalize_state(payload)
        record = self._records.get(identifier)
        if record is None:
            record = self._new_record(identifier, identity, payload, new_state)
            record.local = local
            self._records[identifier] = record
            _log.info("registry: tracking %s as %s (%s)", identifier,
                      record.display_name, new_state.value)
            record.handle = self._call(record, "create", record, with_terminal)
            return record.display_state

        old_display = record.display_state
        self._apply_identity(record, identity, payload)
        self._apply_payload_metadata(record, payload)
        record.local = record.local or local
        changed = False
        if new_state is not record.lifecycle_state:
            changed = self._set_state(record, new_state, TransitionSource.STATE_FILE)
        if not changed:
            self._call(record, "update", record)
        if (record.display_state is LifecycleState.TERMINATED
                and old_display is not LifecycleState.TERMINATED
                and record.lifecycle_state is not LifecycleState.TERMINATED):
            _log.info("registry: %s reported dead", identifier)
            self._call(record, "notify",
                       notification_message(record, LifecycleState.TERMINATED),
                       notification_level(LifecycleState.TERMINATED))
        return record.display_state

    def register_local(self, identifier: str, identity: ResolvedIdentity | None = None,
                       state: LifecycleState = LifecycleState.IDLE,
                       with_terminal: bool = True, origin: str = "local") -> AgentSessionRecord:
        """Track a session amux itself spawned or was asked to attach.

        Local records survive reconciliation while their tmux session is
        alive even when the state file does not list them.
        """
        if identity is None:
            identity = resolve(identifier)
        payload = {"state": state.value, "origin": origin}
        existing = identifier in self._records
        self.upsert(identifier, identity, payload, with_terminal=with_terminal, local=True)
        if existing and with_terminal:
            self.attach_terminal(identifier)
        return self._records[identifier]

    def attach_terminal(self, identifier: str) -> bool:
        """Give an existing status-only record a terminal.

        The status item is recreated together with the terminal.  Returns
        True if the record ends up with a handle.
        """
        record = self._records.get(identifier)
        if record is None:
            return False
        if record.handle is None:
            self._call(record, "dispose", record)
            record.handle = self._call(record, "create", record, True)
        return record.handle is not None

    def transition(self, identifier: str, new_state: LifecycleState,
                   source: TransitionSource) -> bool:
        """Move *identifier* to *new_state* if the state machine allows it."""
        record = self._records.get(identifier)
        if record is None:
            _log.debug("registry: transition for untracked %s ignored", identifier)
            return False
        if record.lifecycle_state is new_state:
            return False
        return self._set_state(record, new_state, source)

    def rename(self, identifier: str, display_name: str) -> bool:
        record = self._records.get(identifier)
        if record is None or record.display_name == display_name:
            return False
        record.display_override = display_name
        record.display_name = display_name
        self._call(record, "update", record)
        return True

    def remove(self, identifier: str) -> bool:
        """Dispose and forget *identifier*.  Returns False if it was not tracked."""
        record = self._records.pop(identifier, None)
        if record is None:
            return False
        _log.info("registry: dropped %s", identifier)
        self._call(record, "dispose", record)
        record.handle = None
        return True

    def clear(self) -> None:
        for identifier in list(self._records):
            self.remove(identifier)

    def apply(self, changes: Iterable[SessionChange], snapshot: StateSnapshot) -> None:
        """Apply one diff batch taken against *snapshot*."""
        for change in changes:
            if change.kind is ChangeKind.REMOVED:
                record = self._records.get(change.identifier)
                if record is not None and not record.local:
                    self.remove(change.identifier)
                continue
            payload = snapshot.get(change.identifier)
            try:
                identity = resolve(change.identifier, payload)
                self.upsert(change.identifier, identity, payload)
            except UnsafeIdentifierError as e:
                _log.warning("registry: skipping state entry: %s", e)

    # -- internals -------------------------------------------------------

    def _new_record(self, identifier: str, identity: ResolvedIdentity | None, payload,
                    state: LifecycleState) -> AgentSessionRecord:
        record = AgentSessionRecord(identifier=identifier, agent_kind=None,
                                    lifecycle_state=state)
        self._apply_identity(record, identity, payload)
        self._apply_payload_metadata(record, payload)
        return record

    @staticmethod
    def _apply_identity(record: AgentSessionRecord, identity: ResolvedIdentity | None,
                        payload) -> None:
        if identity is not None:
            record.agent_kind = identity.agent_kind
            record.model_tier = identity.model_tier
            record.task_id = identity.task_id
            record.phonetic_token = identity.phonetic_token
        if record.display_override:
            record.display_name = record.display_override
        elif isinstance(payload, dict) and isinstance(payload.get("display_name"), str) \
                and payload["display_name"]:
            record.display_name = payload["display_name"]
        else:
            record.display_name = display_name_for(record.identifier, identity)

    @staticmethod
    def _apply_payload_metadata(record: AgentSessionRecord, payload) -> None:
        record.last_payload = payload
        record.health_state = health_of(payload)
        record.health_issues = health_issues(payload)
        if isinstance(payload, dict):
            record.origin = payload.get("origin", record.origin)
            record.timestamp = payload.get("timestamp", record.timestamp)

    def _set_state(self, record: AgentSessionRecord, new_state: LifecycleState,
                   source: TransitionSource) -> bool:
        old_state = record.lifecycle_state
        if not allowed_transition(old_state, new_state, source):
            _log.info("registry: ignored %s %s -> %s from %s", record.identifier,
                      old_state.value, new_state.value, source.value)
            return False
        record.lifecycle_state = new_state
        _log.info("registry: %s %s -> %s (%s)", record.identifier,
                  old_state.value, new_state.value, source.value)
        self._call(record, "update", record)
        if new_state in NOTIFY_STATES:
            self._call(record, "notify", notification_message(record, new_state),
                       notification_level(new_state))
        return True

    def _call(self, record: AgentSessionRecord, method: str, *args):
        try:
            return getattr(self.presentation, method)(*args)
        except Exception:
            _log.exception("registry: presentation.%s failed for %s", method, record.identifier)
            return None
