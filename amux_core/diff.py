"""Compute per-session changes between two state-file snapshots."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from amux_core.state_store import StateSnapshot


class ChangeKind(Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass(frozen=True)
class SessionChange:
    identifier: str
    kind: ChangeKind


def diff(
    previous: StateSnapshot | None,
    new: StateSnapshot,
    has_live_terminal: Callable[[str], bool] = lambda _id: False,
) -> list[SessionChange]:
    """Return the changes that turn *previous* into *new*.

    Removals come first (sorted by identifier) so a session that vanished
    is disposed before anything new is created; additions and updates
    follow in the order the new snapshot lists them.

    An entry counts as updated when its payload differs structurally, or
    when *has_live_terminal* says the identifier owns an open terminal:
    terminal titles are refreshed on every file event even when the
    payload is byte-identical.
    """
    old_sessions = previous.sessions if previous is not None else {}
    changes = [
        SessionChange(identifier, ChangeKind.REMOVED)
        for identifier in sorted(set(old_sessions) - set(new.sessions))
    ]
    for identifier, payload in new.sessions.items():
        if identifier not in old_sessions:
            changes.append(SessionChange(identifier, ChangeKind.ADDED))
        elif old_sessions[identifier] != payload or has_live_terminal(identifier):
            changes.append(SessionChange(identifier, ChangeKind.UPDATED))
    return changes
