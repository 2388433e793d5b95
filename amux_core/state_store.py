"""Last-known contents of the external agent state file.

The file is rewritten by external processes::

    {
      "last_updated": "2025-08-20T10:00:00Z",
      "sessions": {
        "factory-TC-001": {"state": "busy", "health": {"state": "healthy"}},
        "planner-alpha": "idle"
      }
    }

A session payload is either a bare state string or an object with
optional ``state``, ``health``, ``timestamp`` and ``origin`` keys.

Reads distinguish transient I/O failures (the file is briefly missing
while a writer replaces it) from malformed content.  Neither replaces the
retained snapshot: stale-but-valid state wins over partial state.
"""

import errno
import fcntl
import json
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from amux_core.agents import HealthState, LifecycleState, parse_health, parse_state
from amux_core.identity import validate_identifier
from amux_core.paths import configure_logger

_log = configure_logger("amux.state_store")


class StateFileError(Exception):
    """Raised when the state file exists but cannot be decoded."""


@dataclass(frozen=True)
class StateSnapshot:
    """Decoded state file: identifier → raw payload, in file order."""

    sessions: dict = field(default_factory=dict)
    last_updated: str | None = None

    def __contains__(self, identifier: str) -> bool:
        return identifier in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    def get(self, identifier: str):
        return self.sessions.get(identifier)


def parse_state_text(text: str) -> StateSnapshot:
    """Decode state-file text into a snapshot.

    Raises StateFileError for invalid JSON or an unexpected shape.  A file
    without a ``sessions`` key decodes to an empty snapshot.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError) as e:
        raise StateFileError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise StateFileError(f"expected an object, got {type(data).__name__}")
    sessions = data.get("sessions") or {}
    if not isinstance(sessions, dict):
        raise StateFileError(f"'sessions' must be an object, got {type(sessions).__name__}")
    last_updated = data.get("last_updated")
    return StateSnapshot(
        sessions=dict(sessions),
        last_updated=str(last_updated) if last_updated is not None else None,
    )


def normalize_state(payload) -> LifecycleState:
    """Nominal lifecycle state of a payload; unrecognized values → unknown."""
    if isinstance(payload, dict):
        return parse_state(payload.get("state"))
    return parse_state(payload)


def health_of(payload) -> HealthState:
    """Health of a payload; absent health means healthy."""
    if isinstance(payload, dict):
        health = payload.get("health")
        if isinstance(health, dict):
            return parse_health(health.get("state"))
        return parse_health(health)
    return HealthState.HEALTHY


def health_issues(payload) -> str | None:
    """Free-form health issue text, if the writer supplied any."""
    if isinstance(payload, dict) and isinstance(payload.get("health"), dict):
        issues = payload["health"].get("issues")
        if issues:
            return str(issues)
    return None


class SessionStateStore:
    """Holds the last successfully decoded state-file snapshot."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._snapshot: StateSnapshot | None = None

    def current_snapshot(self) -> StateSnapshot:
        """Return the retained snapshot (empty before the first good read)."""
        return self._snapshot if self._snapshot is not None else StateSnapshot()

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def refresh(self) -> StateSnapshot | None:
        """Re-read the file and retain the result.

        Returns the new snapshot, or None on a transient read failure (the
        caller retries on the next event).  Raises StateFileError when the
        content is malformed; the retained snapshot is left untouched.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            _log.debug("state_store: transient read failure for %s: %s", self.path, e)
            return None
        try:
            snapshot = parse_state_text(text)
        except StateFileError as e:
            _log.warning("state_store: keeping previous snapshot, %s: %s", self.path, e)
            raise
        self._snapshot = snapshot
        _log.debug("state_store: loaded %d sessions (last_updated=%s)",
                   len(snapshot), snapshot.last_updated)
        return snapshot


# ---------------------------------------------------------------------------
# Writing (mirrors the external writers)
# ---------------------------------------------------------------------------

LOCK_TIMEOUT_SECONDS = 2.0


class StateLockTimeout(Exception):
    """Raised when the state-file lock cannot be acquired within the timeout."""


@contextmanager
def _lock(path: Path, timeout: float = LOCK_TIMEOUT_SECONDS):
    """Hold an exclusive advisory lock on ``<state file>.lock``."""
    lock_path = path.with_name(path.name + ".lock")
    deadline = time.monotonic() + timeout
    fd = open(lock_path, "w")
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as e:
                if e.errno not in (errno.EACCES, errno.EAGAIN):
                    raise
                if time.monotonic() >= deadline:
                    fd.close()
                    raise StateLockTimeout(
                        f"Could not acquire lock on {lock_path} within {timeout}s"
                    ) from None
                time.sleep(0.05)
        yield fd
    finally:
        if not fd.closed:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            except OSError:
                pass
            fd.close()


def write_session_state(path: Path, identifier: str, state: LifecycleState,
                        origin: str = "amux") -> dict:
    """Set one session's state in the state file and return the new content.

    Read-modify-write under an advisory lock; the new content is written
    to a temp file and renamed over the original so readers never see a
    partial file.  A malformed existing file raises StateFileError rather
    than being overwritten.
    """
    validate_identifier(identifier)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    with _lock(path):
        if path.exists():
            snapshot = parse_state_text(path.read_text(encoding="utf-8"))
            sessions = dict(snapshot.sessions)
        else:
            sessions = {}
        entry = sessions.get(identifier)
        entry = dict(entry) if isinstance(entry, dict) else {}
        entry.update({"state": state.value, "timestamp": now, "origin": origin})
        sessions[identifier] = entry
        data = {"last_updated": now, "sessions": sessions}
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    _log.info("state_store: %s -> %s (origin=%s)", identifier, state.value, origin)
    return data
