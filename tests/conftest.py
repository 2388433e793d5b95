"""Shared test helpers for amux_core tests."""

import os
import tempfile

# Loggers are configured at import time; keep their files out of ~/.amux.
os.environ.setdefault("AMUX_HOME", tempfile.mkdtemp(prefix="amux-test-home-"))

import pytest  # noqa: E402


class RecordingPresentation:
    """Presentation double that records every call.

    ``create`` returns a fake terminal handle when a terminal is requested.
    Identifiers listed in ``fail_on`` raise from every call.
    """

    def __init__(self, fail_on=()):
        self.calls = []
        self.notifications = []
        self.fail_on = set(fail_on)

    def _check(self, record):
        if record.identifier in self.fail_on:
            raise RuntimeError(f"presentation broken for {record.identifier}")

    def create(self, record, with_terminal):
        self.calls.append(("create", record.identifier, with_terminal))
        self._check(record)
        return f"term:{record.identifier}" if with_terminal else None

    def update(self, record):
        self.calls.append(("update", record.identifier, record.lifecycle_state.value))
        self._check(record)

    def dispose(self, record):
        self.calls.append(("dispose", record.identifier))
        self._check(record)

    def notify(self, message, level="info"):
        self.notifications.append((level, message))

    def names(self, kind):
        return [c[1] for c in self.calls if c[0] == kind]


@pytest.fixture
def presentation():
    return RecordingPresentation()
