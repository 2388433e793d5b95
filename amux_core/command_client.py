"""Synchronous client for the file-based command bridge.

Usage:
    from amux_core.command_client import CommandClient
    client = CommandClient(settings.command_dir)
    print(client.send({"command": "kill", "identifier": "factory-TC-001"}))
"""

import json
import os
import time
import uuid
from pathlib import Path


class CommandTimeout(Exception):
    """Raised when no response arrives before the deadline."""


class CommandClient:
    def __init__(self, directory: Path, timeout: float = 15.0, poll: float = 0.2):
        self.directory = Path(directory)
        self.timeout = timeout
        self.poll = poll

    def submit(self, command: dict) -> Path:
        """Write *command* atomically and return the command file path."""
        self.directory.mkdir(parents=True, exist_ok=True)
        name = f"cmd-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.json"
        path = self.directory / name
        # Dot-prefixed until complete so the bridge never reads half a file.
        tmp = self.directory / f".{name}"
        tmp.write_text(json.dumps(command), encoding="utf-8")
        os.replace(tmp, path)
        return path

    def wait(self, path: Path) -> str:
        """Wait for the response to *path*, consume it and return its text."""
        response = path.with_name(path.name + ".response")
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if response.exists():
                text = response.read_text(encoding="utf-8")
                response.unlink(missing_ok=True)
                return text
            time.sleep(self.poll)
        raise CommandTimeout(
            f"No response to {path.name} within {self.timeout}s. "
            f"Is an amux monitor or dashboard running for this workspace?"
        )

    def send(self, command: dict) -> str:
        return self.wait(self.submit(command))
