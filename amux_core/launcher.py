"""Spawn agent sessions through the workspace launch script.

The script creates the tmux session itself::

    <launch_script> <kind> [task] --model <tier> --no-attach

and amux tracks the resulting ``<kind>-<task>`` or ``<kind>-<phonetic>``
session.
"""

import asyncio
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from amux_core.agents import AgentKind, ModelTier, DEFAULT_MODEL, PHONETIC_ALPHABET
from amux_core.identity import ResolvedIdentity, classify_remainder, display_name, validate_identifier
from amux_core.paths import configure_logger, log_shell_command

_log = configure_logger("amux.launcher")

LAUNCH_TIMEOUT = 60.0


class LaunchError(Exception):
    """Raised when the launch script is missing or exits non-zero."""


@dataclass(frozen=True)
class LaunchPlan:
    session_name: str
    identity: ResolvedIdentity
    display_name: str
    argv: list[str]


def next_phonetic(kind: AgentKind, taken: Iterable[str]) -> str:
    """First phonetic word not already used by a ``<kind>-<word>`` session."""
    taken = {name.lower() for name in taken}
    for word in PHONETIC_ALPHABET:
        if f"{kind.value}-{word}" not in taken:
            return word
    raise LaunchError(f"all phonetic names are in use for {kind.value}")


def plan_launch(script: Path, kind: AgentKind, task_id: str | None = None,
                model: ModelTier = DEFAULT_MODEL, taken: Iterable[str] = ()) -> LaunchPlan:
    """Work out the session name and argv for a spawn.

    Raises UnsafeIdentifierError when the resulting session name (and so
    the task id) would be unsafe to hand to the script or to tmux.
    """
    if task_id:
        session_name = validate_identifier(f"{kind.value}-{task_id}")
        task, phonetic, suffix = classify_remainder(task_id)
        if task is None and phonetic is None:
            task = suffix
    else:
        phonetic = next_phonetic(kind, taken)
        session_name = validate_identifier(f"{kind.value}-{phonetic}")
        task = None

    identity = ResolvedIdentity(agent_kind=kind, model_tier=model,
                                task_id=task, phonetic_token=phonetic)
    argv = [str(script), kind.value]
    if task_id:
        argv.append(task_id)
    argv += ["--model", model.value, "--no-attach"]
    return LaunchPlan(
        session_name=session_name,
        identity=identity,
        display_name=display_name(session_name, kind, model, task, phonetic),
        argv=argv,
    )


async def run_launch(plan: LaunchPlan, cwd: Path, timeout: float = LAUNCH_TIMEOUT) -> str:
    """Run the launch script for *plan* and return its combined output.

    Raises LaunchError on a missing script, a timeout or a non-zero exit.
    """
    log_shell_command(plan.argv, prefix="launch")
    try:
        proc = await asyncio.create_subprocess_exec(
            *plan.argv,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise LaunchError(f"cannot run {plan.argv[0]}: {e}") from e
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise LaunchError(f"{shlex.join(plan.argv)} timed out after {timeout}s") from None
    output = out.decode(errors="replace")
    if proc.returncode != 0:
        log_shell_command(plan.argv, prefix="launch", returncode=proc.returncode)
        _log.warning("launcher: %s exited %s: %s", plan.session_name, proc.returncode, output[-500:])
        raise LaunchError(f"launch script exited {proc.returncode}: {output.strip()[-200:]}")
    _log.info("launcher: spawned %s (%s)", plan.session_name, plan.display_name)
    return output
