"""Session identifier parsing and display-name generation.

Everything here is pure: no I/O, deterministic for identical input.

Identifiers come in three shapes, checked in this order:

- logical names: ``FA-O-TC-001`` (short code + model letter + remainder)
- full-name prefix: ``factory-TC-001``, ``architect-alpha``
- legacy short-code prefix: ``FA-TC-001``

Anything else is an "other" session: still monitorable, but outside the
emoji/display-name scheme.
"""

import re
from dataclasses import dataclass

from amux_core.agents import (
    AgentKind,
    ModelTier,
    LifecycleState,
    KIND_BY_SHORT_CODE,
    KIND_STYLES,
    MODEL_BY_LETTER,
    MODEL_LETTERS,
    DEFAULT_MODEL,
    PHONETIC_ALPHABET,
    STATE_ICONS,
    kind_emoji,
    parse_model,
)

IDENTIFIER_RE = re.compile(r"[A-Za-z0-9_.-]{1,99}")

LOGICAL_NAME_RE = re.compile(r"^([A-Z]{2})-([SOH])-(.*)$")

# Remainders that look like task ids.  Checked before the phonetic alphabet.
TASK_ID_RE = re.compile(r"^(TC-\d+|DC-\d+|\d+-TS-.+|[A-Z]{2}-\d+)")
BARE_TASK_NUMBER_RE = re.compile(r"^\d{3}$")

TASKSPEC_RE = re.compile(r"^(\d+)-TS-")
SHORT_TASK_RE = re.compile(r"^[A-Z]{2}-(\d+)$")
TRAILING_DIGITS_RE = re.compile(r"(\d{3,})$")

MAX_DISPLAY_LEN = 10


class UnsafeIdentifierError(ValueError):
    """Raised for identifiers that must never reach an external command."""


def is_valid_identifier(identifier) -> bool:
    """Return True if *identifier* is safe to pass to tmux."""
    return isinstance(identifier, str) and bool(IDENTIFIER_RE.fullmatch(identifier))


def validate_identifier(identifier) -> str:
    """Return *identifier* unchanged, or raise UnsafeIdentifierError.

    The identifier is never rewritten into a "safe" form: a sanitized name
    could silently refer to a different session.
    """
    if not is_valid_identifier(identifier):
        raise UnsafeIdentifierError(f"unsafe session identifier: {identifier!r}")
    return identifier


@dataclass(frozen=True)
class ResolvedIdentity:
    """Best-effort typed view of a session identifier."""

    agent_kind: AgentKind | None
    model_tier: ModelTier = DEFAULT_MODEL
    task_id: str | None = None
    phonetic_token: str | None = None

    @property
    def is_agent(self) -> bool:
        return self.agent_kind is not None


def classify_remainder(remainder: str) -> tuple[str | None, str | None, str | None]:
    """Split the part after the kind prefix into (task_id, phonetic, suffix).

    Exactly one of the three is set for a non-empty remainder.  Task ids
    win over phonetic tokens when both could apply.
    """
    if not remainder:
        return None, None, None
    if TASK_ID_RE.match(remainder) or BARE_TASK_NUMBER_RE.match(remainder):
        return remainder, None, None
    if remainder.lower() in PHONETIC_ALPHABET:
        return None, remainder.lower(), None
    return None, None, remainder


def _match_prefix(identifier: str) -> tuple[AgentKind, ModelTier | None, str] | None:
    """Return (kind, explicit model or None, remainder) for the first matching rule."""
    m = LOGICAL_NAME_RE.match(identifier)
    if m and m.group(1) in KIND_BY_SHORT_CODE:
        return KIND_BY_SHORT_CODE[m.group(1)], MODEL_BY_LETTER[m.group(2)], m.group(3)

    lowered = identifier.lower()
    # Longest names first so no kind name can shadow another it prefixes.
    for kind in sorted(AgentKind, key=lambda k: -len(k.value)):
        prefix = kind.value + "-"
        if lowered.startswith(prefix):
            return kind, None, identifier[len(prefix):]

    upper = identifier.upper()
    for code, kind in KIND_BY_SHORT_CODE.items():
        if upper.startswith(code + "-"):
            return kind, None, identifier[len(code) + 1:]

    return None


def resolve(identifier: str, payload=None) -> ResolvedIdentity | None:
    """Resolve *identifier* into a typed identity, or None for non-agent sessions.

    *payload* is the optional state-file entry for the session.  When it is
    a mapping, explicit ``model`` and ``task_id`` values take precedence over
    what the identifier implies.
    """
    matched = _match_prefix(identifier)
    if matched is None:
        return None
    kind, model, remainder = matched
    task_id, phonetic, _ = classify_remainder(remainder)

    if isinstance(payload, dict):
        if payload.get("model"):
            model = parse_model(str(payload["model"]))
        explicit_task = payload.get("task_id") or payload.get("taskId")
        if explicit_task:
            task_id, phonetic = str(explicit_task), None

    return ResolvedIdentity(
        agent_kind=kind,
        model_tier=model or DEFAULT_MODEL,
        task_id=task_id,
        phonetic_token=phonetic,
    )


def task_suffix(task_id: str) -> str:
    """Shorten a task id for display.

    ``002-TS-2025-08-18-X`` → ``002``, ``TC-001`` → ``001``, ids of three
    characters or fewer unchanged, ids longer than eight characters cut to
    their first three, anything else unchanged.
    """
    m = TASKSPEC_RE.match(task_id)
    if m:
        return m.group(1)
    m = SHORT_TASK_RE.match(task_id)
    if m:
        return m.group(1)
    if len(task_id) <= 3:
        return task_id
    if len(task_id) > 8:
        return task_id[:3]
    return task_id


def identifier_suffix(identifier: str) -> str:
    """Last three digits of a trailing digit run, else the last three characters."""
    m = TRAILING_DIGITS_RE.search(identifier)
    if m:
        return m.group(1)[-3:]
    return identifier[-3:] if len(identifier) >= 3 else identifier


def display_name(identifier: str, kind: AgentKind, model: ModelTier = DEFAULT_MODEL,
                 task_id: str | None = None, phonetic_token: str | None = None) -> str:
    """Canonical short name ``{short}-{model}-{suffix}``, at most 10 characters."""
    if task_id:
        suffix = task_suffix(task_id)
    elif phonetic_token:
        suffix = phonetic_token
    else:
        suffix = identifier_suffix(identifier)
    name = f"{KIND_STYLES[kind].short_code}-{MODEL_LETTERS[model]}-{suffix}"
    return name[:MAX_DISPLAY_LEN]


def display_name_for(identifier: str, identity: ResolvedIdentity | None) -> str:
    """Display name for any session; non-agent sessions show their identifier."""
    if identity is None or identity.agent_kind is None:
        return identifier
    return display_name(identifier, identity.agent_kind, identity.model_tier,
                        identity.task_id, identity.phonetic_token)


def reverse_lookup(name: str) -> tuple[AgentKind, ModelTier] | None:
    """Recover (kind, model) from a logical or display name like ``PL-O-alpha``."""
    m = LOGICAL_NAME_RE.match(name)
    if not m or m.group(1) not in KIND_BY_SHORT_CODE:
        return None
    return KIND_BY_SHORT_CODE[m.group(1)], MODEL_BY_LETTER[m.group(2)]


def terminal_title(kind: AgentKind | None, state: LifecycleState, name: str) -> str:
    """Title for a session's terminal: ``📋 ⚪ PL-S-013``."""
    return f"{kind_emoji(kind)} {STATE_ICONS[state]} {name}"
