"""Agent kinds, model tiers, lifecycle and health states.

Every per-kind attribute (emoji, short code, color, icon) lives in one
table keyed by AgentKind so adding a kind means adding one row.
"""

from dataclasses import dataclass
from enum import Enum


class AgentKind(Enum):
    ARCHITECT = "architect"
    FEATPLANNER = "featplanner"
    PLANNER = "planner"
    FACTORY = "factory"
    QA = "qa"
    WEAVER = "weaver"
    SECURITY = "security"
    DARKWINGDUCK = "darkwingduck"


class ModelTier(Enum):
    SONNET = "sonnet"
    OPUS = "opus"
    HAIKU = "haiku"


class LifecycleState(Enum):
    IDLE = "idle"
    BUSY = "busy"
    DONE = "done"
    ERROR = "error"
    UNKNOWN = "unknown"
    TERMINATED = "terminated"
    STOPPED = "stopped"


class HealthState(Enum):
    HEALTHY = "healthy"
    INTERRUPTED = "interrupted"
    DEAD = "dead"


@dataclass(frozen=True)
class KindStyle:
    emoji: str
    short_code: str
    color: str
    icon: str


# Declaration order of AgentKind is the display priority (architects first).
KIND_STYLES: dict[AgentKind, KindStyle] = {
    AgentKind.ARCHITECT: KindStyle("🏗️", "AR", "magenta", "settings-gear"),
    AgentKind.FEATPLANNER: KindStyle("✨", "FP", "bright_magenta", "star"),
    AgentKind.PLANNER: KindStyle("📋", "PL", "blue", "list-ordered"),
    AgentKind.FACTORY: KindStyle("🏭", "FA", "green", "tools"),
    AgentKind.QA: KindStyle("🔍", "QA", "yellow", "search"),
    AgentKind.WEAVER: KindStyle("🕸️", "WE", "cyan", "git-merge"),
    AgentKind.SECURITY: KindStyle("🛡️", "SE", "red", "shield"),
    AgentKind.DARKWINGDUCK: KindStyle("🦆", "DD", "white", "flame"),
}

MODEL_LETTERS: dict[ModelTier, str] = {
    ModelTier.SONNET: "S",
    ModelTier.OPUS: "O",
    ModelTier.HAIKU: "H",
}

DEFAULT_MODEL = ModelTier.SONNET

assert set(KIND_STYLES) == set(AgentKind), "every AgentKind needs a KindStyle"
assert set(MODEL_LETTERS) == set(ModelTier), "every ModelTier needs a letter"

KIND_BY_SHORT_CODE: dict[str, AgentKind] = {s.short_code: k for k, s in KIND_STYLES.items()}
MODEL_BY_LETTER: dict[str, ModelTier] = {v: k for k, v in MODEL_LETTERS.items()}

# Glyph for sessions outside the agent scheme.
OTHER_EMOJI = "📟"
UNKNOWN_AGENT_EMOJI = "🤖"

STATE_ICONS: dict[LifecycleState, str] = {
    LifecycleState.IDLE: "⚪",
    LifecycleState.BUSY: "🔵",
    LifecycleState.DONE: "🟢",
    LifecycleState.ERROR: "❌",
    LifecycleState.UNKNOWN: "❓",
    LifecycleState.TERMINATED: "🛑",
    LifecycleState.STOPPED: "🛑",
}

# Single-character indicators for compact status text.
STATE_INDICATORS: dict[LifecycleState, str] = {
    LifecycleState.IDLE: "○",
    LifecycleState.BUSY: "●",
    LifecycleState.DONE: "✓",
    LifecycleState.ERROR: "✗",
    LifecycleState.UNKNOWN: "?",
    LifecycleState.TERMINATED: "×",
    LifecycleState.STOPPED: "■",
}

# Background color class per state (idle=warning, busy=prominent,
# finished/failed=error, unknown=none).
STATE_COLORS: dict[LifecycleState, str] = {
    LifecycleState.IDLE: "warning",
    LifecycleState.BUSY: "prominent",
    LifecycleState.DONE: "error",
    LifecycleState.ERROR: "error",
    LifecycleState.TERMINATED: "error",
    LifecycleState.STOPPED: "error",
    LifecycleState.UNKNOWN: "",
}

assert set(STATE_ICONS) == set(LifecycleState)
assert set(STATE_INDICATORS) == set(LifecycleState)
assert set(STATE_COLORS) == set(LifecycleState)

TERMINAL_STATES = frozenset({LifecycleState.TERMINATED, LifecycleState.STOPPED})

# Transitions that surface a user notification.
NOTIFY_STATES = frozenset({LifecycleState.DONE, LifecycleState.ERROR, LifecycleState.TERMINATED})

PHONETIC_ALPHABET = (
    "alpha", "bravo", "charlie", "delta", "echo", "foxtrot", "golf", "hotel",
    "india", "juliet", "kilo", "lima", "mike", "november", "oscar", "papa",
    "quebec", "romeo", "sierra", "tango", "uniform", "victor", "whiskey",
    "xray", "yankee", "zulu",
)


def parse_kind(value: str | None) -> AgentKind | None:
    """Return the AgentKind named by *value* (case-insensitive), or None."""
    if not value:
        return None
    try:
        return AgentKind(value.strip().lower())
    except ValueError:
        return None


def parse_model(value: str | None) -> ModelTier:
    """Return the ModelTier named by *value*; unknown or empty → sonnet.

    Accepts full names ("opus") and indicator letters ("O").
    """
    if not value:
        return DEFAULT_MODEL
    v = value.strip()
    if v.upper() in MODEL_BY_LETTER and len(v) == 1:
        return MODEL_BY_LETTER[v.upper()]
    try:
        return ModelTier(v.lower())
    except ValueError:
        return DEFAULT_MODEL


def parse_state(value) -> LifecycleState:
    """Coerce a raw state value to LifecycleState; unrecognized → unknown."""
    if isinstance(value, LifecycleState):
        return value
    if isinstance(value, str):
        try:
            return LifecycleState(value.strip().lower())
        except ValueError:
            pass
    return LifecycleState.UNKNOWN


def parse_health(value) -> HealthState:
    """Coerce a raw health value to HealthState; missing or unrecognized → healthy."""
    if isinstance(value, HealthState):
        return value
    if isinstance(value, str):
        try:
            return HealthState(value.strip().lower())
        except ValueError:
            pass
    return HealthState.HEALTHY


def kind_emoji(kind: AgentKind | None) -> str:
    return KIND_STYLES[kind].emoji if kind else OTHER_EMOJI
