import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum

DEFAULT_TAB_ID = "default"


class AgentType(str, Enum):
    """
    AgentType enumerates the supported agent backends
    a session can run.
    """

    CLAUDE_CODE = "claude-code"
    CODEX = "codex"
    OPENCODE = "opencode"
    FACTORY_DROID = "factory-droid"
    TERMINAL = "terminal"


class CycleStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """
    TokenUsage groups the token counts reported by
    the upstream protocol for one cycle.
    """

    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_read_input_tokens: "int" = 0
    cache_creation_input_tokens: "int" = 0
    reasoning_tokens: "int" = 0


@dataclass(frozen=True, slots=True)
class TextDelta:
    """
    TextDelta is a streamed content fragment. It carries
    no telemetry itself, only bytes for estimation.
    """

    text: "str"

    @property
    def byte_count(self) -> "int":
        return len(self.text.encode("utf-8"))


@dataclass(frozen=True, slots=True)
class WarningLine:
    """
    WarningLine is a diagnostic line emitted by the
    shell or runtime wrapping the agent process.
    """

    text: "str"


@dataclass(frozen=True, slots=True)
class UsageUpdate:
    """
    UsageUpdate is a non-final usage report attached to a
    streamed assistant message. Only the latest one counts.
    """

    usage: "TokenUsage"


@dataclass(frozen=True, slots=True)
class UsageResult:
    """
    UsageResult is the authoritative usage data emitted
    once by the upstream protocol when a cycle completes.
    """

    usage: "TokenUsage"
    duration_ms: "int | None" = None
    cost_usd: "float | None" = None
    model: "str | None" = None


ParsedEvent = TextDelta | WarningLine | UsageUpdate | UsageResult


@dataclass(frozen=True, slots=True)
class CycleSnapshot:
    """
    CycleSnapshot is the live, read-only view of a cycle
    exposed to readers while the cycle is open.
    """

    session_id: "str"
    tab_id: "str"
    # unix epoch milliseconds
    start_time: "int"
    # None while the cycle is still open
    end_time: "int | None"
    bytes_observed: "int"
    # None before the first byte or usage report arrives
    output_tokens: "int | None"
    tokens_per_second: "float | None"
    estimated: "bool"
    final: "bool"


@dataclass(frozen=True, slots=True)
class UsageEvent:
    """
    UsageEvent is the immutable record persisted once
    per finalized cycle.
    """

    session_id: "str"
    agent_type: "str"
    tab_id: "str"
    # unix epoch milliseconds
    start_time: "int"
    # unix epoch milliseconds, the cycle end time
    timestamp: "int"
    duration_ms: "int"
    output_tokens: "int | None"
    tokens_per_second: "float | None"
    estimated: "bool"
    status: "str" = CycleStatus.COMPLETED.value
    input_tokens: "int" = 0
    cache_read_input_tokens: "int" = 0
    cache_creation_input_tokens: "int" = 0
    reasoning_tokens: "int" = 0
    cost_usd: "float | None" = None
    model: "str | None" = None
    bytes_observed: "int" = 0
    # cost as reported upstream and as computed from the pricing registry;
    # cost_usd is the calculated one when available
    reported_cost_usd: "float | None" = None
    calculated_cost_usd: "float | None" = None
    billing_mode: "str | None" = None
    pricing_model: "str | None" = None
    id: "str" = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True, slots=True)
class AggregateBucket:
    """
    AggregateBucket is a day-granularity rollup of usage
    events for one grouping key. Always derived, never stored.
    """

    group_key: "str"
    date: "date"
    count: "int"
    total_duration_ms: "int"
    total_output_tokens: "int"
    # None when no event in the group reported a throughput
    avg_tokens_per_second: "float | None"


@dataclass(frozen=True, slots=True)
class CumulativeCounter:
    """
    CumulativeCounter is the running usage total for a
    (session, tab) pair since its last reset.
    """

    session_id: "str"
    tab_id: "str"
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_read_input_tokens: "int" = 0
    cache_creation_input_tokens: "int" = 0
    reasoning_tokens: "int" = 0
    cost_usd: "float" = 0.0
    cycles: "int" = 0
    # unix epoch milliseconds of the last update, 0 if never updated
    updated_at: "int" = 0

    def plus(self, event: "UsageEvent") -> "CumulativeCounter":
        """
        returns a new counter with the event's usage added. Negative
        values are ignored so the counter never decreases.
        """
        return replace(
            self,
            input_tokens=self.input_tokens + max(event.input_tokens, 0),
            output_tokens=self.output_tokens + max(event.output_tokens or 0, 0),
            cache_read_input_tokens=self.cache_read_input_tokens
            + max(event.cache_read_input_tokens, 0),
            cache_creation_input_tokens=self.cache_creation_input_tokens
            + max(event.cache_creation_input_tokens, 0),
            reasoning_tokens=self.reasoning_tokens + max(event.reasoning_tokens, 0),
            cost_usd=self.cost_usd + max(event.cost_usd or 0.0, 0.0),
            cycles=self.cycles + 1,
            updated_at=max(self.updated_at, event.timestamp),
        )
