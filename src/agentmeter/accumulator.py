import time
from typing import Callable

import structlog

from agentmeter.errors import CycleClosedError
from agentmeter.estimator import BYTES_PER_TOKEN, estimate_tokens
from agentmeter.models import (
    DEFAULT_TAB_ID,
    CycleSnapshot,
    CycleStatus,
    ParsedEvent,
    TextDelta,
    TokenUsage,
    UsageEvent,
    UsageResult,
    UsageUpdate,
    WarningLine,
)

logger = structlog.get_logger()


def now_ms() -> "int":
    return int(time.time() * 1000)


class CycleAccumulator:
    """
    CycleAccumulator merges the events of one thinking cycle of a
    single session into a coherent state.

    Byte counts are summed across every TextDelta. Token counts are
    never summed: each UsageUpdate replaces the previous one, and the
    first UsageResult becomes the authoritative, final value. While
    no count has been reported, the token count is estimated from the
    observed bytes and flagged as such.

    An accumulator is owned by exactly one session and is discarded
    once finalize() has produced its UsageEvent.
    """

    def __init__(
        self,
        session_id: "str",
        agent_type: "str",
        tab_id: "str" = DEFAULT_TAB_ID,
        start_time: "int | None" = None,
        bytes_per_token: "float" = BYTES_PER_TOKEN,
        clock: "Callable[[], int]" = now_ms,
    ) -> "None":
        self.session_id = session_id
        self.agent_type = agent_type
        self.tab_id = tab_id
        self._clock = clock
        self.start_time: "int" = clock() if start_time is None else start_time
        self._bytes_per_token = bytes_per_token

        self._bytes_observed: "int" = 0
        self._warning_count: "int" = 0
        # latest non-final usage report, replaced on every update
        self._reported: "TokenUsage | None" = None
        self._result: "UsageResult | None" = None
        self._finalized: "bool" = False
        # set when the wall clock went backwards during the cycle
        self.clock_anomaly: "bool" = False

    @property
    def bytes_observed(self) -> "int":
        return self._bytes_observed

    @property
    def warning_count(self) -> "int":
        return self._warning_count

    @property
    def has_result(self) -> "bool":
        return self._result is not None

    @property
    def finalized(self) -> "bool":
        return self._finalized

    def apply(self, event: "ParsedEvent") -> "CycleSnapshot":
        """
        merges one parser event into the cycle state and returns
        the resulting snapshot.
        """
        if self._finalized:
            raise CycleClosedError(self.session_id)

        if isinstance(event, TextDelta):
            self._bytes_observed += event.byte_count
        elif isinstance(event, WarningLine):
            self._warning_count += 1
        elif isinstance(event, UsageUpdate):
            # updates arriving after the result must not override it
            if self._result is None:
                self._reported = event.usage
        elif isinstance(event, UsageResult):
            if self._result is None:
                self._result = event
            else:
                logger.debug("duplicate_usage_result", session_id=self.session_id)
        else:
            raise TypeError(f"unsupported event type: {type(event).__name__}")

        return self.snapshot()

    def _current_tokens(self) -> "tuple[int | None, bool]":
        """
        returns (tokens, estimated). Authoritative results win,
        then the latest reported count, then the byte estimate.
        (None, False) means nothing has been observed yet.
        """
        if self._result is not None:
            return self._result.usage.output_tokens, False

        if self._reported is not None and self._reported.output_tokens > 0:
            return self._reported.output_tokens, False

        if self._bytes_observed > 0:
            return estimate_tokens(self._bytes_observed, self._bytes_per_token), True

        return None, False

    def _elapsed_ms(self, now: "int") -> "int":
        return max(now - self.start_time, 0)

    @staticmethod
    def _rate(tokens: "int | None", elapsed_ms: "int") -> "float | None":
        if tokens is None or elapsed_ms <= 0:
            return None
        return tokens / (elapsed_ms / 1000)

    def snapshot(self, now: "int | None" = None) -> "CycleSnapshot":
        now = self._clock() if now is None else now
        tokens, estimated = self._current_tokens()

        return CycleSnapshot(
            session_id=self.session_id,
            tab_id=self.tab_id,
            start_time=self.start_time,
            end_time=None,
            bytes_observed=self._bytes_observed,
            output_tokens=tokens,
            tokens_per_second=self._rate(tokens, self._elapsed_ms(now)),
            estimated=estimated,
            final=self._result is not None,
        )

    def finalize(
        self,
        result: "UsageResult | None" = None,
        now: "int | None" = None,
    ) -> "UsageEvent":
        """
        closes the cycle and returns its UsageEvent. Without a
        UsageResult the cycle is recorded as cancelled, carrying
        whatever partial or estimated data exists.
        """
        if result is not None:
            self.apply(result)
        if self._finalized:
            raise CycleClosedError(self.session_id)
        self._finalized = True

        end_time = self._clock() if now is None else now
        duration_ms = end_time - self.start_time
        if duration_ms < 0:
            self.clock_anomaly = True
            logger.error(
                "negative_cycle_duration",
                session_id=self.session_id,
                start_time=self.start_time,
                end_time=end_time,
                duration_ms=duration_ms,
            )
            duration_ms = 0

        tokens, estimated = self._current_tokens()
        usage = self._result.usage if self._result is not None else self._reported
        usage = usage or TokenUsage()

        if self._result is None:
            status = CycleStatus.CANCELLED
            estimated = True
        else:
            status = CycleStatus.COMPLETED

        return UsageEvent(
            session_id=self.session_id,
            agent_type=self.agent_type,
            tab_id=self.tab_id,
            start_time=self.start_time,
            timestamp=max(end_time, self.start_time),
            duration_ms=duration_ms,
            output_tokens=tokens,
            tokens_per_second=self._rate(tokens, duration_ms),
            estimated=estimated,
            status=status.value,
            input_tokens=usage.input_tokens,
            cache_read_input_tokens=usage.cache_read_input_tokens,
            cache_creation_input_tokens=usage.cache_creation_input_tokens,
            reasoning_tokens=usage.reasoning_tokens,
            cost_usd=self._result.cost_usd if self._result is not None else None,
            model=self._result.model if self._result is not None else None,
            bytes_observed=self._bytes_observed,
        )
