import asyncio
from dataclasses import replace
from datetime import tzinfo
from typing import Callable, Iterable

import structlog

from agentmeter.accumulator import CycleAccumulator, now_ms
from agentmeter.aggregation import Aggregator, UsageSummary
from agentmeter.coalescer import DEFAULT_DELAY_SECONDS, SnapshotCoalescer
from agentmeter.errors import CycleAlreadyOpenError, NoOpenCycleError, StoreError
from agentmeter.estimator import BYTES_PER_TOKEN
from agentmeter.metrics import PipelineMetrics
from agentmeter.models import (
    DEFAULT_TAB_ID,
    AggregateBucket,
    CumulativeCounter,
    CycleSnapshot,
    CycleStatus,
    ParsedEvent,
    TokenUsage,
    UsageEvent,
    UsageResult,
    WarningLine,
)
from agentmeter.parser import DEFAULT_WARNING_PREFIXES, StreamParser
from agentmeter.pricing import BillingMode, resolve_costs
from agentmeter.store import EventStore

logger = structlog.get_logger()

MAX_RETRY_ATTEMPTS = 3
# doubles on each retry: 0.1s, 0.2s
RETRY_BASE_DELAY_SECONDS = 0.1

SnapshotListener = Callable[[CycleSnapshot], None]
EventListener = Callable[[UsageEvent], None]


class _OpenCycle:
    """
    per-session state, owned by the pipeline and reachable
    only through the session id.
    """

    __slots__ = ("accumulator", "parser")

    def __init__(self, accumulator: "CycleAccumulator", parser: "StreamParser") -> "None":
        self.accumulator = accumulator
        self.parser = parser


class TelemetryPipeline:
    """
    TelemetryPipeline is the entry point used by the process
    supervision layer and the dashboards.

    Ingestion (begin_cycle, submit_chunk) is synchronous and never
    touches I/O. finalize_cycle persists the finished cycle with a
    bounded number of retries and updates the cumulative counter in the
    same write. Queries read the store from a worker thread.
    """

    def __init__(
        self,
        store: "EventStore",
        metrics: "PipelineMetrics | None" = None,
        bytes_per_token: "float" = BYTES_PER_TOKEN,
        debounce_seconds: "float" = DEFAULT_DELAY_SECONDS,
        warning_prefixes: "tuple[str, ...]" = DEFAULT_WARNING_PREFIXES,
        billing_mode: "BillingMode" = "api",
        max_retry_attempts: "int" = MAX_RETRY_ATTEMPTS,
        retry_base_delay: "float" = RETRY_BASE_DELAY_SECONDS,
        clock: "Callable[[], int]" = now_ms,
        tz: "tzinfo | None" = None,
    ) -> "None":
        self._store = store
        self._metrics = metrics
        self._bytes_per_token = bytes_per_token
        self._warning_prefixes = warning_prefixes
        self._billing_mode = billing_mode
        self._max_attempts = max(max_retry_attempts, 1)
        self._retry_base_delay = retry_base_delay
        self._clock = clock
        self._aggregator = Aggregator(store, tz)

        self._cycles: "dict[str, _OpenCycle]" = {}
        self._snapshot_listeners: "list[SnapshotListener]" = []
        self._event_listeners: "list[EventListener]" = []
        self._coalescer = SnapshotCoalescer(self._publish_snapshot, debounce_seconds)
        # finalized events that could not be persisted
        self.events_lost: "int" = 0

    @property
    def open_sessions(self) -> "list[str]":
        return list(self._cycles)

    def add_listener(self, listener: "SnapshotListener") -> "None":
        """
        registers a callback for coalesced live snapshots.
        """
        self._snapshot_listeners.append(listener)

    def add_event_listener(self, listener: "EventListener") -> "None":
        """
        registers a callback for events once they are persisted.
        """
        self._event_listeners.append(listener)

    def begin_cycle(
        self,
        session_id: "str",
        agent_type: "str",
        tab_id: "str" = DEFAULT_TAB_ID,
    ) -> "CycleSnapshot":
        if session_id in self._cycles:
            raise CycleAlreadyOpenError(session_id)

        accumulator = CycleAccumulator(
            session_id=session_id,
            agent_type=str(getattr(agent_type, "value", agent_type)),
            tab_id=tab_id,
            bytes_per_token=self._bytes_per_token,
            clock=self._clock,
        )
        self._cycles[session_id] = _OpenCycle(
            accumulator, StreamParser(self._warning_prefixes)
        )
        if self._metrics is not None:
            self._metrics.cycle_opened()

        logger.debug("cycle_started", session_id=session_id, tab_id=tab_id)
        snapshot = accumulator.snapshot()
        self._coalescer.offer(snapshot)
        return snapshot

    def submit_chunk(self, session_id: "str", raw: "bytes | str") -> "None":
        """
        parses one raw output chunk and merges it into the session's
        open cycle. Never raises for malformed input and never blocks.

        Everything in the chunk goes to the current cycle. Callers that
        may receive several upstream results in one chunk should parse
        themselves and use submit_events.
        """
        cycle = self._cycles.get(session_id)
        if cycle is None:
            logger.debug("chunk_without_open_cycle", session_id=session_id)
            return

        if self._metrics is not None:
            self._metrics.inc_chunk(cycle.accumulator.agent_type)
        self.submit_events(session_id, cycle.parser.feed(raw))

    def submit_events(
        self,
        session_id: "str",
        events: "Iterable[ParsedEvent]",
    ) -> "CycleSnapshot | None":
        """
        merges already parsed events into the session's open cycle
        and returns the resulting snapshot, or None when nothing was
        applied.
        """
        cycle = self._cycles.get(session_id)
        if cycle is None:
            logger.debug("events_without_open_cycle", session_id=session_id)
            return None

        accumulator = cycle.accumulator
        warnings = 0
        snapshot = None
        for event in events:
            if isinstance(event, WarningLine):
                warnings += 1
            snapshot = accumulator.apply(event)

        if self._metrics is not None:
            self._metrics.inc_warning_lines(accumulator.agent_type, warnings)
        if snapshot is not None:
            self._coalescer.offer(snapshot)
        return snapshot

    def snapshot(self, session_id: "str") -> "CycleSnapshot | None":
        cycle = self._cycles.get(session_id)
        if cycle is None:
            return None
        return cycle.accumulator.snapshot()

    async def finalize_cycle(
        self,
        session_id: "str",
        result: "UsageResult | None" = None,
    ) -> "UsageEvent":
        """
        closes the session's open cycle and persists it.

        The cycle completes with the given result or with one already
        received in the output stream; otherwise it is recorded as
        cancelled with its estimated data. Raises StoreError, after the
        retries are exhausted, if the event could not be persisted.
        """
        cycle = self._cycles.pop(session_id, None)
        if cycle is None:
            raise NoOpenCycleError(session_id)
        if self._metrics is not None:
            self._metrics.cycle_closed()

        accumulator = cycle.accumulator
        for event in cycle.parser.flush():
            accumulator.apply(event)

        event = accumulator.finalize(result)
        if accumulator.clock_anomaly and self._metrics is not None:
            self._metrics.inc_clock_anomaly()
        event = self._with_costs(event)

        self._coalescer.discard(session_id)
        self._publish_snapshot(_final_snapshot(event))

        await self._persist(event)

        logger.info(
            "cycle_finalized",
            session_id=event.session_id,
            status=event.status,
            output_tokens=event.output_tokens,
            estimated=event.estimated,
            duration_ms=event.duration_ms,
        )
        if self._metrics is not None:
            self._metrics.observe_cycle(event)
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("event_listener_error", session_id=session_id)
        return event

    def _with_costs(self, event: "UsageEvent") -> "UsageEvent":
        """
        records the reported and the calculated cost of a completed
        cycle; cost_usd is the calculated one when the model is priced.
        """
        if event.status != CycleStatus.COMPLETED.value:
            return event

        usage = TokenUsage(
            input_tokens=event.input_tokens,
            output_tokens=event.output_tokens or 0,
            cache_read_input_tokens=event.cache_read_input_tokens,
            cache_creation_input_tokens=event.cache_creation_input_tokens,
        )
        costs = resolve_costs(
            usage, event.agent_type, event.model, event.cost_usd, self._billing_mode
        )
        logger.debug(
            "cycle_costs",
            session_id=event.session_id,
            model=event.model,
            billing_mode=costs.billing_mode,
            reported_cost_usd=costs.reported_cost_usd,
            calculated_cost_usd=costs.calculated_cost_usd,
        )
        return replace(
            event,
            cost_usd=costs.cost_usd,
            reported_cost_usd=costs.reported_cost_usd,
            calculated_cost_usd=costs.calculated_cost_usd,
            billing_mode=costs.billing_mode,
            pricing_model=costs.pricing_model,
        )

    async def _persist(self, event: "UsageEvent") -> "CumulativeCounter":
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await asyncio.to_thread(self._store.record, event)
            except StoreError as e:
                if self._metrics is not None:
                    self._metrics.inc_store_error()

                if attempt == self._max_attempts:
                    self.events_lost += 1
                    if self._metrics is not None:
                        self._metrics.inc_event_lost()
                    logger.error(
                        "usage_event_lost",
                        event_id=event.id,
                        session_id=event.session_id,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise

                delay = self._retry_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "store_append_failed",
                    event_id=event.id,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    retry_in=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        raise AssertionError("unreachable")

    async def get_aggregates(
        self,
        group_by: "str",
        since: "int" = 0,
    ) -> "dict[str, list[AggregateBucket]]":
        return await asyncio.to_thread(self._aggregator.aggregate_by, group_by, since)

    async def get_summary(self, since: "int" = 0) -> "UsageSummary":
        return await asyncio.to_thread(self._aggregator.summarize, since)

    async def get_cumulative(
        self,
        session_id: "str",
        tab_id: "str" = DEFAULT_TAB_ID,
    ) -> "CumulativeCounter":
        return await asyncio.to_thread(self._store.get_cumulative, session_id, tab_id)

    async def close(self) -> "None":
        """
        cancels every open cycle, persisting its partial data, and
        flushes pending snapshots.
        """
        for session_id in list(self._cycles):
            try:
                await self.finalize_cycle(session_id)
            except StoreError:
                # already counted and logged as lost
                continue
        self._coalescer.flush()

    def _publish_snapshot(self, snapshot: "CycleSnapshot") -> "None":
        for listener in list(self._snapshot_listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("snapshot_listener_error", session_id=snapshot.session_id)


def _final_snapshot(event: "UsageEvent") -> "CycleSnapshot":
    return CycleSnapshot(
        session_id=event.session_id,
        tab_id=event.tab_id,
        start_time=event.start_time,
        end_time=event.timestamp,
        bytes_observed=event.bytes_observed,
        output_tokens=event.output_tokens,
        tokens_per_second=event.tokens_per_second,
        estimated=event.estimated,
        final=event.status == CycleStatus.COMPLETED.value,
    )
