from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Iterable, Literal

import structlog

from agentmeter.models import AggregateBucket, CycleStatus, UsageEvent
from agentmeter.store import EventStore

logger = structlog.get_logger()

GroupBy = Literal["session", "agent_type"]

GROUP_BY_CHOICES: "tuple[str, ...]" = ("session", "agent_type")


def local_day(timestamp_ms: "int", tz: "tzinfo | None" = None) -> "date":
    """
    maps an epoch-milliseconds timestamp to its calendar day. With no
    tz the consumer's local time zone is used.
    """
    return datetime.fromtimestamp(timestamp_ms / 1000, tz).date()


def _group_key(event: "UsageEvent", group_by: "str") -> "str":
    if group_by == "session":
        return event.session_id
    if group_by == "agent_type":
        return event.agent_type
    raise ValueError(f"unsupported group_by {group_by!r}, expected one of {GROUP_BY_CHOICES}")


@dataclass
class _BucketTotals:
    count: "int" = 0
    total_duration_ms: "int" = 0
    total_output_tokens: "int" = 0
    rate_sum: "float" = 0.0
    rate_count: "int" = 0

    def add(self, event: "UsageEvent") -> "None":
        self.count += 1
        self.total_duration_ms += max(event.duration_ms, 0)
        # a missing token count contributes zero, the event still counts
        self.total_output_tokens += event.output_tokens or 0
        if event.tokens_per_second is not None:
            self.rate_sum += event.tokens_per_second
            self.rate_count += 1

    def to_bucket(self, group_key: "str", day: "date") -> "AggregateBucket":
        return AggregateBucket(
            group_key=group_key,
            date=day,
            count=self.count,
            total_duration_ms=self.total_duration_ms,
            total_output_tokens=self.total_output_tokens,
            avg_tokens_per_second=(
                self.rate_sum / self.rate_count if self.rate_count else None
            ),
        )


def aggregate_by(
    events: "Iterable[UsageEvent]",
    group_by: "str",
    tz: "tzinfo | None" = None,
) -> "dict[str, list[AggregateBucket]]":
    """
    groups events by session id or agent type and by calendar day.
    Each group's buckets are ordered by day ascending. The average
    throughput only considers events that reported one.
    """
    # validate up front so an empty range still rejects a bad key
    if group_by not in GROUP_BY_CHOICES:
        raise ValueError(
            f"unsupported group_by {group_by!r}, expected one of {GROUP_BY_CHOICES}"
        )

    groups: "dict[str, dict[date, _BucketTotals]]" = defaultdict(
        lambda: defaultdict(_BucketTotals)
    )
    for event in events:
        day = local_day(event.timestamp, tz)
        groups[_group_key(event, group_by)][day].add(event)

    return {
        key: [totals.to_bucket(key, day) for day, totals in sorted(days.items())]
        for key, days in sorted(groups.items())
    }


@dataclass
class UsageSummary:
    """
    UsageSummary holds the grand totals shown on the
    dashboard summary cards.
    """

    total_cycles: "int" = 0
    cancelled_cycles: "int" = 0
    estimated_cycles: "int" = 0
    total_duration_ms: "int" = 0
    total_input_tokens: "int" = 0
    total_output_tokens: "int" = 0
    total_cost_usd: "float" = 0.0
    # sum of the upstream reported costs, for comparison with total_cost_usd
    total_reported_cost_usd: "float" = 0.0
    avg_tokens_per_second: "float | None" = None
    avg_duration_ms: "int" = 0
    sessions: "int" = 0
    # hour of day (0-23) -> cycle count
    by_hour: "dict[int, int]" = field(default_factory=dict)


def summarize(
    events: "Iterable[UsageEvent]",
    tz: "tzinfo | None" = None,
) -> "UsageSummary":
    summary = UsageSummary()
    sessions: "set[str]" = set()
    by_hour: "dict[int, int]" = defaultdict(int)
    rate_sum = 0.0
    rate_count = 0

    for event in events:
        summary.total_cycles += 1
        if event.status == CycleStatus.CANCELLED.value:
            summary.cancelled_cycles += 1
        if event.estimated:
            summary.estimated_cycles += 1
        summary.total_duration_ms += max(event.duration_ms, 0)
        summary.total_input_tokens += event.input_tokens
        summary.total_output_tokens += event.output_tokens or 0
        summary.total_cost_usd += event.cost_usd or 0.0
        summary.total_reported_cost_usd += event.reported_cost_usd or 0.0
        if event.tokens_per_second is not None:
            rate_sum += event.tokens_per_second
            rate_count += 1
        sessions.add(event.session_id)
        by_hour[datetime.fromtimestamp(event.timestamp / 1000, tz).hour] += 1

    if summary.total_cycles:
        summary.avg_duration_ms = round(summary.total_duration_ms / summary.total_cycles)
    if rate_count:
        summary.avg_tokens_per_second = rate_sum / rate_count
    summary.sessions = len(sessions)
    summary.by_hour = dict(sorted(by_hour.items()))
    return summary


class Aggregator:
    """
    Aggregator answers grouped queries by scanning the event store.
    Nothing it computes is stored; the event log stays the only
    source of truth.
    """

    def __init__(self, store: "EventStore", tz: "tzinfo | None" = None) -> "None":
        self._store = store
        self._tz = tz

    def aggregate_by(
        self,
        group_by: "str",
        since: "int" = 0,
    ) -> "dict[str, list[AggregateBucket]]":
        result = aggregate_by(self._store.scan(since), group_by, self._tz)
        logger.debug("aggregation_done", group_by=group_by, since=since, groups=len(result))
        return result

    def summarize(self, since: "int" = 0) -> "UsageSummary":
        return summarize(self._store.scan(since), self._tz)
