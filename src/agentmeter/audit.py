"""Reconciles locally recorded usage with the provider's own report.

Provider reports are bucketed by UTC day, so local events are bucketed
by UTC day here as well, not by the consumer's local time zone.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timezone
from typing import Iterable, Sequence

import structlog

from agentmeter.aggregation import aggregate_by
from agentmeter.models import UsageEvent
from agentmeter.pricing import ANTHROPIC_AGENT_TYPES
from agentmeter.provider.base import ProviderDailyUsage

logger = structlog.get_logger()

# relative difference below which a day counts as matching
DEFAULT_TOLERANCE = 0.05


@dataclass(frozen=True, slots=True)
class AuditEntry:
    date: "date"
    local_output_tokens: "int"
    provider_output_tokens: "int"
    difference: "int"
    # relative to the provider figure; 0.0 when both are zero
    percent_diff: "float"
    match: "bool"


def reconcile(
    events: "Iterable[UsageEvent]",
    provider_usage: "Sequence[ProviderDailyUsage]",
    tolerance: "float" = DEFAULT_TOLERANCE,
    agent_types: "frozenset[str]" = ANTHROPIC_AGENT_TYPES,
) -> "list[AuditEntry]":
    """
    compares daily output tokens recorded locally for the given agent
    types against the provider's daily totals, one entry per day that
    appears on either side.
    """
    local: "dict[date, int]" = defaultdict(int)
    buckets = aggregate_by(
        (e for e in events if e.agent_type in agent_types),
        "agent_type",
        tz=timezone.utc,
    )
    for series in buckets.values():
        for bucket in series:
            local[bucket.date] += bucket.total_output_tokens

    remote: "dict[date, int]" = defaultdict(int)
    for usage in provider_usage:
        remote[usage.date] += usage.output_tokens

    entries: "list[AuditEntry]" = []
    for day in sorted(set(local) | set(remote)):
        local_tokens = local.get(day, 0)
        remote_tokens = remote.get(day, 0)
        difference = local_tokens - remote_tokens
        if remote_tokens:
            percent = abs(difference) / remote_tokens
        else:
            percent = 0.0 if local_tokens == 0 else 1.0

        entry = AuditEntry(
            date=day,
            local_output_tokens=local_tokens,
            provider_output_tokens=remote_tokens,
            difference=difference,
            percent_diff=percent,
            match=percent <= tolerance,
        )
        if not entry.match:
            logger.warning(
                "audit_mismatch",
                date=day.isoformat(),
                local=local_tokens,
                provider=remote_tokens,
                percent_diff=round(percent, 4),
            )
        entries.append(entry)

    return entries
