from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from agentmeter.models import UsageEvent


class PipelineMetrics:
    """
    exposes the telemetry pipeline's own health as Prometheus
    metrics: ingestion volume, finalized cycles, persistence
    failures and lost events.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._chunks: "Counter" = Counter(
            "agentmeter_chunks_total",
            "Raw output chunks submitted for parsing",
            ["agent_type"],
            registry=registry,
        )
        self._warnings: "Counter" = Counter(
            "agentmeter_warning_lines_total",
            "Shell warning lines stripped from agent output",
            ["agent_type"],
            registry=registry,
        )
        self._cycles: "Counter" = Counter(
            "agentmeter_cycles_total",
            "Finalized cycles by outcome",
            ["agent_type", "status"],
            registry=registry,
        )
        self._output_tokens: "Counter" = Counter(
            "agentmeter_output_tokens_total",
            "Output tokens of finalized cycles",
            ["agent_type", "estimated"],
            registry=registry,
        )
        self._cycle_duration: "Histogram" = Histogram(
            "agentmeter_cycle_duration_seconds",
            "Wall-clock duration of finalized cycles",
            ["agent_type"],
            buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
            registry=registry,
        )
        self._store_errors: "Counter" = Counter(
            "agentmeter_store_errors_total",
            "Failed attempts to append an event to the store",
            registry=registry,
        )
        self._events_lost: "Counter" = Counter(
            "agentmeter_events_lost_total",
            "Finalized events dropped after exhausting store retries",
            registry=registry,
        )
        self._clock_anomalies: "Counter" = Counter(
            "agentmeter_clock_anomalies_total",
            "Cycles whose wall-clock duration was negative and got clamped",
            registry=registry,
        )
        self._open_cycles: "Gauge" = Gauge(
            "agentmeter_open_cycles",
            "Cycles currently in progress",
            registry=registry,
        )

    def inc_chunk(self, agent_type: "str") -> "None":
        self._chunks.labels(agent_type=agent_type).inc()

    def inc_warning_lines(self, agent_type: "str", count: "int") -> "None":
        if count:
            self._warnings.labels(agent_type=agent_type).inc(count)

    def cycle_opened(self) -> "None":
        self._open_cycles.inc()

    def cycle_closed(self) -> "None":
        self._open_cycles.dec()

    def observe_cycle(self, event: "UsageEvent") -> "None":
        """
        records a finalized cycle once it is safely persisted.
        """
        self._cycles.labels(agent_type=event.agent_type, status=event.status).inc()
        if event.output_tokens:
            self._output_tokens.labels(
                agent_type=event.agent_type,
                estimated=str(event.estimated).lower(),
            ).inc(event.output_tokens)
        self._cycle_duration.labels(agent_type=event.agent_type).observe(
            event.duration_ms / 1000
        )

    def inc_store_error(self) -> "None":
        self._store_errors.inc()

    def inc_event_lost(self) -> "None":
        self._events_lost.inc()

    def inc_clock_anomaly(self) -> "None":
        self._clock_anomalies.inc()
