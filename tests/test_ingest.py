import io
import json

import pytest
from prometheus_client import CollectorRegistry

from agentmeter.ingest import StreamIngestor
from agentmeter.metrics import PipelineMetrics
from agentmeter.pipeline import TelemetryPipeline
from agentmeter.store import EventStore


def _pipeline(
    store: "EventStore",
    registry: "CollectorRegistry",
    clock: "FakeClock",
) -> "TelemetryPipeline":
    return TelemetryPipeline(
        store,
        PipelineMetrics(registry=registry),
        debounce_seconds=0,
        clock=clock,
    )


def _line(message: "dict") -> "bytes":
    return (json.dumps(message) + "\n").encode()


class TestStreamIngestor:
    @pytest.mark.asyncio
    async def test_each_result_closes_a_cycle(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        ingestor = StreamIngestor(pipeline, "S1", "claude-code")

        await ingestor.feed(b"first answer\n")
        await ingestor.feed(_line({"type": "result", "usage": {"output_tokens": 20}}))
        await ingestor.feed(b"second answer\n")
        await ingestor.feed(_line({"type": "result", "usage": {"output_tokens": 30}}))

        assert ingestor.cycles == 2
        assert [e.output_tokens for e in store.scan()] == [20, 30]
        assert pipeline.open_sessions == []

    @pytest.mark.asyncio
    async def test_run_reads_stream_to_end(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        stream = io.BytesIO(
            b"bash: warning: setlocale: LC_ALL: cannot change locale\n"
            + _line(
                {
                    "type": "assistant",
                    "message": {
                        "content": [{"type": "text", "text": "hi"}],
                        "usage": {"output_tokens": 2},
                    },
                }
            )
            + _line({"type": "result", "usage": {"output_tokens": 2}, "total_cost_usd": 0.001})
        )
        ingestor = StreamIngestor(pipeline, "S1", "claude-code", tab_id="tab-1", chunk_size=16)
        await ingestor.run(stream)

        (event,) = list(store.scan())
        assert event.status == "completed"
        assert event.output_tokens == 2
        assert event.cost_usd == 0.001
        assert event.tab_id == "tab-1"
        assert ingestor.cycles == 1

    @pytest.mark.asyncio
    async def test_unfinished_output_is_cancelled_at_eof(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        ingestor = StreamIngestor(pipeline, "S1", "codex")
        await ingestor.run(io.BytesIO(b"x" * 350))

        (event,) = list(store.scan())
        assert event.status == "cancelled"
        assert event.estimated is True
        assert event.output_tokens == 100

    @pytest.mark.asyncio
    async def test_empty_stream_records_nothing(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        ingestor = StreamIngestor(pipeline, "S1", "codex")
        await ingestor.run(io.BytesIO(b""))
        assert list(store.scan()) == []
        assert ingestor.cycles == 0

    @pytest.mark.asyncio
    async def test_stop_before_run_finalizes_nothing(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        ingestor = StreamIngestor(pipeline, "S1", "codex")
        ingestor.stop()
        await ingestor.run(io.BytesIO(b"never read"))
        assert list(store.scan()) == []

    @pytest.mark.asyncio
    async def test_two_turns_in_one_read_are_separate_cycles(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        stream = io.BytesIO(
            b"first answer\n"
            + _line({"type": "result", "usage": {"output_tokens": 20}})
            + b"second answer\n"
            + _line({"type": "result", "usage": {"output_tokens": 30}})
        )
        ingestor = StreamIngestor(pipeline, "S1", "claude-code")
        await ingestor.run(stream)

        events = list(store.scan())
        assert ingestor.cycles == 2
        assert [e.output_tokens for e in events] == [20, 30]
        assert [e.status for e in events] == ["completed", "completed"]
        assert [e.bytes_observed for e in events] == [12, 13]

    @pytest.mark.asyncio
    async def test_feed_splits_a_chunk_at_each_result(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        ingestor = StreamIngestor(pipeline, "S1", "claude-code")

        await ingestor.feed(
            b"first answer\n"
            + _line({"type": "result", "usage": {"output_tokens": 20}})
            + b"second answer\n"
        )
        assert ingestor.cycles == 1
        assert pipeline.open_sessions == ["S1"]

        await ingestor.feed(_line({"type": "result", "usage": {"output_tokens": 30}}))

        events = list(store.scan())
        assert [e.output_tokens for e in events] == [20, 30]
        assert events[1].bytes_observed == 13
        assert pipeline.open_sessions == []

    @pytest.mark.asyncio
    async def test_result_line_split_across_reads(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        stream = io.BytesIO(
            b"first answer\n"
            + _line({"type": "result", "usage": {"output_tokens": 20}})
            + b"second answer\n"
            + _line({"type": "result", "usage": {"output_tokens": 30}})
        )
        ingestor = StreamIngestor(pipeline, "S1", "claude-code", chunk_size=7)
        await ingestor.run(stream)

        events = list(store.scan())
        assert ingestor.cycles == 2
        assert [e.output_tokens for e in events] == [20, 30]
        assert all(not e.estimated for e in events)

    @pytest.mark.asyncio
    async def test_warning_after_result_opens_no_cycle(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        pipeline = _pipeline(store, registry, clock)
        ingestor = StreamIngestor(pipeline, "S1", "claude-code")

        await ingestor.feed(
            b"answer\n"
            + _line({"type": "result", "usage": {"output_tokens": 5}})
            + b"bash: warning: setlocale: LC_ALL: cannot change locale\n"
        )
        await ingestor.run(io.BytesIO(b""))

        assert ingestor.cycles == 1
        assert pipeline.open_sessions == []
        assert len(list(store.scan())) == 1

    @pytest.mark.asyncio
    async def test_chunks_are_counted(
        self,
        store: "EventStore",
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        metrics = PipelineMetrics(registry=registry)
        pipeline = TelemetryPipeline(store, metrics, debounce_seconds=0, clock=clock)
        ingestor = StreamIngestor(pipeline, "S1", "codex", metrics=metrics)

        await ingestor.feed(b"one\n")
        await ingestor.feed(b"two\n")

        chunks = registry.get_sample_value("agentmeter_chunks_total", {"agent_type": "codex"})
        assert chunks == 2.0
