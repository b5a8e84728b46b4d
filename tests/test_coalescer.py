import asyncio

import pytest

from agentmeter.coalescer import SnapshotCoalescer
from agentmeter.models import CycleSnapshot


def _snapshot(session_id: "str", bytes_observed: "int") -> "CycleSnapshot":
    return CycleSnapshot(
        session_id=session_id,
        tab_id="default",
        start_time=0,
        end_time=None,
        bytes_observed=bytes_observed,
        output_tokens=None,
        tokens_per_second=None,
        estimated=False,
        final=False,
    )


class TestSnapshotCoalescer:
    @pytest.mark.asyncio
    async def test_rapid_updates_are_coalesced(self) -> "None":
        published: "list[CycleSnapshot]" = []
        coalescer = SnapshotCoalescer(published.append, delay_seconds=0.02)

        for i in range(1, 6):
            coalescer.offer(_snapshot("S1", i))
        assert published == []
        assert coalescer.pending == 1

        await asyncio.sleep(0.1)
        assert [s.bytes_observed for s in published] == [5]

    @pytest.mark.asyncio
    async def test_final_state_delivered_when_updates_stop(self) -> "None":
        published: "list[CycleSnapshot]" = []
        coalescer = SnapshotCoalescer(published.append, delay_seconds=0.02)

        coalescer.offer(_snapshot("S1", 1))
        await asyncio.sleep(0.05)
        coalescer.offer(_snapshot("S1", 2))
        await asyncio.sleep(0.05)

        assert [s.bytes_observed for s in published] == [1, 2]

    @pytest.mark.asyncio
    async def test_sessions_are_buffered_independently(self) -> "None":
        published: "list[CycleSnapshot]" = []
        coalescer = SnapshotCoalescer(published.append, delay_seconds=0.02)

        coalescer.offer(_snapshot("S1", 1))
        coalescer.offer(_snapshot("S2", 7))
        coalescer.flush()

        assert {s.session_id: s.bytes_observed for s in published} == {"S1": 1, "S2": 7}

    def test_publishes_immediately_without_event_loop(self) -> "None":
        published: "list[CycleSnapshot]" = []
        coalescer = SnapshotCoalescer(published.append, delay_seconds=0.02)
        coalescer.offer(_snapshot("S1", 3))
        assert len(published) == 1

    def test_discard_drops_pending_snapshot(self) -> "None":
        published: "list[CycleSnapshot]" = []
        coalescer = SnapshotCoalescer(published.append, delay_seconds=0)
        coalescer.discard("S1")
        coalescer.flush()
        assert published == []

    def test_failing_publisher_does_not_block_others(self) -> "None":
        seen: "list[str]" = []

        def publish(snapshot: "CycleSnapshot") -> "None":
            if snapshot.session_id == "bad":
                raise RuntimeError("boom")
            seen.append(snapshot.session_id)

        coalescer = SnapshotCoalescer(publish, delay_seconds=0)
        coalescer.offer(_snapshot("bad", 1))
        coalescer.offer(_snapshot("good", 1))
        assert seen == ["good"]
