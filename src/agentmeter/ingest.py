import asyncio
from typing import BinaryIO, Iterable

import structlog

from agentmeter.metrics import PipelineMetrics
from agentmeter.models import DEFAULT_TAB_ID, ParsedEvent, UsageResult, WarningLine
from agentmeter.parser import DEFAULT_WARNING_PREFIXES, StreamParser
from agentmeter.pipeline import TelemetryPipeline

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 4096


class StreamIngestor:
    """
    StreamIngestor feeds one session's raw agent output into the
    pipeline, one cycle per upstream result.

    The stream is parsed here rather than in the pipeline so that a
    read holding the end of one turn and the start of the next is split
    at the result: events after it open a new cycle. A cycle opens on
    the first content event; warning lines alone never open one. Output
    still open at end of stream, or when stop() is called, is finalized
    as a cancelled cycle.
    """

    def __init__(
        self,
        pipeline: "TelemetryPipeline",
        session_id: "str",
        agent_type: "str",
        tab_id: "str" = DEFAULT_TAB_ID,
        chunk_size: "int" = DEFAULT_CHUNK_SIZE,
        warning_prefixes: "tuple[str, ...]" = DEFAULT_WARNING_PREFIXES,
        metrics: "PipelineMetrics | None" = None,
    ) -> "None":
        self._pipeline = pipeline
        self._session_id = session_id
        self._agent_type = agent_type
        self._tab_id = tab_id
        self._chunk_size = chunk_size
        self._parser = StreamParser(warning_prefixes)
        self._metrics = metrics
        self._stop_event: "asyncio.Event" = asyncio.Event()
        self.cycles: "int" = 0

    def stop(self) -> "None":
        """
        signals the ingest loop to stop after the current chunk.
        """
        self._stop_event.set()

    async def run(self, stream: "BinaryIO") -> "None":
        """
        reads the stream until EOF or stop(). Blocking reads run in
        a worker thread so the event loop stays responsive.
        """
        while not self._stop_event.is_set():
            chunk = await self._read(stream)
            if not chunk:
                break
            await self.feed(chunk)

        await self._apply(self._parser.flush())
        if self._session_id in self._pipeline.open_sessions:
            await self._finalize()

    async def feed(self, chunk: "bytes") -> "None":
        if self._metrics is not None:
            self._metrics.inc_chunk(self._agent_type)
        await self._apply(self._parser.feed(chunk))

    async def _apply(self, events: "Iterable[ParsedEvent]") -> "None":
        batch: "list[ParsedEvent]" = []
        for event in events:
            batch.append(event)
            if isinstance(event, UsageResult):
                self._submit(batch)
                batch = []
                await self._finalize()
        if batch:
            self._submit(batch)

    def _submit(self, batch: "list[ParsedEvent]") -> "None":
        if self._session_id not in self._pipeline.open_sessions:
            if all(isinstance(e, WarningLine) for e in batch):
                logger.debug(
                    "warnings_outside_cycle",
                    session_id=self._session_id,
                    count=len(batch),
                )
                return
            self._pipeline.begin_cycle(self._session_id, self._agent_type, self._tab_id)
        self._pipeline.submit_events(self._session_id, batch)

    async def _finalize(self) -> "None":
        event = await self._pipeline.finalize_cycle(self._session_id)
        self.cycles += 1
        logger.debug("ingest_cycle_done", session_id=self._session_id, status=event.status)

    async def _read(self, stream: "BinaryIO") -> "bytes":
        read_task = asyncio.ensure_future(
            asyncio.to_thread(_read_some, stream, self._chunk_size)
        )
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        done, _ = await asyncio.wait(
            {read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        stop_task.cancel()
        if read_task not in done:
            # the worker thread finishes its read on its own
            read_task.cancel()
            return b""
        return read_task.result()


def _read_some(stream: "BinaryIO", size: "int") -> "bytes":
    read1 = getattr(stream, "read1", None)
    if read1 is not None:
        return read1(size)
    return stream.read(size)
