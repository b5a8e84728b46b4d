import asyncio
from typing import Callable

import structlog

from agentmeter.models import CycleSnapshot

logger = structlog.get_logger()

# default delay before pending snapshots are published
DEFAULT_DELAY_SECONDS = 0.05


class SnapshotCoalescer:
    """
    SnapshotCoalescer is a bounded-delay buffer between the
    accumulators and the snapshot readers.

    Every offered snapshot replaces the pending one for its session,
    and a single timer publishes all pending snapshots once the delay
    elapses. Only the publishing rate is throttled: the latest state of
    every session is always delivered, even when updates stop arriving
    in the middle of a window. Without a running event loop snapshots
    are published immediately.
    """

    def __init__(
        self,
        publish: "Callable[[CycleSnapshot], None]",
        delay_seconds: "float" = DEFAULT_DELAY_SECONDS,
    ) -> "None":
        self._publish = publish
        self._delay = delay_seconds
        self._pending: "dict[str, CycleSnapshot]" = {}
        self._timer: "asyncio.TimerHandle | None" = None

    @property
    def pending(self) -> "int":
        return len(self._pending)

    def offer(self, snapshot: "CycleSnapshot") -> "None":
        self._pending[snapshot.session_id] = snapshot

        if self._delay <= 0:
            self.flush()
            return

        if self._timer is not None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return

        self._timer = loop.call_later(self._delay, self.flush)

    def flush(self) -> "None":
        """
        publishes every pending snapshot now and cancels the timer.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        pending, self._pending = self._pending, {}
        for snapshot in pending.values():
            try:
                self._publish(snapshot)
            except Exception:
                logger.exception("snapshot_publish_error", session_id=snapshot.session_id)

    def discard(self, session_id: "str") -> "None":
        self._pending.pop(session_id, None)
