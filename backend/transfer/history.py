"""In-memory record of completed file transfers, newest first."""

import itertools
import logging
import time

from transfer.models import Direction, HistoryRecord

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Append-only transfer history with change listeners."""

    def __init__(self) -> None:
        self._records: list[HistoryRecord] = []
        self._ids = itertools.count(1)
        self._callbacks: list = []  # async fn(record)

    def on_append(self, callback) -> None:
        """Register callback: async fn(record: HistoryRecord)."""
        self._callbacks.append(callback)

    async def append(self, name: str, direction: Direction) -> HistoryRecord:
        record = HistoryRecord(
            id=next(self._ids),
            name=name,
            direction=direction,
            timestamp=time.time(),
        )
        self._records.insert(0, record)
        logger.info(f"History: {direction.value} '{name}'")
        for cb in self._callbacks:
            try:
                await cb(record)
            except Exception as e:
                logger.error(f"History callback error: {e}")
        return record

    def records(self) -> list[HistoryRecord]:
        return list(self._records)

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
