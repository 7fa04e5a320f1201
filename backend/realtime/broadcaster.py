"""Periodic snapshot of the most recent records to every connection."""
from __future__ import annotations

import asyncio
import logging

from common.config import BROADCAST_INTERVAL_SECONDS, RECENT_RECORDS_LIMIT
from db.store import PotholeStore
from realtime.events import RecentRecordsEvent, dump
from realtime.hub import RegionHub

logger = logging.getLogger(__name__)


class RecentRecordsBroadcaster:
    def __init__(
        self,
        store: PotholeStore,
        hub: RegionHub,
        interval_seconds: float = BROADCAST_INTERVAL_SECONDS,
        limit: int = RECENT_RECORDS_LIMIT,
    ):
        self.store = store
        self.hub = hub
        self.interval_seconds = interval_seconds
        self.limit = limit
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="recent-records-broadcast")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def broadcast_once(self) -> int:
        """Returns the number of connections the snapshot was sent to."""
        records = await asyncio.to_thread(self.store.list_recent, self.limit)
        return await self.hub.broadcast_all(dump(RecentRecordsEvent(records=records)))

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                sent = await self.broadcast_once()
                logger.debug("[broadcast] Recent records sent to %d connection(s)", sent)
            except Exception:
                logger.exception("[broadcast] Recent records cycle failed")
