"""Background polling: catch-up at startup, then one loop per tracking kind."""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from config import CAPITAL_POLL_INTERVAL, CWL_POLL_INTERVAL, WAR_POLL_INTERVAL
from models import TrackingKind, TrackingRecord
from reconciler import Reconciler

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS: Dict[TrackingKind, float] = {
    TrackingKind.WAR: WAR_POLL_INTERVAL,
    TrackingKind.CWL: CWL_POLL_INTERVAL,
    TrackingKind.CAPITAL: CAPITAL_POLL_INTERVAL,
}


def clan_for_record(record: TrackingRecord, clans: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Registry entry for a record's clan, or a minimal one if the clan was unregistered."""
    for clan in clans:
        if clan["tag"] == record.clan_tag:
            return clan
    return {"name": record.clan_name, "tag": record.clan_tag, "guild_id": record.guild_id, "channels": {}}


class TrackingScheduler:
    """Drives the reconciler for every registered clan."""

    def __init__(self, reconciler: Reconciler, clan_source: Callable[[], List[Dict[str, Any]]],
                 intervals: Optional[Dict[TrackingKind, float]] = None):
        self.reconciler = reconciler
        self.clan_source = clan_source
        self.intervals = dict(DEFAULT_INTERVALS)
        if intervals:
            self.intervals.update(intervals)
        self._tasks: Dict[TrackingKind, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    async def catch_up(self) -> int:
        """
        Load every active record and poll each one once.

        Anything that happened while the process was down (including an
        episode that ended) comes out of this pass as ordinary events.
        """
        records = await self.reconciler.records.load()
        if not records:
            return 0
        clans = self.clan_source()
        semaphore = asyncio.Semaphore(self.reconciler.concurrency)

        async def repair(record: TrackingRecord):
            async with semaphore:
                await self.reconciler.check_one_clan(clan_for_record(record, clans), record.kind)

        results = await asyncio.gather(*(repair(r) for r in records), return_exceptions=True)
        for record, result in zip(records, results):
            if isinstance(result, Exception):
                logger.error("[SCHED] Catch-up failed for %s %s: %r", record.kind.value, record.clan_tag, result)
        logger.info("[SCHED] Catch-up checked %d active records", len(records))
        return len(records)

    async def poll(self, kind: TrackingKind):
        clans = self.clan_source()
        if not clans:
            return {}
        return await self.reconciler.check_all_clans(clans, [kind])

    async def _loop(self, kind: TrackingKind, interval: float):
        logger.info("[SCHED] %s loop started (every %ss)", kind.value, interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.poll(kind)
            except Exception as e:
                logger.exception("[SCHED] Error in %s loop: %s", kind.value, e)

    async def start(self):
        if self.running:
            return
        await self.catch_up()
        for kind, interval in self.intervals.items():
            if kind in self.reconciler.strategies:
                self._tasks[kind] = asyncio.create_task(self._loop(kind, interval))

    async def stop(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("[SCHED] Polling stopped")
