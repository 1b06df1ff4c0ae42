"""Generic reconciliation loop shared by every tracking kind."""
import asyncio
import datetime
import logging
from contextlib import AsyncExitStack
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from cache import ActiveRecordCache, KeyedLocks
from capital_strategy import CapitalStrategy
from config import FETCH_TIMEOUT, RECONCILE_CONCURRENCY
from cwl_strategy import CwlStrategy
from errors import EpisodeNotFound, PersistenceConflict, TransientFetchError
from models import Event, TrackingKind, TrackingRecord
from notifier import EventContext
from reservations import ReservationLedger
from snapshots import fingerprint
from strategy import ReconcileOutcome, TrackingStrategy
from timeutils import utcnow
from war_strategy import WarStrategy

logger = logging.getLogger(__name__)


def default_strategies() -> Dict[TrackingKind, TrackingStrategy]:
    return {s.kind: s for s in (WarStrategy(), CwlStrategy(), CapitalStrategy())}


class Reconciler:
    """
    Polls one clan for one kind, merges the snapshot into the active record
    and hands new events to the notifier.

    Passes for the same clan and kind never overlap. Records are written to
    the store before the cache, and events are dispatched only after the
    write succeeded.
    """

    def __init__(self, api, store, notifier=None, records: Optional[ActiveRecordCache] = None,
                 ledger: Optional[ReservationLedger] = None,
                 strategies: Optional[Dict[TrackingKind, TrackingStrategy]] = None,
                 concurrency: int = RECONCILE_CONCURRENCY, fetch_timeout: float = FETCH_TIMEOUT,
                 clock: Callable[[], datetime.datetime] = utcnow):
        self.api = api
        self.store = store
        self.notifier = notifier
        self.records = records or ActiveRecordCache(store)
        self.locks = KeyedLocks()
        self.ledger = ledger or ReservationLedger(self.records, self.locks)
        self.strategies = strategies or default_strategies()
        self.concurrency = concurrency
        self.fetch_timeout = fetch_timeout
        self.clock = clock
        # Event identities already handed to the notifier by this process
        self._delivered: Set[Tuple[Any, ...]] = set()

    async def get_active_record(self, clan_tag: str, kind: TrackingKind) -> Optional[TrackingRecord]:
        return await self.records.get(clan_tag, kind)

    async def check_one_clan(self, clan: Dict[str, Any], kind: TrackingKind) -> List[Event]:
        """Run one reconciliation pass. Returns the events that were produced."""
        strategy = self.strategies[kind]
        clan_tag = clan["tag"]

        async with self.locks.hold((clan_tag, kind)):
            now = self.clock()
            current = await self.records.get(clan_tag, kind)
            try:
                snapshot = await asyncio.wait_for(
                    strategy.fetch(self.api, clan, current, now), timeout=self.fetch_timeout
                )
            except asyncio.TimeoutError:
                logger.warning("%s Fetch timed out for %s, retrying next cycle", strategy.log_tag, clan_tag)
                return []
            except TransientFetchError as e:
                logger.warning("%s Fetch failed for %s: %s", strategy.log_tag, clan_tag, e)
                return []
            except EpisodeNotFound as e:
                logger.debug("%s No episode for %s: %s", strategy.log_tag, clan_tag, e)
                snapshot = None

            done = ReconcileOutcome()
            try:
                await self._merge(strategy, clan, snapshot, now, done)
            except PersistenceConflict as e:
                logger.info("%s Write conflict for %s (%s), retrying with a fresh read",
                            strategy.log_tag, clan_tag, e)
                self.records.forget(clan_tag, kind)
                try:
                    await self._merge(strategy, clan, snapshot, now, done)
                except PersistenceConflict as e:
                    logger.error("%s Giving up on %s this cycle: %s", strategy.log_tag, clan_tag, e)

            await self._dispatch(clan, kind, done)
            return done.events

    async def _merge(self, strategy: TrackingStrategy, clan: Dict[str, Any], snapshot,
                     now: datetime.datetime, done: ReconcileOutcome) -> None:
        """Merge ``snapshot`` and add every record that was written, with its events, to ``done``."""
        clan_tag = clan["tag"]
        async with AsyncExitStack() as stack:
            if strategy.uses_ledger:
                await stack.enter_async_context(self.ledger.hold(clan_tag))

            record = await self.records.get(clan_tag, strategy.kind)
            if snapshot is None:
                if record is None:
                    return
                result = strategy.end_missing(record, now)
            else:
                if (record is not None and record.external_id == snapshot.external_id
                        and record.fingerprint == fingerprint(snapshot)):
                    return
                previous = None
                if record is None:
                    previous = await self.store.get_latest(clan_tag, strategy.kind)
                    if previous is not None and previous.external_id == snapshot.external_id:
                        # Already closed; never reopen an episode
                        return
                result = strategy.reconcile(record, snapshot, clan, now, previous)

            # Events of a record are kept once it is written, even if a later write conflicts
            seen = {e.identity for e in done.events}
            for changed in result.records:
                saved = await self.records.save(changed)
                done.records = [r for r in done.records if r.external_id != saved.external_id] + [saved]
                for event in result.events:
                    if event.external_id == saved.external_id and event.identity not in seen:
                        seen.add(event.identity)
                        done.events.append(event)
            written = {r.external_id for r in result.records}
            done.events.extend(e for e in result.events if e.external_id not in written and e.identity not in seen)

    async def _dispatch(self, clan: Dict[str, Any], kind: TrackingKind, result: ReconcileOutcome) -> None:
        if self.notifier is None:
            return
        by_episode = {r.external_id: r for r in result.records}
        for event in result.events:
            if event.identity in self._delivered:
                continue
            self._delivered.add(event.identity)
            record = by_episode.get(event.external_id)
            context = EventContext(
                clan_tag=clan["tag"],
                clan_name=clan.get("name") or (record.clan_name if record else ""),
                guild_id=str(clan.get("guild_id", "")),
                kind=kind,
                opponent_name=record.opponent_name if record else None,
                channels=clan.get("channels") or {},
                record=record,
            )
            try:
                await self.notifier.notify(event, context)
            except Exception as e:
                logger.error("[NOTIFY] Failed to deliver %s for %s: %s", event.name, clan["tag"], e)

        # A closed record is never reopened, so its identities are no longer needed
        closed = {r.external_id for r in result.records if not r.is_active}
        if closed:
            self._delivered = {i for i in self._delivered if i[0] not in closed}

    async def check_all_clans(self, clans: Iterable[Dict[str, Any]],
                              kinds: Optional[Iterable[TrackingKind]] = None) -> Dict[Tuple[str, TrackingKind], List[Event]]:
        """Reconcile every clan for every requested kind, a bounded number at a time."""
        kinds = list(kinds) if kinds is not None else list(self.strategies)
        semaphore = asyncio.Semaphore(self.concurrency)
        jobs = [(clan, kind) for clan in clans for kind in kinds]

        async def run(clan: Dict[str, Any], kind: TrackingKind) -> List[Event]:
            async with semaphore:
                return await self.check_one_clan(clan, kind)

        results = await asyncio.gather(*(run(c, k) for c, k in jobs), return_exceptions=True)
        out: Dict[Tuple[str, TrackingKind], List[Event]] = {}
        for (clan, kind), result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.error("[SCHED] %s check failed for %s: %r", kind.value, clan.get("tag"), result)
                out[(clan["tag"], kind)] = []
            else:
                out[(clan["tag"], kind)] = result
        return out
