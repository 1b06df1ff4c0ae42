"""Reservation ledger: first come, first served base calls during a war."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, TypeVar

from cache import ActiveRecordCache, KeyedLocks
from errors import (
    AlreadyReserved, InvalidBaseNumber, NoActiveWar, NotOwner,
    PersistenceConflict, ReservationNotFound,
)
from models import AttackResult, Phase, Reservation, TrackingKind, TrackingRecord
from timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================
# PURE RECORD OPERATIONS
# ============================

def apply_call(record: TrackingRecord, base_number: int, owner_id: str, note: Optional[str] = None,
               owner_name: Optional[str] = None, player_tag: Optional[str] = None) -> Reservation:
    if record.phase == Phase.ENDED or not record.is_active:
        raise NoActiveWar(record.clan_tag)
    if base_number < 1 or (record.team_size and base_number > record.team_size):
        raise InvalidBaseNumber(base_number, record.team_size)

    existing = record.open_reservation(base_number)
    if existing is not None:
        if existing.owner_id != owner_id:
            raise AlreadyReserved(base_number, existing.owner_id, existing.owner_name)
        existing.note = note
        if owner_name:
            existing.owner_name = owner_name
        if player_tag:
            existing.player_tag = player_tag
        return existing

    reservation = Reservation(
        base_number=base_number,
        owner_id=owner_id,
        reserved_at=isoformat(utcnow()),
        note=note,
        owner_name=owner_name,
        player_tag=player_tag,
    )
    record.reservations.append(reservation)
    return reservation


def apply_uncall(record: TrackingRecord, base_number: int, owner_id: str) -> Reservation:
    existing = record.open_reservation(base_number)
    if existing is None:
        raise ReservationNotFound(base_number)
    if existing.owner_id != owner_id:
        raise NotOwner(base_number, existing.owner_id)
    record.reservations.remove(existing)
    return existing


def apply_fulfillment(record: TrackingRecord, base_number: int, result: AttackResult) -> Optional[Reservation]:
    """
    Mark the call on ``base_number`` as fulfilled with ``result``.

    An open call is fulfilled first. Without one, the latest fulfilled call on
    that base keeps whichever result ranks higher. Returns the touched
    reservation, or None when the base was never called.
    """
    reservation = record.open_reservation(base_number)
    if reservation is not None:
        reservation.fulfilled = True
        reservation.result = result
        return reservation

    fulfilled = [r for r in record.reservations if r.base_number == base_number and r.fulfilled]
    if not fulfilled:
        return None
    reservation = fulfilled[-1]
    if result.beats(reservation.result):
        reservation.result = result
    return reservation


# ============================
# LEDGER
# ============================

class ReservationLedger:
    """
    Base calls stored on the active war record of each clan.

    Every mutation for a clan tag runs under that clan's ledger lock. The
    reconciler takes the same lock while it merges a war snapshot, so calls
    and fulfillment never overwrite each other.
    """

    def __init__(self, records: ActiveRecordCache, locks: Optional[KeyedLocks] = None):
        self.records = records
        self.locks = locks or KeyedLocks()

    @asynccontextmanager
    async def hold(self, clan_tag: str) -> AsyncIterator[None]:
        async with self.locks.hold(("ledger", clan_tag)):
            yield

    async def _mutate(self, clan_tag: str, change: Callable[[TrackingRecord], T]) -> T:
        """Apply ``change`` to the active war record and save it, retrying once on a conflict."""
        async with self.hold(clan_tag):
            record = await self.records.get(clan_tag, TrackingKind.WAR)
            if record is None:
                raise NoActiveWar(clan_tag)
            value = change(record)
            if value is None:
                return value
            try:
                await self.records.save(record)
            except PersistenceConflict:
                logger.info("[LEDGER] Conflict writing calls for %s, retrying with a fresh read", clan_tag)
                record = await self.records.refresh(clan_tag, TrackingKind.WAR)
                if record is None:
                    raise NoActiveWar(clan_tag)
                value = change(record)
                if value is not None:
                    await self.records.save(record)
            return value

    async def call(self, clan_tag: str, base_number: int, owner_id: str, note: Optional[str] = None,
                   owner_name: Optional[str] = None, player_tag: Optional[str] = None) -> Reservation:
        reservation = await self._mutate(
            clan_tag, lambda r: apply_call(r, base_number, str(owner_id), note, owner_name, player_tag)
        )
        logger.info("[LEDGER] %s called base #%d in %s", owner_id, base_number, clan_tag)
        return reservation

    async def uncall(self, clan_tag: str, base_number: int, owner_id: str) -> Reservation:
        reservation = await self._mutate(clan_tag, lambda r: apply_uncall(r, base_number, str(owner_id)))
        logger.info("[LEDGER] %s removed call on base #%d in %s", owner_id, base_number, clan_tag)
        return reservation

    async def mark_fulfilled(self, clan_tag: str, base_number: int,
                             result: AttackResult) -> Optional[Reservation]:
        """No-op (returns None) when there is no active war or the base was never called."""
        try:
            return await self._mutate(clan_tag, lambda r: apply_fulfillment(r, base_number, result))
        except NoActiveWar:
            return None

    async def list_reservations(self, clan_tag: str) -> List[Reservation]:
        record = await self.records.get(clan_tag, TrackingKind.WAR)
        if record is None:
            return []
        return sorted(record.reservations, key=lambda r: (r.base_number, r.fulfilled, r.reserved_at))
