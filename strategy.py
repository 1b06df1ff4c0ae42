"""Shared pieces of the per-kind tracking strategies."""
import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from models import Attack, AttackRecorded, Event, Phase, TrackingKind, TrackingRecord
from snapshots import WarSnapshot
from timeutils import isoformat


@dataclass
class ReconcileOutcome:
    """Records to persist (in order) and the events they produced."""
    records: List[TrackingRecord] = field(default_factory=list)
    events: List[Event] = field(default_factory=list)

    def extend(self, other: "ReconcileOutcome") -> None:
        self.records.extend(other.records)
        self.events.extend(other.events)


class TrackingStrategy:
    """
    Kind-specific half of the reconciler.

    ``fetch`` turns API payloads into a snapshot (raising EpisodeNotFound or
    TransientFetchError), ``reconcile`` diffs a snapshot against the active
    record and ``end_missing`` closes a record whose episode vanished.
    Neither ``reconcile`` nor ``end_missing`` does I/O.
    """
    kind: TrackingKind
    log_tag = "[TRACK]"
    # War records carry base calls, so merges must hold the ledger lock
    uses_ledger = False

    async def fetch(self, api, clan: Dict[str, Any], record: Optional[TrackingRecord],
                    now: datetime.datetime):
        raise NotImplementedError

    def is_ended(self, snapshot) -> bool:
        return snapshot.phase == Phase.ENDED

    def reconcile(self, record: Optional[TrackingRecord], snapshot, clan: Dict[str, Any],
                  now: datetime.datetime, previous: Optional[TrackingRecord] = None) -> ReconcileOutcome:
        raise NotImplementedError

    def end_missing(self, record: TrackingRecord, now: datetime.datetime) -> ReconcileOutcome:
        raise NotImplementedError

    def new_record(self, clan: Dict[str, Any], external_id: str, phase: str,
                   now: datetime.datetime) -> TrackingRecord:
        return TrackingRecord(
            clan_tag=clan["tag"],
            guild_id=str(clan.get("guild_id", "")),
            kind=self.kind,
            external_id=external_id,
            phase=phase,
            clan_name=clan.get("name", ""),
            start_time=isoformat(now),
        )


def record_new_attacks(record: TrackingRecord, war: WarSnapshot, now: datetime.datetime,
                       day: Optional[int] = None) -> List[Attack]:
    """
    Append every attack of ``war`` not yet in the record's attack log.

    Counters of the attacking member move with each appended attack, so
    re-seeing an attack on a later poll changes nothing.
    """
    seen = record.attack_identities()
    base_numbers = war.base_numbers()
    defender_names = war.opponent_names()
    added = []
    for m in sorted(war.clan.members, key=lambda m: (m.map_position, m.tag)):
        stats = record.ensure_member(m.tag, m.name, m.townhall_level, m.map_position)
        stats.name = m.name or stats.name
        stats.townhall_level = max(stats.townhall_level, m.townhall_level)
        if day is None:
            stats.map_position = m.map_position
        for a in m.attacks:
            attack = Attack(
                attacker_tag=m.tag,
                defender_tag=a.defender_tag,
                stars=a.stars,
                destruction_percentage=a.destruction_percentage,
                attacker_name=m.name,
                defender_name=defender_names.get(a.defender_tag, ""),
                base_number=base_numbers.get(a.defender_tag, 0),
                day=day,
                recorded_at=isoformat(now),
            )
            if attack.identity in seen:
                continue
            seen.add(attack.identity)
            record.attack_log.append(attack)
            stats.record_attack(attack)
            added.append(attack)
    return added


def attack_events(record: TrackingRecord, attacks: List[Attack]) -> List[Event]:
    return [AttackRecorded(record.external_id, attack) for attack in attacks]
