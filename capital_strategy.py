"""Clan Capital tracking: district upgrades and raid weekend counters."""
import datetime
import logging
from typing import Any, Dict, Optional

from calculations import crossed_milestones
from config import CAPITAL_MILESTONES, RAID_HISTORY_LIMIT
from errors import EpisodeNotFound
from models import EpisodeEnded, EpisodeStarted, MilestoneCrossed, Phase, TrackingKind, TrackingRecord, UpgradeCompleted
from snapshots import CapitalSnapshot, fingerprint, parse_capital
from strategy import ReconcileOutcome, TrackingStrategy
from timeutils import isoformat, parse_api_time, raid_weekend_window

logger = logging.getLogger(__name__)

CAPITAL_HALL = "Capital Hall"
COMPLETED = "completed"


def empty_raid() -> Dict[str, Any]:
    return {
        "state": None,
        "total_loot": 0,
        "total_attacks": 0,
        "districts_destroyed": 0,
        "raids_completed": 0,
        "member_attacks": {},
    }


class CapitalStrategy(TrackingStrategy):
    """
    One episode per raid weekend.

    District levels and the raid history carry over from one weekend's record
    to the next; raid counters start from zero each weekend. Between weekends
    the last record stays the baseline for upgrade announcements.
    """
    kind = TrackingKind.CAPITAL
    log_tag = "[CAPITAL]"

    async def fetch(self, api, clan: Dict[str, Any], record: Optional[TrackingRecord],
                    now: datetime.datetime) -> CapitalSnapshot:
        clan_data = await api.get_clan(clan["tag"])
        if not (clan_data.get("clanCapital") or {}).get("capitalHallLevel"):
            raise EpisodeNotFound(f"{clan['tag']} has no clan capital")

        window = raid_weekend_window(now)
        if window is None:
            # District levels are still watched between raid weekends
            return parse_capital(clan_data)
        start, end = window

        raid = None
        try:
            seasons = await api.get_capital_raid_seasons(clan["tag"], limit=1)
        except EpisodeNotFound:
            seasons = {}
        for item in seasons.get("items") or []:
            item_start = parse_api_time(item.get("startTime"))
            if item_start is not None and abs(item_start - start) < datetime.timedelta(days=1):
                raid = item
                break

        return parse_capital(clan_data, isoformat(start), isoformat(end), raid)

    def reconcile(self, record: Optional[TrackingRecord], snapshot: CapitalSnapshot, clan: Dict[str, Any],
                  now: datetime.datetime, previous: Optional[TrackingRecord] = None) -> ReconcileOutcome:
        outcome = ReconcileOutcome()

        if record is not None and record.external_id != snapshot.external_id:
            outcome.extend(self.end_missing(record, now))
            previous, record = record, None

        if not snapshot.in_window:
            if previous is not None:
                self._between_weekends(previous, snapshot, outcome)
            return outcome

        if record is None:
            record = self._open(clan, snapshot, now, previous)
            outcome.events.append(EpisodeStarted(record.external_id, phase=Phase.RAID))

        record.clan_name = snapshot.clan_name or record.clan_name
        outcome.events.extend(self._diff_upgrades(record, snapshot))
        outcome.events.extend(self._merge_raid(record, snapshot))

        record.fingerprint = fingerprint(snapshot)
        outcome.records.append(record)
        return outcome

    def _open(self, clan: Dict[str, Any], snapshot: CapitalSnapshot, now: datetime.datetime,
              previous: Optional[TrackingRecord]) -> TrackingRecord:
        record = self.new_record(clan, snapshot.external_id, Phase.RAID, now)
        record.start_time = snapshot.window_start
        record.end_time = snapshot.window_end
        seed = previous.extra if previous is not None else {}
        record.extra = {
            "capital_hall_level": int(seed.get("capital_hall_level") or 0),
            "districts": dict(seed.get("districts") or {}),
            "raid": empty_raid(),
            "milestones_reached": [],
            "raid_history": list(seed.get("raid_history") or []),
        }
        logger.info("%s Raid weekend %s opened for %s", self.log_tag, snapshot.window_start, record.clan_tag)
        return record

    def _between_weekends(self, last: TrackingRecord, snapshot: CapitalSnapshot,
                          outcome: ReconcileOutcome) -> None:
        """Diff levels against the last weekend's record, which keeps the baseline until the next one opens."""
        levels = (int(last.extra.get("capital_hall_level") or 0), dict(last.extra.get("districts") or {}))
        outcome.events.extend(self._diff_upgrades(last, snapshot))
        changed = levels != (last.extra.get("capital_hall_level"), last.extra.get("districts"))
        if changed and not any(r is last for r in outcome.records):
            outcome.records.append(last)

    def _diff_upgrades(self, record: TrackingRecord, snapshot: CapitalSnapshot) -> list:
        """Upgrades are only reported against a known baseline; the first sighting just records levels."""
        events = []
        extra = record.extra
        known_hall = int(extra.get("capital_hall_level") or 0)
        districts: Dict[str, int] = extra.setdefault("districts", {})
        has_baseline = known_hall > 0 or bool(districts)

        if has_baseline and snapshot.capital_hall_level > known_hall:
            events.append(UpgradeCompleted(record.external_id, CAPITAL_HALL, snapshot.capital_hall_level))
        extra["capital_hall_level"] = max(known_hall, snapshot.capital_hall_level)

        for name, level in sorted(snapshot.districts.items()):
            old = districts.get(name)
            if has_baseline and level > (old or 0):
                events.append(UpgradeCompleted(record.external_id, name, level))
                logger.info("%s %s upgraded %s to level %d", self.log_tag, record.clan_tag, name, level)
            districts[name] = max(old or 0, level)
        return events

    def _merge_raid(self, record: TrackingRecord, snapshot: CapitalSnapshot) -> list:
        raid = record.extra.setdefault("raid", empty_raid())
        raid["state"] = snapshot.raid_state or raid.get("state")
        for counter in ("total_loot", "total_attacks", "districts_destroyed", "raids_completed"):
            raid[counter] = max(int(raid.get(counter) or 0), getattr(snapshot, counter))

        member_attacks = raid.setdefault("member_attacks", {})
        for m in snapshot.members:
            stats = record.ensure_member(m.tag, m.name)
            stats.name = m.name or stats.name
            stats.resources_looted = max(stats.resources_looted, m.resources_looted)
            member_attacks[m.tag] = max(int(member_attacks.get(m.tag) or 0), m.attacks)

        reached = record.extra.setdefault("milestones_reached", [])
        events = []
        for value in crossed_milestones(raid["total_loot"], reached, CAPITAL_MILESTONES):
            reached.append(value)
            events.append(MilestoneCrossed(record.external_id, value))
            logger.info("%s %s passed %d capital gold looted", self.log_tag, record.clan_tag, value)
        return events

    def end_missing(self, record: TrackingRecord, now: datetime.datetime) -> ReconcileOutcome:
        """The raid window closed: move this weekend's counters into the history."""
        raid = record.extra.get("raid") or empty_raid()
        top = sorted(record.members, key=lambda m: m.resources_looted, reverse=True)[:3]
        summary = {
            "window_start": record.start_time,
            "window_end": record.end_time,
            "total_loot": raid.get("total_loot", 0),
            "total_attacks": raid.get("total_attacks", 0),
            "districts_destroyed": raid.get("districts_destroyed", 0),
            "raids_completed": raid.get("raids_completed", 0),
            "participants": len(record.members),
            "top_looters": [{"tag": m.tag, "name": m.name, "loot": m.resources_looted} for m in top],
        }
        history = record.extra.setdefault("raid_history", [])
        history.append(summary)
        del history[:-RAID_HISTORY_LIMIT]

        record.phase = Phase.ENDED
        record.is_active = False
        record.outcome = COMPLETED
        logger.info("%s Raid weekend %s closed for %s with %d loot", self.log_tag, record.start_time,
                    record.clan_tag, summary["total_loot"])
        event = EpisodeEnded(record.external_id, outcome=COMPLETED, summary=summary)
        return ReconcileOutcome(records=[record], events=[event])
