"""Clan War League tracking: one episode per season, one nested episode per war day."""
import datetime
import logging
from typing import Any, Dict, List, Optional

from calculations import CANCELLED, summarize_cwl_season, war_outcome
from errors import EpisodeNotFound
from models import EpisodeEnded, EpisodeStarted, Phase, PhaseChanged, TrackingKind, TrackingRecord
from snapshots import CwlRoundSnapshot, CwlSnapshot, WarSnapshot, fingerprint, league_round_tags, parse_war
from strategy import ReconcileOutcome, TrackingStrategy, attack_events, record_new_attacks
from timeutils import isoformat, season_key

logger = logging.getLogger(__name__)

COMPLETED = "completed"


def _find_day(days: List[Dict[str, Any]], opponent_tag: str) -> Optional[Dict[str, Any]]:
    # First recorded day with this opponent wins
    return next((d for d in days if d.get("opponent_tag") == opponent_tag), None)


class CwlStrategy(TrackingStrategy):
    kind = TrackingKind.CWL
    log_tag = "[CWL]"

    async def fetch(self, api, clan: Dict[str, Any], record: Optional[TrackingRecord],
                    now: datetime.datetime) -> CwlSnapshot:
        clan_tag = clan["tag"]
        group = await api.get_league_group(clan_tag)
        state = group.get("state")
        if not state or state == "notInWar":
            raise EpisodeNotFound(f"{clan_tag} has no league group")
        season = group.get("season") or season_key(now)

        remembered: Dict[str, str] = {}
        league = None
        if record is not None and record.external_id == f"{clan_tag}-{season}":
            remembered = {str(d["day"]): d["war_tag"] for d in record.extra.get("days", []) if d.get("war_tag")}
            league = record.extra.get("league")
        if league is None:
            clan_data = await api.get_clan(clan_tag)
            league = (clan_data.get("warLeague") or {}).get("name")

        round_tags = league_round_tags(group)
        rounds = []
        for index, tags in enumerate(round_tags):
            day = index + 1
            known = remembered.get(str(day))
            candidates = [known] if known in tags else tags
            rounds.append(await self._find_round(api, clan_tag, day, candidates))

        return CwlSnapshot(
            clan_tag=clan_tag,
            state=state,
            season=season,
            league=league,
            round_count=len(round_tags),
            rounds=rounds,
        )

    async def _find_round(self, api, clan_tag: str, day: int, war_tags: List[str]) -> CwlRoundSnapshot:
        """Look through a round's wars for the one our clan is in."""
        for war_tag in war_tags:
            try:
                data = await api.get_league_war(war_tag)
            except EpisodeNotFound:
                continue
            sides = {(data.get("clan") or {}).get("tag"), (data.get("opponent") or {}).get("tag")}
            if clan_tag in sides:
                return CwlRoundSnapshot(day=day, war_tag=war_tag, war=parse_war(data, clan_tag, war_tag))
        return CwlRoundSnapshot(day=day)

    def reconcile(self, record: Optional[TrackingRecord], snapshot: CwlSnapshot, clan: Dict[str, Any],
                  now: datetime.datetime, previous: Optional[TrackingRecord] = None) -> ReconcileOutcome:
        outcome = ReconcileOutcome()

        if record is not None and record.external_id != snapshot.external_id:
            outcome.extend(self.end_missing(record, now))
            record = None

        if record is None:
            if self.is_ended(snapshot):
                return outcome
            record = self.new_record(clan, snapshot.external_id, snapshot.phase, now)
            record.extra = {"season": snapshot.season, "league": snapshot.league, "days": []}
            outcome.events.append(EpisodeStarted(record.external_id, phase=snapshot.phase))
            logger.info("%s League season %s started for %s", self.log_tag, snapshot.season, record.clan_tag)
        elif Phase.is_behind(snapshot.phase, record.phase):
            logger.info("%s Ignoring stale %s group for %s, season is in %s", self.log_tag,
                        snapshot.phase, record.clan_tag, record.phase)
            return outcome
        elif snapshot.phase != record.phase and not self.is_ended(snapshot):
            outcome.events.append(PhaseChanged(record.external_id, record.phase, snapshot.phase))
            record.phase = snapshot.phase

        record.extra["league"] = snapshot.league or record.extra.get("league")
        record.extra["round_count"] = snapshot.round_count
        days = record.extra.setdefault("days", [])

        for rnd in snapshot.rounds:
            if rnd.war is None:
                continue
            outcome.events.extend(self._merge_day(record, days, rnd, now))

        days.sort(key=lambda d: d["day"])
        self._roll_up(record, days)

        all_days_done = (snapshot.round_count > 0 and len(days) >= snapshot.round_count
                         and all(d.get("outcome") for d in days))
        if self.is_ended(snapshot) or all_days_done:
            outcome.events.extend(self._close(record, now))

        record.fingerprint = fingerprint(snapshot)
        outcome.records.append(record)
        return outcome

    def _merge_day(self, record: TrackingRecord, days: List[Dict[str, Any]],
                   rnd: CwlRoundSnapshot, now: datetime.datetime) -> list:
        war: WarSnapshot = rnd.war
        events = []
        entry = _find_day(days, war.opponent.tag)
        if entry is None:
            entry = {
                "day": rnd.day,
                "war_tag": rnd.war_tag,
                "opponent_tag": war.opponent.tag,
                "opponent_name": war.opponent.name,
                "outcome": None,
            }
            days.append(entry)
            events.append(EpisodeStarted(record.external_id, phase=war.phase, day=rnd.day))
            logger.info("%s %s day %d vs %s", self.log_tag, record.clan_tag, rnd.day, war.opponent.name)
        elif entry["day"] != rnd.day:
            logger.warning("%s %s round %d repeats opponent %s from day %d, ignoring it",
                           self.log_tag, record.clan_tag, rnd.day, war.opponent.tag, entry["day"])
            return events
        elif Phase.is_behind(war.phase, entry.get("state") or Phase.PREPARATION):
            logger.info("%s Ignoring stale day %d war for %s", self.log_tag, entry["day"], record.clan_tag)
            return events

        entry.update({
            "state": war.phase,
            "team_size": war.team_size,
            "stars": war.clan.stars,
            "destruction": war.clan.destruction_percentage,
            "opponent_stars": war.opponent.stars,
            "opponent_destruction": war.opponent.destruction_percentage,
            "start_time": war.start_time,
            "end_time": war.end_time,
        })

        events.extend(attack_events(record, record_new_attacks(record, war, now, day=entry["day"])))

        if war.phase == Phase.ENDED and not entry.get("outcome"):
            events.append(self._close_day(record, entry))
        return events

    def _close_day(self, record: TrackingRecord, entry: Dict[str, Any]) -> EpisodeEnded:
        entry["outcome"] = war_outcome(entry.get("stars", 0), entry.get("destruction", 0.0),
                                       entry.get("opponent_stars", 0), entry.get("opponent_destruction", 0.0))
        entry["state"] = Phase.ENDED
        logger.info("%s %s day %d: %s", self.log_tag, record.clan_tag, entry["day"], entry["outcome"])
        return EpisodeEnded(record.external_id, outcome=entry["outcome"], day=entry["day"], summary=dict(entry))

    @staticmethod
    def _roll_up(record: TrackingRecord, days: List[Dict[str, Any]]) -> None:
        record.clan_stars = sum(int(d.get("stars") or 0) for d in days)
        record.clan_destruction = sum(float(d.get("destruction") or 0) for d in days)
        record.opponent_stars = sum(int(d.get("opponent_stars") or 0) for d in days)
        record.opponent_destruction = sum(float(d.get("opponent_destruction") or 0) for d in days)
        if days:
            current = next((d for d in reversed(days) if d.get("state") == Phase.BATTLE), days[-1])
            record.opponent_tag = current.get("opponent_tag")
            record.opponent_name = current.get("opponent_name")
            record.team_size = int(current.get("team_size") or 0)
            record.extra["current_day"] = current["day"]

    def _close(self, record: TrackingRecord, now: datetime.datetime) -> list:
        """Finish any open day from its last known score, then the season."""
        days = record.extra.setdefault("days", [])
        events = [self._close_day(record, d) for d in days if not d.get("outcome")]
        record.phase = Phase.ENDED
        record.is_active = False
        record.end_time = isoformat(now)
        if not days:
            record.outcome = CANCELLED
            summary = {}
        else:
            record.outcome = COMPLETED
            summary = summarize_cwl_season(days, record.extra.get("league"))
            record.extra["summary"] = summary
        logger.info("%s Season %s closed for %s: %s", self.log_tag, record.external_id, record.clan_tag, summary)
        events.append(EpisodeEnded(record.external_id, outcome=record.outcome, summary=summary))
        return events

    def end_missing(self, record: TrackingRecord, now: datetime.datetime) -> ReconcileOutcome:
        return ReconcileOutcome(records=[record], events=self._close(record, now))
