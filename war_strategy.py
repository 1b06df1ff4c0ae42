"""Regular clan war tracking."""
import datetime
import logging
from typing import Any, Dict, Optional

from calculations import CANCELLED, best_attack, war_outcome
from errors import EpisodeNotFound
from models import EpisodeEnded, EpisodeStarted, Phase, PhaseChanged, TrackingKind, TrackingRecord
from reservations import apply_fulfillment
from snapshots import WarSnapshot, fingerprint, parse_war
from strategy import ReconcileOutcome, TrackingStrategy, attack_events, record_new_attacks
from timeutils import isoformat

logger = logging.getLogger(__name__)


def war_summary(record: TrackingRecord) -> Dict[str, Any]:
    top = best_attack(record.attack_log)
    return {
        "opponent_name": record.opponent_name,
        "clan_stars": record.clan_stars,
        "opponent_stars": record.opponent_stars,
        "clan_destruction": record.clan_destruction,
        "opponent_destruction": record.opponent_destruction,
        "attacks": len(record.attack_log),
        "team_size": record.team_size,
        "best_attack": None if top is None else {
            "attacker_name": top.attacker_name or top.attacker_tag,
            "base_number": top.base_number,
            "stars": top.stars,
            "destruction_percentage": top.destruction_percentage,
        },
    }


class WarStrategy(TrackingStrategy):
    """preparation -> battle -> ended, keyed by clan, opponent and preparation start."""
    kind = TrackingKind.WAR
    log_tag = "[WAR]"
    uses_ledger = True

    async def fetch(self, api, clan: Dict[str, Any], record: Optional[TrackingRecord],
                    now: datetime.datetime) -> WarSnapshot:
        data = await api.get_current_war(clan["tag"])
        state = data.get("state")
        if not state or state == "notInWar":
            raise EpisodeNotFound(f"{clan['tag']} is not in war")
        return parse_war(data, clan_tag=clan["tag"])

    def reconcile(self, record: Optional[TrackingRecord], snapshot: WarSnapshot, clan: Dict[str, Any],
                  now: datetime.datetime, previous: Optional[TrackingRecord] = None) -> ReconcileOutcome:
        outcome = ReconcileOutcome()

        if record is not None and record.external_id != snapshot.external_id:
            logger.info("%s %s moved on to a new war, closing %s", self.log_tag, record.clan_tag,
                        record.external_id)
            outcome.extend(self.end_missing(record, now))
            record = None

        if record is None:
            if self.is_ended(snapshot):
                # Finished before we ever saw it
                return outcome
            record = self.new_record(clan, snapshot.external_id, snapshot.phase, now)
            record.start_time = snapshot.start_time or record.start_time
            outcome.events.append(EpisodeStarted(record.external_id, phase=snapshot.phase))
            logger.info("%s New war for %s vs %s (%s)", self.log_tag, record.clan_tag,
                        snapshot.opponent.name, snapshot.phase)
        elif Phase.is_behind(snapshot.phase, record.phase):
            logger.info("%s Ignoring stale %s snapshot for %s, record is in %s", self.log_tag,
                        snapshot.phase, record.clan_tag, record.phase)
            return outcome
        elif snapshot.phase != record.phase and not self.is_ended(snapshot):
            outcome.events.append(PhaseChanged(record.external_id, record.phase, snapshot.phase))
            record.phase = snapshot.phase

        record.clan_name = snapshot.clan.name or record.clan_name
        record.opponent_tag = snapshot.opponent.tag
        record.opponent_name = snapshot.opponent.name
        record.team_size = snapshot.team_size
        record.clan_stars = snapshot.clan.stars
        record.clan_destruction = snapshot.clan.destruction_percentage
        record.opponent_stars = snapshot.opponent.stars
        record.opponent_destruction = snapshot.opponent.destruction_percentage
        record.end_time = snapshot.end_time
        record.extra["preparation_start_time"] = snapshot.preparation_start_time

        attacks = record_new_attacks(record, snapshot, now)
        for attack in attacks:
            if attack.base_number:
                apply_fulfillment(record, attack.base_number, attack.result)
        outcome.events.extend(attack_events(record, attacks))

        if self.is_ended(snapshot):
            outcome.events.append(self._close(record, war_outcome(
                record.clan_stars, record.clan_destruction,
                record.opponent_stars, record.opponent_destruction,
            ), now))

        record.fingerprint = fingerprint(snapshot)
        outcome.records.append(record)
        return outcome

    def end_missing(self, record: TrackingRecord, now: datetime.datetime) -> ReconcileOutcome:
        """The war vanished from the API: score it from what we saw last."""
        if record.phase == Phase.PREPARATION:
            result = CANCELLED
        else:
            result = war_outcome(record.clan_stars, record.clan_destruction,
                                 record.opponent_stars, record.opponent_destruction)
        event = self._close(record, result, now)
        return ReconcileOutcome(records=[record], events=[event])

    def _close(self, record: TrackingRecord, result: str, now: datetime.datetime) -> EpisodeEnded:
        record.phase = Phase.ENDED
        record.is_active = False
        record.outcome = result
        record.end_time = record.end_time or isoformat(now)
        logger.info("%s War %s ended: %s", self.log_tag, record.external_id, result)
        return EpisodeEnded(record.external_id, outcome=result, summary=war_summary(record))
