"""Point-in-time snapshots parsed from raw API payloads."""
import hashlib
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from models import Phase
from timeutils import isoformat, parse_api_time

WAR_STATE_PHASES = {
    "preparation": Phase.PREPARATION,
    "inWar": Phase.BATTLE,
    "warEnded": Phase.ENDED,
}

GROUP_STATE_PHASES = {
    "preparation": Phase.PREPARATION,
    "inWar": Phase.BATTLE,
    "ended": Phase.ENDED,
}

# Placeholder tag the API uses for rounds that are not drawn yet
UNRESOLVED_WAR_TAG = "#0"


@dataclass
class WarAttackSnapshot:
    defender_tag: str
    stars: int
    destruction_percentage: float


@dataclass
class WarMemberSnapshot:
    tag: str
    name: str
    townhall_level: int
    map_position: int
    attacks: List[WarAttackSnapshot] = field(default_factory=list)


@dataclass
class WarSideSnapshot:
    tag: str
    name: str
    stars: int = 0
    destruction_percentage: float = 0.0
    members: List[WarMemberSnapshot] = field(default_factory=list)


@dataclass
class WarSnapshot:
    state: str
    team_size: int
    clan: WarSideSnapshot
    opponent: WarSideSnapshot
    preparation_start_time: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    war_tag: Optional[str] = None

    @property
    def phase(self) -> str:
        return WAR_STATE_PHASES.get(self.state, Phase.PREPARATION)

    @property
    def external_id(self) -> str:
        return f"{self.clan.tag}-{self.opponent.tag}-{self.preparation_start_time}"

    def base_numbers(self) -> Dict[str, int]:
        """Opponent tag -> base number (rank by map position)."""
        ordered = sorted(self.opponent.members, key=lambda m: (m.map_position, m.tag))
        return {m.tag: i + 1 for i, m in enumerate(ordered)}

    def opponent_names(self) -> Dict[str, str]:
        return {m.tag: m.name for m in self.opponent.members}


@dataclass
class CwlRoundSnapshot:
    day: int
    war_tag: Optional[str] = None
    war: Optional[WarSnapshot] = None


@dataclass
class CwlSnapshot:
    clan_tag: str
    state: str
    season: str
    league: Optional[str] = None
    round_count: int = 0
    rounds: List[CwlRoundSnapshot] = field(default_factory=list)

    @property
    def phase(self) -> str:
        return GROUP_STATE_PHASES.get(self.state, Phase.PREPARATION)

    @property
    def external_id(self) -> str:
        return f"{self.clan_tag}-{self.season}"


@dataclass
class RaidMemberSnapshot:
    tag: str
    name: str
    attacks: int = 0
    attack_limit: int = 0
    resources_looted: int = 0


@dataclass
class CapitalSnapshot:
    clan_tag: str
    clan_name: str
    capital_hall_level: int
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    districts: Dict[str, int] = field(default_factory=dict)
    raid_state: Optional[str] = None
    total_loot: int = 0
    total_attacks: int = 0
    districts_destroyed: int = 0
    raids_completed: int = 0
    members: List[RaidMemberSnapshot] = field(default_factory=list)

    @property
    def phase(self) -> str:
        return Phase.RAID

    @property
    def external_id(self) -> str:
        if self.window_start is None:
            return f"{self.clan_tag}-between-raids"
        return f"{self.clan_tag}-raid-{self.window_start[:10]}"

    @property
    def in_window(self) -> bool:
        return self.window_start is not None


def fingerprint(snapshot: Any) -> str:
    """Cheap digest of a snapshot; equal digests mean nothing changed."""
    payload = json.dumps(asdict(snapshot), sort_keys=True, default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


# ============================
# PARSERS
# ============================

def _parse_side(data: Dict[str, Any]) -> WarSideSnapshot:
    members = []
    for m in data.get("members") or []:
        if not isinstance(m, dict) or not m.get("tag"):
            continue
        attacks = [
            WarAttackSnapshot(
                defender_tag=a.get("defenderTag", ""),
                stars=int(a.get("stars") or 0),
                destruction_percentage=float(a.get("destructionPercentage") or 0),
            )
            for a in (m.get("attacks") or [])
            if isinstance(a, dict)
        ]
        members.append(WarMemberSnapshot(
            tag=m["tag"],
            name=m.get("name", m["tag"]),
            townhall_level=int(m.get("townhallLevel") or 0),
            map_position=int(m.get("mapPosition") or 0),
            attacks=attacks,
        ))
    return WarSideSnapshot(
        tag=data.get("tag", ""),
        name=data.get("name", ""),
        stars=int(data.get("stars") or 0),
        destruction_percentage=float(data.get("destructionPercentage") or 0),
        members=members,
    )


def _api_time(value: Optional[str]) -> Optional[str]:
    return isoformat(parse_api_time(value))


def parse_war(data: Dict[str, Any], clan_tag: Optional[str] = None,
              war_tag: Optional[str] = None) -> WarSnapshot:
    """
    Build a WarSnapshot from a ``currentwar`` or league war payload.

    League wars list the two clans in arbitrary order; when ``clan_tag`` is
    given the snapshot is oriented so that ``clan`` is the tracked clan.
    """
    clan = _parse_side(data.get("clan") or {})
    opponent = _parse_side(data.get("opponent") or {})
    if clan_tag and opponent.tag == clan_tag:
        clan, opponent = opponent, clan
    return WarSnapshot(
        state=data.get("state", "notInWar"),
        team_size=int(data.get("teamSize") or len(clan.members)),
        clan=clan,
        opponent=opponent,
        preparation_start_time=_api_time(data.get("preparationStartTime")),
        start_time=_api_time(data.get("startTime")),
        end_time=_api_time(data.get("endTime")),
        war_tag=war_tag,
    )


def league_round_tags(group: Dict[str, Any]) -> List[List[str]]:
    """War tags per round; unresolved rounds become empty lists."""
    rounds = []
    for r in group.get("rounds") or []:
        tags = [t for t in (r.get("warTags") or []) if t and t != UNRESOLVED_WAR_TAG]
        rounds.append(tags)
    return rounds


def parse_capital(clan: Dict[str, Any], window_start: Optional[str] = None, window_end: Optional[str] = None,
                  raid: Optional[Dict[str, Any]] = None) -> CapitalSnapshot:
    capital = clan.get("clanCapital") or {}
    districts = {
        d["name"]: int(d.get("districtHallLevel") or 0)
        for d in capital.get("districts") or []
        if isinstance(d, dict) and d.get("name")
    }
    snapshot = CapitalSnapshot(
        clan_tag=clan.get("tag", ""),
        clan_name=clan.get("name", ""),
        capital_hall_level=int(capital.get("capitalHallLevel") or 0),
        window_start=window_start,
        window_end=window_end,
        districts=districts,
    )
    if raid:
        snapshot.raid_state = raid.get("state")
        snapshot.total_loot = int(raid.get("capitalTotalLoot") or 0)
        snapshot.total_attacks = int(raid.get("totalAttacks") or 0)
        snapshot.districts_destroyed = int(raid.get("enemyDistrictsDestroyed") or 0)
        snapshot.raids_completed = int(raid.get("raidsCompleted") or 0)
        snapshot.members = [
            RaidMemberSnapshot(
                tag=m["tag"],
                name=m.get("name", m["tag"]),
                attacks=int(m.get("attacks") or 0),
                attack_limit=int(m.get("attackLimit") or 0) + int(m.get("bonusAttackLimit") or 0),
                resources_looted=int(m.get("capitalResourcesLooted") or 0),
            )
            for m in raid.get("members") or []
            if isinstance(m, dict) and m.get("tag")
        ]
    return snapshot
