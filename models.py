"""Data models for tracked episodes, base calls and reconciliation events."""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

AttackIdentity = Tuple[str, str, int, float]


class TrackingKind(str, Enum):
    WAR = "war"
    CWL = "cwl"
    CAPITAL = "capital"


class Phase:
    """Phase names stored on records. Not every kind uses every phase."""
    PREPARATION = "preparation"
    BATTLE = "battle"
    RAID = "raid"
    ENDED = "ended"

    ORDER = {PREPARATION: 0, BATTLE: 1, RAID: 1, ENDED: 2}

    @classmethod
    def is_behind(cls, phase: str, than: str) -> bool:
        """True when ``phase`` comes before ``than`` in an episode's life."""
        return cls.ORDER.get(phase, 0) < cls.ORDER.get(than, 0)



@dataclass(frozen=True)
class AttackResult:
    stars: int
    destruction_percentage: float

    def beats(self, other: Optional["AttackResult"]) -> bool:
        """True when this result ranks above ``other`` (stars, then destruction)."""
        if other is None:
            return True
        return (self.stars, self.destruction_percentage) > (other.stars, other.destruction_percentage)


@dataclass(frozen=True)
class Attack:
    """One attack observed in a war snapshot."""
    attacker_tag: str
    defender_tag: str
    stars: int
    destruction_percentage: float
    attacker_name: str = ""
    defender_name: str = ""
    base_number: int = 0
    day: Optional[int] = None
    recorded_at: Optional[str] = None

    @property
    def identity(self) -> AttackIdentity:
        return (self.attacker_tag, self.defender_tag, self.stars, self.destruction_percentage)

    @property
    def result(self) -> AttackResult:
        return AttackResult(self.stars, self.destruction_percentage)


@dataclass
class MemberStats:
    """Accumulated per-player counters for one episode."""
    tag: str
    name: str = ""
    townhall_level: int = 0
    map_position: int = 0
    attacks_used: int = 0
    stars_earned: int = 0
    total_destruction: float = 0.0
    best_result: Optional[AttackResult] = None
    resources_looted: int = 0

    def record_attack(self, attack: Attack) -> None:
        self.attacks_used += 1
        self.stars_earned += attack.stars
        self.total_destruction += attack.destruction_percentage
        if attack.result.beats(self.best_result):
            self.best_result = attack.result


@dataclass
class Reservation:
    """A base call made by a Discord user during a war."""
    base_number: int
    owner_id: str
    reserved_at: str
    note: Optional[str] = None
    owner_name: Optional[str] = None
    player_tag: Optional[str] = None
    fulfilled: bool = False
    result: Optional[AttackResult] = None


@dataclass
class TrackingRecord:
    """Durable state for one clan, one tracking kind and one episode."""
    clan_tag: str
    guild_id: str
    kind: TrackingKind
    external_id: str
    phase: str
    is_active: bool = True
    fingerprint: Optional[str] = None
    clan_name: str = ""
    opponent_tag: Optional[str] = None
    opponent_name: Optional[str] = None
    team_size: int = 0
    clan_stars: int = 0
    clan_destruction: float = 0.0
    opponent_stars: int = 0
    opponent_destruction: float = 0.0
    members: List[MemberStats] = field(default_factory=list)
    attack_log: List[Attack] = field(default_factory=list)
    reservations: List[Reservation] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
    outcome: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    version: int = 0
    record_id: Optional[int] = None

    @property
    def key(self) -> Tuple[str, TrackingKind]:
        return (self.clan_tag, self.kind)

    def attack_identities(self) -> Set[AttackIdentity]:
        return {a.identity for a in self.attack_log}

    def member(self, tag: str) -> Optional[MemberStats]:
        for m in self.members:
            if m.tag == tag:
                return m
        return None

    def ensure_member(self, tag: str, name: str = "", townhall_level: int = 0,
                      map_position: int = 0) -> MemberStats:
        m = self.member(tag)
        if m is None:
            m = MemberStats(tag=tag, name=name, townhall_level=townhall_level, map_position=map_position)
            self.members.append(m)
        return m

    def open_reservation(self, base_number: int) -> Optional[Reservation]:
        for r in self.reservations:
            if r.base_number == base_number and not r.fulfilled:
                return r
        return None

    def to_doc(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc["kind"] = self.kind.value
        doc.pop("record_id", None)
        doc.pop("version", None)
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any], record_id: Optional[int] = None,
                 version: int = 0) -> "TrackingRecord":
        data = dict(doc)
        data["kind"] = TrackingKind(data["kind"])
        data["members"] = [_member_from_dict(m) for m in data.get("members") or []]
        data["attack_log"] = [Attack(**a) for a in data.get("attack_log") or []]
        data["reservations"] = [_reservation_from_dict(r) for r in data.get("reservations") or []]
        data["record_id"] = record_id
        data["version"] = version
        return cls(**data)


def _result_from_dict(data: Optional[Dict[str, Any]]) -> Optional[AttackResult]:
    if not data:
        return None
    return AttackResult(int(data["stars"]), float(data["destruction_percentage"]))


def _member_from_dict(data: Dict[str, Any]) -> MemberStats:
    data = dict(data)
    data["best_result"] = _result_from_dict(data.get("best_result"))
    return MemberStats(**data)


def _reservation_from_dict(data: Dict[str, Any]) -> Reservation:
    data = dict(data)
    data["result"] = _result_from_dict(data.get("result"))
    return Reservation(**data)


# ============================
# EVENTS
# ============================

@dataclass(frozen=True, eq=False)
class Event:
    """Base for everything the reconciler hands to the notifier."""
    external_id: str

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def key(self) -> Tuple[Any, ...]:
        return ()

    @property
    def identity(self) -> Tuple[str, str, Tuple[Any, ...]]:
        return (self.external_id, self.name, self.key)


@dataclass(frozen=True, eq=False)
class EpisodeStarted(Event):
    phase: str
    day: Optional[int] = None

    @property
    def key(self) -> Tuple[Any, ...]:
        return (self.day,)


@dataclass(frozen=True, eq=False)
class PhaseChanged(Event):
    from_phase: str
    to_phase: str

    @property
    def key(self) -> Tuple[Any, ...]:
        return (self.from_phase, self.to_phase)


@dataclass(frozen=True, eq=False)
class AttackRecorded(Event):
    attack: Attack

    @property
    def key(self) -> Tuple[Any, ...]:
        return self.attack.identity


@dataclass(frozen=True, eq=False)
class UpgradeCompleted(Event):
    entity: str
    new_level: int

    @property
    def key(self) -> Tuple[Any, ...]:
        return (self.entity, self.new_level)


@dataclass(frozen=True, eq=False)
class MilestoneCrossed(Event):
    value: int

    @property
    def key(self) -> Tuple[Any, ...]:
        return (self.value,)


@dataclass(frozen=True, eq=False)
class EpisodeEnded(Event):
    outcome: str
    day: Optional[int] = None
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[Any, ...]:
        return (self.day,)
