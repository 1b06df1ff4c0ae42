import datetime
from typing import Any, Dict, List, Optional, Tuple

import pytest

from errors import EpisodeNotFound
from reconciler import Reconciler
from tracking_store import TrackingStore

CLAN_TAG = "#CLAN"
OPPONENT_TAG = "#OPP"
PREP_START = "20261019T070000.000Z"
NOW = datetime.datetime(2026, 10, 19, 12, 0, tzinfo=datetime.timezone.utc)

CLAN = {"name": "Test Clan", "tag": CLAN_TAG, "guild_id": "42", "channels": {}}


def side(tag: str, name: str, prefix: str, size: int, stars: int = 0, destruction: float = 0.0,
         attacks: Optional[Dict[str, List[Tuple[str, int, float]]]] = None) -> Dict[str, Any]:
    attacks = attacks or {}
    members = []
    for i in range(1, size + 1):
        member_tag = f"#{prefix}{i}"
        members.append({
            "tag": member_tag,
            "name": f"{prefix}{i}",
            "townhallLevel": 15,
            "mapPosition": i,
            "attacks": [
                {"attackerTag": member_tag, "defenderTag": d, "stars": s, "destructionPercentage": p}
                for d, s, p in attacks.get(member_tag, [])
            ],
        })
    return {"tag": tag, "name": name, "stars": stars, "destructionPercentage": destruction, "members": members}


def war_payload(state: str = "preparation", attacks=None, clan_stars: int = 0, clan_destruction: float = 0.0,
                opponent_stars: int = 0, opponent_destruction: float = 0.0, size: int = 5,
                clan_tag: str = CLAN_TAG, opponent_tag: str = OPPONENT_TAG,
                prep_start: str = PREP_START) -> Dict[str, Any]:
    """currentwar-shaped payload; our members are #C1.., the opponent's #O1.. (base n = #On)."""
    return {
        "state": state,
        "teamSize": size,
        "preparationStartTime": prep_start,
        "startTime": "20261020T070000.000Z",
        "endTime": "20261021T070000.000Z",
        "clan": side(clan_tag, "Test Clan", "C", size, clan_stars, clan_destruction, attacks),
        "opponent": side(opponent_tag, "Enemy Clan", "O", size, opponent_stars, opponent_destruction),
    }


class FakeAPI:
    """Stands in for COCAPI. Values may be payloads or exceptions to raise."""

    def __init__(self):
        self.wars: Dict[str, Any] = {}
        self.league_groups: Dict[str, Any] = {}
        self.league_wars: Dict[str, Any] = {}
        self.clans: Dict[str, Any] = {}
        self.raids: Dict[str, Any] = {}
        self.calls: List[Tuple[str, str]] = []

    @staticmethod
    def _answer(table: Dict[str, Any], key: str, what: str):
        if key not in table:
            raise EpisodeNotFound(f"{what} {key} not found")
        value = table[key]
        if isinstance(value, BaseException):
            raise value
        return value

    async def get_current_war(self, clan_tag: str):
        self.calls.append(("war", clan_tag))
        return self._answer(self.wars, clan_tag, "war")

    async def get_league_group(self, clan_tag: str):
        self.calls.append(("league", clan_tag))
        return self._answer(self.league_groups, clan_tag, "league group")

    async def get_league_war(self, war_tag: str):
        self.calls.append(("leaguewar", war_tag))
        return self._answer(self.league_wars, war_tag, "league war")

    async def get_clan(self, clan_tag: str):
        self.calls.append(("clan", clan_tag))
        return self._answer(self.clans, clan_tag, "clan")

    async def get_capital_raid_seasons(self, clan_tag: str, limit: int = 1):
        self.calls.append(("raid", clan_tag))
        return self._answer(self.raids, clan_tag, "raid seasons")


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def notify(self, event, context):
        self.sent.append((event, context))
        if self.fail:
            raise RuntimeError("discord is down")

    def names(self) -> List[str]:
        return [event.name for event, _ in self.sent]


class Clock:
    def __init__(self, now: datetime.datetime = NOW):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now


@pytest.fixture
async def store(tmp_path):
    s = TrackingStore(str(tmp_path / "tracking.db"))
    await s.initialize()
    return s


@pytest.fixture
def api():
    return FakeAPI()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def reconciler(api, store, notifier, clock):
    return Reconciler(api, store, notifier, clock=clock, fetch_timeout=5)
