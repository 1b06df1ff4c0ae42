import datetime

import pytest

from conftest import CLAN, CLAN_TAG, Clock
from models import EpisodeEnded, EpisodeStarted, MilestoneCrossed, Phase, TrackingKind, UpgradeCompleted
from reconciler import Reconciler

CAPITAL = TrackingKind.CAPITAL
UTC = datetime.timezone.utc
DURING_RAID = datetime.datetime(2026, 10, 17, 12, 0, tzinfo=UTC)
AFTER_RAID = datetime.datetime(2026, 10, 19, 8, 0, tzinfo=UTC)
NEXT_RAID = datetime.datetime(2026, 10, 23, 12, 0, tzinfo=UTC)
MIDWEEK = datetime.datetime(2026, 10, 21, 12, 0, tzinfo=UTC)


def clan_payload(hall: int = 8, peak: int = 8, camp: int = 4):
    return {
        "tag": CLAN_TAG,
        "name": "Test Clan",
        "clanCapital": {
            "capitalHallLevel": hall,
            "districts": [
                {"id": 70000000, "name": "Capital Peak", "districtHallLevel": peak},
                {"id": 70000001, "name": "Barbarian Camp", "districtHallLevel": camp},
            ],
        },
    }


def raid_payload(loot: int, start: str = "20261016T070000.000Z", attacks: int = 6):
    return {"items": [{
        "state": "ongoing",
        "startTime": start,
        "endTime": "20261019T070000.000Z",
        "capitalTotalLoot": loot,
        "raidsCompleted": 1,
        "totalAttacks": 40,
        "enemyDistrictsDestroyed": 10,
        "members": [
            {"tag": "#P1", "name": "P1", "attacks": attacks, "attackLimit": 5, "bonusAttackLimit": 1,
             "capitalResourcesLooted": loot // 2},
            {"tag": "#P2", "name": "P2", "attacks": 2, "attackLimit": 5, "bonusAttackLimit": 0,
             "capitalResourcesLooted": loot // 4},
        ],
    }]}


@pytest.fixture
def raid_clock():
    return Clock(DURING_RAID)


@pytest.fixture
def capital(api, store, notifier, raid_clock):
    api.clans[CLAN_TAG] = clan_payload()
    api.raids[CLAN_TAG] = raid_payload(60000)
    return Reconciler(api, store, notifier, clock=raid_clock)


async def poll(reconciler):
    return await reconciler.check_one_clan(CLAN, CAPITAL)


async def test_raid_weekend_opens_without_upgrade_noise(capital):
    events = await poll(capital)

    assert [type(e) for e in events] == [EpisodeStarted, MilestoneCrossed]
    assert events[1].value == 50000
    record = await capital.get_active_record(CLAN_TAG, CAPITAL)
    assert record.external_id == f"{CLAN_TAG}-raid-2026-10-16"
    assert record.phase == Phase.RAID
    assert record.extra["districts"] == {"Capital Peak": 8, "Barbarian Camp": 4}
    assert record.extra["raid"]["total_loot"] == 60000
    assert record.extra["raid"]["member_attacks"]["#P1"] == 6
    assert record.member("#P1").resources_looted == 30000


async def test_upgrades_and_milestones_fire_once(api, capital):
    await poll(capital)

    api.clans[CLAN_TAG] = clan_payload(camp=5)
    api.raids[CLAN_TAG] = raid_payload(120000)
    events = await poll(capital)

    assert [(type(e), getattr(e, "entity", None), getattr(e, "value", None)) for e in events] == [
        (UpgradeCompleted, "Barbarian Camp", None),
        (MilestoneCrossed, None, 100000),
    ]
    assert events[0].new_level == 5

    api.raids[CLAN_TAG] = raid_payload(130000, attacks=7)
    events = await poll(capital)
    assert events == []

    record = await capital.get_active_record(CLAN_TAG, CAPITAL)
    assert record.extra["milestones_reached"] == [50000, 100000]


async def test_window_close_moves_raid_into_history(api, capital, raid_clock):
    await poll(capital)
    calls_before = len(api.calls)

    raid_clock.now = AFTER_RAID
    events = await poll(capital)

    assert api.calls[calls_before:] == [("clan", CLAN_TAG)]
    assert [type(e) for e in events] == [EpisodeEnded]
    assert events[0].summary["total_loot"] == 60000
    assert events[0].summary["top_looters"][0]["tag"] == "#P1"
    assert await capital.get_active_record(CLAN_TAG, CAPITAL) is None
    finished = await capital.store.get_latest(CLAN_TAG, CAPITAL)
    assert finished.extra["raid_history"][-1]["window_start"].startswith("2026-10-16")


async def test_next_weekend_is_seeded_from_the_last(api, capital, raid_clock):
    await poll(capital)
    raid_clock.now = AFTER_RAID
    await poll(capital)

    raid_clock.now = NEXT_RAID
    api.clans[CLAN_TAG] = clan_payload(hall=9)
    # last weekend's raid is all the API has so far
    events = await poll(capital)

    assert [type(e) for e in events] == [EpisodeStarted, UpgradeCompleted]
    assert (events[1].entity, events[1].new_level) == ("Capital Hall", 9)
    record = await capital.get_active_record(CLAN_TAG, CAPITAL)
    assert record.external_id == f"{CLAN_TAG}-raid-2026-10-23"
    assert record.extra["raid"]["total_loot"] == 0
    assert record.extra["milestones_reached"] == []
    assert len(record.extra["raid_history"]) == 1


async def test_missed_close_is_done_when_next_weekend_appears(api, capital, raid_clock):
    await poll(capital)

    raid_clock.now = NEXT_RAID
    events = await poll(capital)

    assert [type(e) for e in events] == [EpisodeEnded, EpisodeStarted]
    record = await capital.get_active_record(CLAN_TAG, CAPITAL)
    assert len(record.extra["raid_history"]) == 1


async def test_clan_without_capital(api, capital, store):
    api.clans[CLAN_TAG] = {"tag": CLAN_TAG, "name": "Test Clan"}

    assert await poll(capital) == []
    assert await store.get_latest(CLAN_TAG, CAPITAL) is None


async def test_midweek_upgrade_is_announced_right_away(api, capital, raid_clock, store):
    await poll(capital)
    raid_clock.now = AFTER_RAID
    await poll(capital)

    raid_clock.now = MIDWEEK
    api.clans[CLAN_TAG] = clan_payload(peak=9)
    events = await poll(capital)

    assert [(type(e), e.entity, e.new_level) for e in events] == [(UpgradeCompleted, "Capital Peak", 9)]
    assert events[0].external_id == f"{CLAN_TAG}-raid-2026-10-16"
    assert await poll(capital) == []
    last = await store.get_latest(CLAN_TAG, CAPITAL)
    assert last.extra["districts"]["Capital Peak"] == 9
    assert not last.is_active

    # The next weekend starts from the new level
    raid_clock.now = NEXT_RAID
    events = await poll(capital)
    assert [type(e) for e in events] == [EpisodeStarted]


async def test_midweek_poll_without_history_only_reads_the_clan(api, store, notifier):
    reconciler = Reconciler(api, store, notifier, clock=Clock(MIDWEEK))
    api.clans[CLAN_TAG] = clan_payload()

    assert await poll(reconciler) == []
    assert api.calls == [("clan", CLAN_TAG)]
    assert await store.get_latest(CLAN_TAG, CAPITAL) is None
