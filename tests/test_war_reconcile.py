import asyncio

import pytest

from calculations import CANCELLED, LOSE, WIN
from conftest import CLAN, CLAN_TAG, FakeAPI, FakeNotifier, war_payload
from errors import PersistenceConflict, TransientFetchError
from models import (
    AttackRecorded, EpisodeEnded, EpisodeStarted, Phase, PhaseChanged, TrackingKind,
)
from reconciler import Reconciler
from tracking_store import TrackingStore

WAR = TrackingKind.WAR


async def poll(reconciler):
    return await reconciler.check_one_clan(CLAN, WAR)


async def test_new_war_in_preparation_starts_an_episode(api, reconciler):
    api.wars[CLAN_TAG] = war_payload("preparation")

    events = await poll(reconciler)

    assert [type(e) for e in events] == [EpisodeStarted]
    assert events[0].phase == Phase.PREPARATION
    record = await reconciler.get_active_record(CLAN_TAG, WAR)
    assert record.is_active
    assert record.phase == Phase.PREPARATION
    assert record.external_id == f"{CLAN_TAG}-#OPP-2026-10-19T07:00:00+00:00"
    assert record.attack_log == []
    assert record.team_size == 5


async def test_phase_change_is_emitted_once(api, reconciler):
    api.wars[CLAN_TAG] = war_payload("preparation")
    await poll(reconciler)

    api.wars[CLAN_TAG] = war_payload("inWar")
    events = await poll(reconciler)
    again = await poll(reconciler)

    assert len(events) == 1
    assert isinstance(events[0], PhaseChanged)
    assert (events[0].from_phase, events[0].to_phase) == (Phase.PREPARATION, Phase.BATTLE)
    assert again == []
    record = await reconciler.get_active_record(CLAN_TAG, WAR)
    assert record.phase == Phase.BATTLE


async def test_full_war_lifecycle_with_base_call(api, reconciler, notifier):
    api.wars[CLAN_TAG] = war_payload("preparation")
    await poll(reconciler)
    api.wars[CLAN_TAG] = war_payload("inWar")
    await poll(reconciler)

    await reconciler.ledger.call(CLAN_TAG, 3, "U1", note="dragons")

    api.wars[CLAN_TAG] = war_payload("inWar", attacks={"#C1": [("#O3", 2, 80)]}, clan_stars=2,
                                     clan_destruction=16.0)
    events = await poll(reconciler)

    assert [type(e) for e in events] == [AttackRecorded]
    attack = events[0].attack
    assert (attack.attacker_tag, attack.defender_tag, attack.base_number) == ("#C1", "#O3", 3)
    reservations = await reconciler.ledger.list_reservations(CLAN_TAG)
    assert len(reservations) == 1
    assert reservations[0].fulfilled is True
    assert (reservations[0].result.stars, reservations[0].result.destruction_percentage) == (2, 80.0)

    del api.wars[CLAN_TAG]
    events = await poll(reconciler)

    assert [type(e) for e in events] == [EpisodeEnded]
    assert events[0].outcome == WIN
    assert await reconciler.get_active_record(CLAN_TAG, WAR) is None
    stored = await reconciler.store.get_latest(CLAN_TAG, WAR)
    assert stored.is_active is False
    assert stored.outcome == WIN

    assert notifier.names() == [
        "EpisodeStarted", "PhaseChanged", "AttackRecorded", "EpisodeEnded",
    ]


async def test_unchanged_snapshot_is_a_no_op(api, reconciler, store):
    api.wars[CLAN_TAG] = war_payload("inWar", attacks={"#C1": [("#O1", 3, 100)]}, clan_stars=3)
    await poll(reconciler)
    before = await store.get_active(CLAN_TAG, WAR)

    events = await poll(reconciler)

    after = await store.get_active(CLAN_TAG, WAR)
    assert events == []
    assert after.version == before.version
    assert after.updated_at == before.updated_at


async def test_repeated_attacks_are_counted_once(api, reconciler):
    polls = [
        {"#C1": [("#O1", 2, 70)]},
        {"#C1": [("#O1", 2, 70)], "#C2": [("#O2", 3, 100)]},
        {"#C1": [("#O1", 2, 70), ("#O4", 1, 45)], "#C2": [("#O2", 3, 100)]},
        # the API briefly drops an attack; nothing may go backwards
        {"#C1": [("#O4", 1, 45)], "#C2": [("#O2", 3, 100)]},
        {"#C1": [("#O1", 2, 70), ("#O4", 1, 45)], "#C2": [("#O2", 3, 100)]},
    ]
    previous = {}
    for attacks in polls:
        api.wars[CLAN_TAG] = war_payload("inWar", attacks=attacks)
        await poll(reconciler)
        record = await reconciler.get_active_record(CLAN_TAG, WAR)

        identities = [a.identity for a in record.attack_log]
        assert len(identities) == len(set(identities))
        for m in record.members:
            used = sum(1 for a in record.attack_log if a.attacker_tag == m.tag)
            assert m.attacks_used == used
            old_used, old_stars = previous.get(m.tag, (0, 0))
            assert m.attacks_used >= old_used
            assert m.stars_earned >= old_stars
            previous[m.tag] = (m.attacks_used, m.stars_earned)

    record = await reconciler.get_active_record(CLAN_TAG, WAR)
    assert len(record.attack_log) == 3
    assert record.member("#C1").attacks_used == 2
    assert record.member("#C1").stars_earned == 3
    assert record.member("#C2").stars_earned == 3


async def test_transient_failure_never_ends_the_war(api, reconciler, notifier, store):
    api.wars[CLAN_TAG] = war_payload("inWar")
    await poll(reconciler)
    before = await store.get_active(CLAN_TAG, WAR)

    api.wars[CLAN_TAG] = TransientFetchError("503 from API", status=503)
    events = await poll(reconciler)

    assert events == []
    after = await store.get_active(CLAN_TAG, WAR)
    assert after is not None and after.is_active
    assert after.version == before.version
    assert "EpisodeEnded" not in notifier.names()


async def test_fetch_timeout_leaves_record_untouched(store, notifier, clock):
    class SlowAPI(FakeAPI):
        async def get_current_war(self, clan_tag):
            await asyncio.sleep(1)
            return war_payload("inWar")

    reconciler = Reconciler(SlowAPI(), store, notifier, clock=clock, fetch_timeout=0.01)

    events = await reconciler.check_one_clan(CLAN, WAR)

    assert events == []
    assert await store.get_active(CLAN_TAG, WAR) is None
    assert notifier.sent == []


async def test_war_ended_by_api_state(api, reconciler):
    api.wars[CLAN_TAG] = war_payload("inWar")
    await poll(reconciler)

    api.wars[CLAN_TAG] = war_payload("warEnded", attacks={"#C1": [("#O1", 1, 40)]}, clan_stars=1,
                                     clan_destruction=8.0, opponent_stars=4, opponent_destruction=30.0)
    events = await poll(reconciler)

    assert [type(e) for e in events] == [AttackRecorded, EpisodeEnded]
    assert events[-1].outcome == LOSE
    assert events[-1].summary["opponent_stars"] == 4
    assert events[-1].summary["best_attack"] == {"attacker_name": "C1", "base_number": 1, "stars": 1,
                                                 "destruction_percentage": 40.0}

    # The API keeps reporting the finished war until the next one starts
    assert await poll(reconciler) == []
    assert await reconciler.get_active_record(CLAN_TAG, WAR) is None


async def test_war_first_seen_after_it_ended_is_ignored(api, reconciler, store):
    api.wars[CLAN_TAG] = war_payload("warEnded", clan_stars=10)

    assert await poll(reconciler) == []
    assert await store.get_latest(CLAN_TAG, WAR) is None


async def test_war_vanishing_in_preparation_is_cancelled(api, reconciler):
    api.wars[CLAN_TAG] = war_payload("preparation")
    await poll(reconciler)

    api.wars[CLAN_TAG] = {"state": "notInWar"}
    events = await poll(reconciler)

    assert len(events) == 1
    assert events[0].outcome == CANCELLED


async def test_stale_preparation_payload_does_not_rewind_battle(api, reconciler, store):
    api.wars[CLAN_TAG] = war_payload("preparation")
    await poll(reconciler)
    api.wars[CLAN_TAG] = war_payload("inWar", attacks={"#C1": [("#O1", 3, 100)]}, clan_stars=5, opponent_stars=1)
    await poll(reconciler)
    before = await store.get_active(CLAN_TAG, WAR)

    api.wars[CLAN_TAG] = war_payload("preparation")
    assert await poll(reconciler) == []
    record = await store.get_active(CLAN_TAG, WAR)
    assert record.phase == Phase.BATTLE
    assert record.version == before.version

    del api.wars[CLAN_TAG]
    [ended] = await poll(reconciler)
    assert ended.outcome == WIN


async def test_new_opponent_closes_previous_war(api, reconciler, store):
    api.wars[CLAN_TAG] = war_payload("inWar", clan_stars=5, opponent_stars=2)
    await poll(reconciler)

    api.wars[CLAN_TAG] = war_payload("preparation", opponent_tag="#NEXT", prep_start="20261022T070000.000Z")
    events = await poll(reconciler)

    assert [type(e) for e in events] == [EpisodeEnded, EpisodeStarted]
    assert events[0].outcome == WIN
    active = await store.get_active(CLAN_TAG, WAR)
    assert active.opponent_tag == "#NEXT"
    assert len(await store.history(CLAN_TAG, WAR)) == 1


async def test_best_attack_fulfils_the_call(api, reconciler):
    api.wars[CLAN_TAG] = war_payload("inWar")
    await poll(reconciler)
    await reconciler.ledger.call(CLAN_TAG, 2, "U1")

    api.wars[CLAN_TAG] = war_payload("inWar", attacks={"#C1": [("#O2", 1, 50)], "#C2": [("#O2", 2, 60)]})
    await poll(reconciler)
    api.wars[CLAN_TAG] = war_payload("inWar", attacks={
        "#C1": [("#O2", 1, 50)], "#C2": [("#O2", 2, 60)], "#C3": [("#O2", 2, 55)],
    })
    await poll(reconciler)

    [reservation] = await reconciler.ledger.list_reservations(CLAN_TAG)
    assert reservation.fulfilled
    assert (reservation.result.stars, reservation.result.destruction_percentage) == (2, 60.0)


async def test_write_conflict_is_retried_with_fresh_read(api, reconciler, store):
    api.wars[CLAN_TAG] = war_payload("preparation")
    await poll(reconciler)

    # Someone else writes the record behind the cache's back
    other = TrackingStore(store.db_path)
    record = await other.get_active(CLAN_TAG, WAR)
    record.extra["touched"] = True
    await other.save(record)

    api.wars[CLAN_TAG] = war_payload("inWar")
    events = await poll(reconciler)

    assert [type(e) for e in events] == [PhaseChanged]
    stored = await store.get_active(CLAN_TAG, WAR)
    assert stored.phase == Phase.BATTLE
    assert stored.extra["touched"] is True
    assert stored.version == 2


async def test_notifier_failure_does_not_roll_back(api, store, clock):
    notifier = FakeNotifier(fail=True)
    reconciler = Reconciler(api, store, notifier, clock=clock)
    api.wars[CLAN_TAG] = war_payload("preparation")

    events = await reconciler.check_one_clan(CLAN, WAR)

    assert len(events) == 1
    assert len(notifier.sent) == 1
    assert (await store.get_active(CLAN_TAG, WAR)).phase == Phase.PREPARATION


async def test_events_reach_the_notifier_once(api, reconciler, notifier):
    api.wars[CLAN_TAG] = war_payload("preparation")
    await poll(reconciler)

    # A second reconciler pass that re-derives the same start is not re-delivered
    reconciler.records.forget(CLAN_TAG, WAR)
    await reconciler.store.clear_clan(CLAN_TAG)
    await poll(reconciler)

    assert notifier.names() == ["EpisodeStarted"]


async def test_notifier_receives_context(api, reconciler, notifier):
    api.wars[CLAN_TAG] = war_payload("preparation")
    await poll(reconciler)

    _, context = notifier.sent[0]
    assert context.clan_name == "Test Clan"
    assert context.opponent_name == "Enemy Clan"
    assert context.kind == WAR
    assert context.record.external_id.startswith(CLAN_TAG)


@pytest.mark.parametrize("state", ["notInWar", None])
async def test_not_in_war_without_record_does_nothing(api, reconciler, store, state):
    api.wars[CLAN_TAG] = {"state": state} if state else {}

    assert await poll(reconciler) == []
    assert await store.get_latest(CLAN_TAG, WAR) is None


async def test_overlapping_passes_record_an_attack_once(api, reconciler):
    api.wars[CLAN_TAG] = war_payload("inWar")
    await poll(reconciler)

    api.wars[CLAN_TAG] = war_payload("inWar", attacks={"#C1": [("#O1", 3, 100)]}, clan_stars=3)
    first, second = await asyncio.gather(poll(reconciler), poll(reconciler))

    assert [type(e) for e in first + second] == [AttackRecorded]
    record = await reconciler.store.get_active(CLAN_TAG, WAR)
    assert record.member("#C1").attacks_used == 1
    assert len(record.attack_log) == 1


class ConflictOnNextWarStore(TrackingStore):
    """Fails the first insert of the war against #NEXT, as if another writer got there first."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.failed = False

    async def save(self, record):
        if record.record_id is None and record.opponent_tag == "#NEXT" and not self.failed:
            self.failed = True
            raise PersistenceConflict("active record already exists")
        return await super().save(record)


async def test_conflict_retry_keeps_events_of_records_already_written(api, store, notifier, clock):
    racy = ConflictOnNextWarStore(store.db_path)
    reconciler = Reconciler(api, racy, notifier, clock=clock)
    api.wars[CLAN_TAG] = war_payload("inWar", clan_stars=5, opponent_stars=2)
    await poll(reconciler)

    api.wars[CLAN_TAG] = war_payload("preparation", opponent_tag="#NEXT", prep_start="20261022T070000.000Z")
    events = await poll(reconciler)

    assert racy.failed
    assert [type(e) for e in events] == [EpisodeEnded, EpisodeStarted]
    assert notifier.names() == ["EpisodeStarted", "EpisodeEnded", "EpisodeStarted"]
    assert (await store.get_active(CLAN_TAG, WAR)).opponent_tag == "#NEXT"
    [finished] = await store.history(CLAN_TAG, WAR)
    assert finished.outcome == WIN


async def test_delivered_identities_are_dropped_once_a_war_closes(api, reconciler, notifier):
    api.wars[CLAN_TAG] = war_payload("preparation")
    await poll(reconciler)
    api.wars[CLAN_TAG] = war_payload("inWar", attacks={"#C1": [("#O1", 3, 100)]}, clan_stars=3)
    await poll(reconciler)
    war_id = (await reconciler.get_active_record(CLAN_TAG, WAR)).external_id
    assert any(i[0] == war_id for i in reconciler._delivered)

    del api.wars[CLAN_TAG]
    await poll(reconciler)

    assert not any(i[0] == war_id for i in reconciler._delivered)
    assert notifier.names()[-1] == "EpisodeEnded"
    # The closed war stays closed, so nothing is announced twice
    api.wars[CLAN_TAG] = war_payload("warEnded", attacks={"#C1": [("#O1", 3, 100)]}, clan_stars=3)
    assert await poll(reconciler) == []
