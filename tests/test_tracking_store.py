import dataclasses

import pytest

from errors import PersistenceConflict
from models import Attack, AttackResult, MemberStats, Reservation, TrackingKind, TrackingRecord


def make_record(external_id: str = "E1", kind: TrackingKind = TrackingKind.WAR, tag: str = "#CLAN") -> TrackingRecord:
    return TrackingRecord(clan_tag=tag, guild_id="1", kind=kind, external_id=external_id, phase="battle")


async def test_insert_and_read_back(store):
    record = make_record()
    record.members.append(MemberStats(tag="#A", name="A", best_result=AttackResult(3, 100.0)))
    record.attack_log.append(Attack("#A", "#B", 3, 100.0, base_number=1))
    record.reservations.append(Reservation(1, "U1", "2026-10-19T00:00:00+00:00", fulfilled=True,
                                           result=AttackResult(3, 100.0)))
    record.extra["days"] = [{"day": 1}]

    saved = await store.save(record)
    loaded = await store.get_active("#CLAN", TrackingKind.WAR)

    assert saved.record_id is not None
    assert saved.version == 0
    assert loaded.record_id == saved.record_id
    assert loaded.members[0].best_result == AttackResult(3, 100.0)
    assert loaded.attack_log[0].identity == ("#A", "#B", 3, 100.0)
    assert loaded.reservations[0].result == AttackResult(3, 100.0)
    assert loaded.extra == {"days": [{"day": 1}]}
    assert loaded.created_at and loaded.updated_at


async def test_update_bumps_version(store):
    saved = await store.save(make_record())
    saved.phase = "ended"

    updated = await store.save(saved)

    assert updated.version == 1
    assert (await store.get_latest("#CLAN", TrackingKind.WAR)).phase == "ended"


async def test_stale_write_is_a_conflict(store):
    saved = await store.save(make_record())
    first = dataclasses.replace(saved)
    second = dataclasses.replace(saved)

    await store.save(first)
    with pytest.raises(PersistenceConflict):
        await store.save(second)


async def test_only_one_active_record_per_clan_and_kind(store):
    await store.save(make_record("E1"))

    with pytest.raises(PersistenceConflict):
        await store.save(make_record("E2"))

    # other kinds and other clans are independent
    await store.save(make_record("C1", kind=TrackingKind.CWL))
    await store.save(make_record("E3", tag="#OTHER"))


async def test_deactivating_frees_the_slot(store):
    old = await store.save(make_record("E1"))
    old.is_active = False
    await store.save(old)

    await store.save(make_record("E2"))

    assert (await store.get_active("#CLAN", TrackingKind.WAR)).external_id == "E2"
    assert [r.external_id for r in await store.history("#CLAN", TrackingKind.WAR)] == ["E1"]
    assert (await store.get_latest("#CLAN", TrackingKind.WAR)).external_id == "E2"


async def test_load_active_filters_by_kind(store):
    await store.save(make_record("E1"))
    await store.save(make_record("C1", kind=TrackingKind.CWL))
    inactive = make_record("R1", kind=TrackingKind.CAPITAL)
    inactive.is_active = False
    await store.save(inactive)

    assert {r.external_id for r in await store.load_active()} == {"E1", "C1"}
    assert [r.external_id for r in await store.load_active(TrackingKind.CWL)] == ["C1"]
