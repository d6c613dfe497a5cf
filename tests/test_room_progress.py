import itertools

import pytest

from date_client import DateNightClient
from game_data import ROOM_SEQUENCE
from room_progress import next_unlocked
from store import Change


@pytest.fixture
async def pair(store):
    alex, sam = DateNightClient(store), DateNightClient(store)
    session = await alex.create("Alex")
    await sam.join(session.room_code, "Sam")
    await alex.enter()
    yield alex, sam
    await alex.close()
    await sam.close()


def test_next_unlocked():
    assert next_unlocked(ROOM_SEQUENCE, []) == "library"
    assert next_unlocked(ROOM_SEQUENCE, ["library", "kintsugi"]) == "constellation"
    assert next_unlocked(ROOM_SEQUENCE, ROOM_SEQUENCE) is None


@pytest.mark.asyncio
async def test_rooms_open_in_sequence(pair):
    alex, sam = pair

    assert alex.in_hallway
    assert not await alex.select_room("kintsugi")
    assert alex.phase == "lobby"
    assert await alex.select_room("library")
    assert sam.phase == "library"


@pytest.mark.asyncio
async def test_completion_steps_love_and_phase(pair):
    alex, sam = pair

    await alex.complete_room("library")
    assert alex.session.love_meter == 25
    assert alex.phase == "constellation"
    assert sam.progress.completed == ["library"]
    assert sam.session.love_meter == 25

    await sam.complete_room("constellation")
    assert alex.session.love_meter == 50
    assert alex.progress.completed == ["library", "constellation"]


@pytest.mark.asyncio
@pytest.mark.parametrize("order", list(itertools.permutations(ROOM_SEQUENCE))[::5])
async def test_every_order_ends_full(pair, order):
    alex, sam = pair

    for index, room in enumerate(order):
        await (alex if index % 2 == 0 else sam).complete_room(room)

    assert alex.session.love_meter == 100
    assert sam.session.love_meter == 100
    assert alex.phase == "the_end"
    assert sorted(sam.progress.completed) == sorted(ROOM_SEQUENCE)


@pytest.mark.asyncio
async def test_repeat_completion_adds_no_love(pair):
    alex, _ = pair

    await alex.complete_room("library")
    await alex.complete_room("library")

    assert alex.session.love_meter == 25
    assert alex.progress.completed == ["library"]


@pytest.mark.asyncio
async def test_late_repeat_completion_keeps_phase(pair):
    alex, sam = pair
    await alex.select_room("library")
    await alex.complete_room("library")
    await sam.complete_room("constellation")
    assert alex.phase == "kintsugi"

    assert await sam.complete_room("library")

    assert alex.phase == "kintsugi"
    assert sam.phase == "kintsugi"
    assert alex.session.love_meter == 50


@pytest.mark.asyncio
async def test_both_partners_finishing_the_same_room(pair):
    alex, sam = pair
    await alex.select_room("library")

    await alex.complete_room("library")
    await sam.complete_room("library")

    assert alex.phase == "constellation"
    assert sam.session.love_meter == 25


@pytest.mark.asyncio
async def test_redelivered_event_is_idempotent(pair):
    alex, _ = pair
    change = Change("INSERT", "room_progress", {"session_id": alex.session.id, "room_name": "kintsugi",
                                                "completed": True})

    assert alex.progress.on_remote_change(change) is True
    assert alex.progress.on_remote_change(change) is False
    assert alex.progress.on_remote_change(Change("UPDATE", "room_progress", change.new)) is False
    assert alex.progress.completed == ["kintsugi"]


@pytest.mark.asyncio
async def test_unknown_rooms_are_ignored(pair, store):
    alex, _ = pair
    await store.upsert("room_progress", {"session_id": alex.session.id, "room_name": "bedroom_day_0",
                                         "completed": True}, ("session_id", "room_name"))

    assert alex.progress.completed == []
    assert await alex.progress.load_completed(alex.session.id) == []


@pytest.mark.asyncio
async def test_full_meter_reconciles_to_the_end(pair, store):
    alex, sam = pair
    await store.update("sessions", {"love_meter": 100, "current_phase": "kintsugi"}, {"id": alex.session.id})

    assert alex.phase == "the_end"
    assert sam.phase == "the_end"


@pytest.mark.asyncio
async def test_terminal_phase_is_left_alone(pair):
    alex, sam = pair
    for room in ROOM_SEQUENCE:
        await alex.complete_room(room)

    assert await sam.celebrate()
    assert await alex.progress.reconcile() is False
    assert alex.phase == "celebration"


@pytest.mark.asyncio
async def test_late_joiner_loads_completed_rooms(pair, store):
    alex, _ = pair
    await alex.complete_room("library")

    rejoined = DateNightClient(store)
    try:
        await rejoined.progress.watch(alex.session.id)
        assert rejoined.progress.completed == ["library"]
        assert rejoined.progress.next_unlocked() == "constellation"
    finally:
        await rejoined.close()
