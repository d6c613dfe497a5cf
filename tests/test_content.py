import pytest

from conftest import LEGACY_TABLES, eventually
from content import (
    PROMPTS,
    REQUIRED_STARS,
    CapsuleAdapter,
    CapsuleGarden,
    Constellation,
    Library,
    MessageAdapter,
)
from store import TABLES, MemoryStore


@pytest.fixture
def legacy_store():
    return MemoryStore(tables={**TABLES, **LEGACY_TABLES})


async def open_rooms(room_class, store, *args, **kwargs):
    alex = room_class(store, "session-1", "Alex", *args, poll_interval=0, **kwargs)
    sam = room_class(store, "session-1", "Sam", *args, poll_interval=0, **kwargs)
    await alex.start()
    await sam.start()
    return alex, sam


def test_message_adapter_reads_both_layouts():
    current = MessageAdapter.normalize({"id": "1", "sender_name": "Alex", "content": "hi", "is_prompt": False})
    legacy_prompt = MessageAdapter.normalize({"id": "2", "sender": "The Library", "prompt": PROMPTS[0]})
    legacy_answer = MessageAdapter.normalize({"id": "3", "sender": "Sam", "content": "hello"})

    assert current["sender_name"] == "Alex" and not current["is_prompt"]
    assert legacy_prompt["is_prompt"] and legacy_prompt["content"] == PROMPTS[0]
    assert legacy_answer["sender_name"] == "Sam" and not legacy_answer["is_prompt"]


def test_capsule_adapter_reads_both_layouts():
    legacy = CapsuleAdapter.normalize({"id": "1", "author": "Alex", "message": "open me", "sealed": True})
    opened = CapsuleAdapter.normalize({"id": "2", "author": "Alex", "message": "open me", "sealed": False})

    assert legacy == {"id": "1", "author_name": "Alex", "content": "open me", "capsule_type": "love-letter",
                      "unlocked": False, "created_at": None}
    assert opened["unlocked"] is True


@pytest.mark.asyncio
async def test_library_rounds(store):
    alex, sam = await open_rooms(Library, store)

    assert alex.can_send_prompt()
    assert await alex.send_prompt()
    assert not sam.can_send_prompt()
    assert sam.messages[0]["content"] == PROMPTS[0]

    for round_number in range(3):
        await alex.answer(f"alex {round_number}")
        assert not alex.can_send_prompt()
        await sam.answer(f"sam {round_number}")
        if round_number < 2:
            assert await sam.send_prompt()

    assert alex.completed and sam.completed
    assert alex.prompt_count == 3
    assert [m["is_prompt"] for m in alex.messages] == [True, False, False] * 3
    await alex.close()
    await sam.close()


@pytest.mark.asyncio
async def test_library_blank_answer_is_not_sent(store):
    alex = Library(store, "session-1", "Alex", poll_interval=0)
    await alex.start()

    assert await alex.answer("   ") is None
    assert alex.messages == []
    await alex.close()


@pytest.mark.asyncio
async def test_library_falls_back_to_legacy_layout(legacy_store):
    alex, sam = await open_rooms(Library, legacy_store)

    await alex.send_prompt()
    answer = await sam.answer("I remember the rain")

    assert answer["sender_name"] == "Sam"
    assert sam.feed.error is None
    assert [m["is_prompt"] for m in alex.messages] == [True, False]
    rows = await legacy_store.select("messages")
    assert rows[0]["prompt"] == PROMPTS[0]
    await alex.close()
    await sam.close()


@pytest.mark.asyncio
async def test_constellation(store):
    alex = Constellation(store, "session-1", "Alex", "Sam", poll_interval=0)
    sam = Constellation(store, "session-1", "Sam", "Alex", poll_interval=0)
    await alex.start()
    await sam.start()

    for n in range(5):
        await alex.place_star(10 * n, 20)
        assert not alex.completed
        await sam.place_star(10 * n, 80)

    assert alex.completed and sam.completed
    star = alex.stars[0]
    assert await sam.label_star(star["id"], " <us> ")
    assert alex.feed.get(star["id"])["label"] == "us"
    await alex.close()
    await sam.close()


@pytest.mark.asyncio
async def test_star_is_clamped_to_the_sky(store):
    alex = Constellation(store, "session-1", "Alex", "Sam", poll_interval=0)
    await alex.start()

    star = await alex.place_star(140, -3)

    assert (star["x"], star["y"]) == (100.0, 0.0)
    await alex.close()


@pytest.mark.asyncio
async def test_capsule_only_partner_unlocks(store):
    alex, sam = await open_rooms(CapsuleGarden, store)

    capsule = await alex.plant("Open this on a rainy day", "secret")
    assert sam.capsules[0]["capsule_type"] == "secret"

    assert not await alex.unlock(capsule["id"])
    assert not sam.capsules[0]["unlocked"]
    assert await sam.unlock(capsule["id"])
    assert alex.capsules[0]["unlocked"]

    await sam.plant("A future wish", "future-wish")
    assert not alex.completed
    await alex.unlock(sam.capsules[1]["id"])
    assert alex.completed and sam.completed
    await alex.close()
    await sam.close()


@pytest.mark.asyncio
async def test_capsule_legacy_layout(legacy_store):
    alex, sam = await open_rooms(CapsuleGarden, legacy_store)

    capsule = await alex.plant("remember us")
    assert capsule["author_name"] == "Alex"
    assert await sam.unlock(capsule["id"])

    row = await legacy_store.select_one("capsules", {"id": capsule["id"]})
    assert row["sealed"] is False
    assert alex.capsules[0]["unlocked"]
    await alex.close()
    await sam.close()


@pytest.mark.asyncio
async def test_unknown_capsule_type(store):
    alex = CapsuleGarden(store, "session-1", "Alex", poll_interval=0)
    with pytest.raises(ValueError):
        await alex.plant("hi", "bouquet")


@pytest.mark.asyncio
async def test_write_failure_sets_error(store):
    broken = MemoryStore(tables={name: schema for name, schema in TABLES.items() if name != "stars"})
    alex = Constellation(broken, "session-1", "Alex", "Sam", poll_interval=0)

    assert await alex.place_star(1, 1) is None
    assert alex.feed.error == "Failed to place star."


@pytest.mark.asyncio
async def test_polling_fills_in_without_change_feed():
    store = MemoryStore(realtime=False)
    alex = CapsuleGarden(store, "session-1", "Alex", poll_interval=0.01)
    sam = CapsuleGarden(store, "session-1", "Sam", poll_interval=0.01)
    await alex.start()
    await sam.start()

    await alex.plant("polled")

    await eventually(lambda: len(sam.capsules) == 1)
    await alex.close()
    await sam.close()


@pytest.mark.asyncio
async def test_completion_fires_once(store):
    fired = []
    alex = CapsuleGarden(store, "session-1", "Alex", poll_interval=0, on_complete=fired.append)
    sam = CapsuleGarden(store, "session-1", "Sam", poll_interval=0)
    await alex.start()
    await sam.start()

    first = await alex.plant("one")
    second = await sam.plant("two")
    await sam.unlock(first["id"])
    assert fired == []
    await alex.unlock(second["id"])
    assert fired == [alex]

    # the same rows arriving again from polling or a replayed change
    await alex.feed.load()
    await alex.feed.merge(await store.select_one("capsules", {"id": second["id"]}))
    await store.update("capsules", {"content": "two, again"}, {"id": second["id"]})

    assert fired == [alex]
    await alex.close()
    await sam.close()


@pytest.mark.asyncio
async def test_already_complete_room_fires_on_start(store):
    fired = []
    for n in range(REQUIRED_STARS):
        await store.insert("stars", {"session_id": "session-1", "placed_by": "Alex", "x": n, "y": 1})
        await store.insert("stars", {"session_id": "session-1", "placed_by": "Sam", "x": n, "y": 2})

    async def completed(room):
        fired.append(room.player_name)

    sam = Constellation(store, "session-1", "Sam", "Alex", poll_interval=0, on_complete=completed)
    await sam.start()
    await sam.feed.load()

    assert fired == ["Sam"]
    await sam.close()
