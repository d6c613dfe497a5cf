import json

import pytest

from store import ConstraintViolation, MemoryStore, StoreError, UnknownColumn, UnknownTable


@pytest.mark.asyncio
async def test_insert_fills_defaults(store):
    row = await store.insert("sessions", {"room_code": "ABC123", "player1_name": "Alex"})

    assert row["id"]
    assert row["current_phase"] == "lobby"
    assert row["love_meter"] == 0
    assert row["player2_name"] is None
    assert row["created_at"]


@pytest.mark.asyncio
async def test_unknown_table_and_column_are_rejected(store):
    with pytest.raises(UnknownTable):
        await store.insert("hearts", {"x": 1})
    with pytest.raises(UnknownColumn):
        await store.insert("sessions", {"room_code": "ABC123", "nickname": "Al"})
    assert await store.select("sessions") == []


@pytest.mark.asyncio
async def test_unique_room_code(store):
    await store.insert("sessions", {"room_code": "ABC123"})
    with pytest.raises(ConstraintViolation):
        await store.insert("sessions", {"room_code": "ABC123"})


@pytest.mark.asyncio
async def test_update_is_conditional_on_match(store):
    row = await store.insert("sessions", {"room_code": "ABC123"})

    first = await store.update("sessions", {"player2_name": "Sam"}, {"id": row["id"], "player2_name": None})
    second = await store.update("sessions", {"player2_name": "Kim"}, {"id": row["id"], "player2_name": None})

    assert [r["player2_name"] for r in first] == ["Sam"]
    assert second == []
    assert (await store.select_one("sessions", {"id": row["id"]}))["player2_name"] == "Sam"


@pytest.mark.asyncio
async def test_rejected_update_changes_no_rows(store):
    await store.insert("room_progress", {"session_id": "s", "room_name": "constellation"})
    await store.insert("room_progress", {"session_id": "s", "room_name": "library"})
    await store.insert("room_progress", {"session_id": "s2", "room_name": "library"})
    seen = []
    channel = store.channel("watch")
    channel.on_changes("room_progress", seen.append, event="UPDATE")
    await channel.subscribe()

    with pytest.raises(ConstraintViolation):
        await store.update("room_progress", {"session_id": "s2"}, {"session_id": "s"})

    rows = await store.select("room_progress", {"session_id": "s"})
    assert sorted(row["room_name"] for row in rows) == ["constellation", "library"]
    assert seen == []


@pytest.mark.asyncio
async def test_update_cannot_collide_matched_rows(store):
    await store.insert("sessions", {"room_code": "ABC123", "player1_name": "Alex"})
    await store.insert("sessions", {"room_code": "XYZ999", "player1_name": "Alex"})

    with pytest.raises(ConstraintViolation):
        await store.update("sessions", {"room_code": "SAME00"}, {"player1_name": "Alex"})

    assert sorted(row["room_code"] for row in await store.select("sessions")) == ["ABC123", "XYZ999"]


@pytest.mark.asyncio
async def test_upsert_keeps_one_row_per_key(store):
    key = ("session_id", "room_name")
    first = await store.upsert("room_progress", {"session_id": "s", "room_name": "library"}, key)
    second = await store.upsert("room_progress", {"session_id": "s", "room_name": "library", "completed": True}, key)

    rows = await store.select("room_progress")
    assert len(rows) == 1
    assert first["id"] == second["id"]
    assert rows[0]["completed"] is True


@pytest.mark.asyncio
async def test_select_membership_and_order(store):
    await store.insert("stars", {"session_id": "s", "placed_by": "Alex", "x": 1, "y": 1, "created_at": "2"})
    await store.insert("stars", {"session_id": "s", "placed_by": "Sam", "x": 2, "y": 2, "created_at": "1"})
    await store.insert("stars", {"session_id": "t", "placed_by": "Kim", "x": 3, "y": 3, "created_at": "0"})

    rows = await store.select("stars", {"session_id": ["s"]}, order_by="created_at")

    assert [r["placed_by"] for r in rows] == ["Sam", "Alex"]


@pytest.mark.asyncio
async def test_changes_reach_matching_listeners(store):
    seen = []
    channel = store.channel("watch")
    channel.on_changes("sessions", lambda change: seen.append(change.event_type), event="UPDATE",
                       filter=("room_code", "ABC123"))
    await channel.subscribe()

    row = await store.insert("sessions", {"room_code": "ABC123"})
    await store.update("sessions", {"current_phase": "door"}, {"id": row["id"]})
    other = await store.insert("sessions", {"room_code": "XYZ999"})
    await store.update("sessions", {"current_phase": "door"}, {"id": other["id"]})

    assert seen == ["UPDATE"]


@pytest.mark.asyncio
async def test_realtime_off_suppresses_changes():
    store = MemoryStore(realtime=False)
    seen = []
    channel = store.channel("watch")
    channel.on_changes("sessions", seen.append)
    await channel.subscribe()

    await store.insert("sessions", {"room_code": "ABC123"})

    assert seen == []


@pytest.mark.asyncio
async def test_broadcast_skips_sender(store):
    received = {"a": [], "b": []}
    a = store.channel("live")
    b = store.channel("live")
    a.on_broadcast("ping", received["a"].append)
    b.on_broadcast("ping", received["b"].append)
    await a.subscribe()
    await b.subscribe()

    await a.send("ping", {"n": 1})

    assert received == {"a": [], "b": [{"n": 1}]}
    assert await store.select("sessions") == []


@pytest.mark.asyncio
async def test_presence_join_and_leave(store):
    events = []
    watcher = store.channel("presence-x", presence_key="partner_a")
    watcher.on_presence(lambda event, key, state: events.append((event, key, sorted(state))))
    await watcher.subscribe()

    other = store.channel("presence-x", presence_key="partner_b")
    await other.subscribe()
    await other.track({"key": "partner_b"})
    await other.unsubscribe()

    assert ("join", "partner_b", ["partner_b"]) in events
    assert events[-1] == ("sync", "partner_b", [])


@pytest.mark.asyncio
async def test_snapshot_round_trip(tmp_path, store):
    await store.insert("sessions", {"room_code": "ABC123", "player1_name": "Alex"})
    path = tmp_path / "store.json"

    await store.save(path)
    restored = MemoryStore()
    await restored.load(path)

    assert (await restored.select_one("sessions"))["player1_name"] == "Alex"


@pytest.mark.asyncio
async def test_load_missing_snapshot_starts_empty(tmp_path, store):
    await store.load(tmp_path / "missing.json")
    assert await store.select("sessions") == []


@pytest.mark.asyncio
async def test_load_corrupt_snapshot_raises(tmp_path, store):
    path = tmp_path / "store.json"
    path.write_text("{not json")

    with pytest.raises(StoreError):
        await store.load(path)


def test_snapshot_is_json_serialisable(store):
    assert json.loads(json.dumps(store.snapshot())) == {name: [] for name in store.snapshot()}
