import pytest

from game_data import Role
from store import MemoryStore, StoreError
from synced_document import (
    DocumentSpec,
    FieldOwnershipError,
    LiveChannel,
    SyncedDocument,
    Throttle,
    logical_or,
    longest,
    max_by_key,
    merge_documents,
    or_by_key,
    role_fields,
    take_max,
    take_min,
)

PUZZLE = DocumentSpec(
    room_name="puzzle",
    defaults={"progress": 0, "cursorA": None, "cursorB": None, "solved": False, "notesA": [], "notesB": []},
    owners=role_fields("cursor", "notes"),
    strategies={"progress": take_max, "solved": logical_or, "notesA": longest, "notesB": longest},
    is_complete=lambda doc: doc["solved"],
    aliases={"cursor_a": "cursorA"},
)


@pytest.fixture
async def documents(store):
    a = SyncedDocument(store, "session-1", PUZZLE, Role.PARTNER_A)
    b = SyncedDocument(store, "session-1", PUZZLE, Role.PARTNER_B)
    for document in (a, b):
        await document.load()
        await document.watch()
    yield a, b
    await a.close()
    await b.close()


def test_merge_strategies():
    assert take_max(None, 3) == 3
    assert take_max(60, 45) == 60
    assert take_min(10.0, 12.5) == 10.0
    assert logical_or(False, True) is True
    assert longest(["a"], ["a", "b"]) == ["a", "b"]
    assert max_by_key({"x": 10, "y": 50}, {"x": 30}) == {"x": 30, "y": 50}
    assert or_by_key({"x": True}, {"x": False, "y": True}) == {"x": True, "y": True}


def test_merge_keeps_own_fields_and_takes_partners():
    local = PUZZLE.normalize({"progress": 60, "cursorA": [1, 1], "cursorB": [0, 0]})
    remote = {"progress": 45, "cursorA": [9, 9], "cursorB": [5, 5]}

    merged = merge_documents(PUZZLE, local, remote, Role.PARTNER_A)

    assert merged["progress"] == 60
    assert merged["cursorA"] == [1, 1]
    assert merged["cursorB"] == [5, 5]


def test_normalize_fills_defaults_and_aliases():
    doc = PUZZLE.normalize({"cursor_a": [3, 4], "unknown": 1})
    assert doc["cursorA"] == [3, 4]
    assert doc["progress"] == 0
    assert "unknown" not in doc


@pytest.mark.asyncio
async def test_partner_sees_update(documents):
    a, b = documents

    await a.update(cursorA=[10, 20], progress=30)

    assert b.data["cursorA"] == [10, 20]
    assert b.data["progress"] == 30


@pytest.mark.asyncio
async def test_stale_copy_does_not_roll_back_progress(documents):
    a, b = documents
    await a.update(progress=60)

    await b.apply_remote({"room_name": "puzzle", "data": {"progress": 45}})

    assert b.data["progress"] == 60


@pytest.mark.asyncio
async def test_whole_document_is_upserted(documents, store):
    a, b = documents
    await a.update(notesA=["hi"])
    await b.update(notesB=["hello"])

    rows = await store.select("room_progress", {"session_id": "session-1", "room_name": "puzzle"})

    assert len(rows) == 1
    assert rows[0]["data"]["notesA"] == ["hi"]
    assert rows[0]["data"]["notesB"] == ["hello"]


@pytest.mark.asyncio
async def test_writing_partners_field_is_refused(documents):
    a, _ = documents

    with pytest.raises(FieldOwnershipError):
        await a.update(cursorB=[1, 1])
    with pytest.raises(KeyError):
        await a.update(colour="red")


@pytest.mark.asyncio
async def test_completion_fires_once(store):
    fired = []
    a = SyncedDocument(store, "session-1", PUZZLE, Role.PARTNER_A, on_complete=fired.append)
    b = SyncedDocument(store, "session-1", PUZZLE, Role.PARTNER_B)
    await a.watch()
    await b.watch()

    await b.update(solved=True)
    await b.update(progress=100)
    await a.update(progress=100)

    assert fired == [a]
    assert a.completed
    await a.close()
    await b.close()


@pytest.mark.asyncio
async def test_load_resumes_saved_document(store):
    a = SyncedDocument(store, "session-1", PUZZLE, Role.PARTNER_A)
    await a.update(progress=70, notesA=["one"])

    later = SyncedDocument(store, "session-1", PUZZLE, Role.PARTNER_A)
    await later.load()

    assert later.data["progress"] == 70
    assert later.mine("notes") == ["one"]


@pytest.mark.asyncio
async def test_failed_save_keeps_local_state(monkeypatch):
    store = MemoryStore()
    a = SyncedDocument(store, "session-1", PUZZLE, Role.PARTNER_A)

    async def broken_upsert(*args, **kwargs):
        raise StoreError("offline")

    monkeypatch.setattr(store, "upsert", broken_upsert)

    assert await a.update(progress=20) is False
    assert a.data["progress"] == 20
    assert "offline" in a.error


@pytest.mark.asyncio
async def test_other_rooms_are_ignored(documents, store):
    a, _ = documents
    await store.upsert("room_progress", {"session_id": "session-1", "room_name": "elsewhere",
                                         "data": {"progress": 99}}, ("session_id", "room_name"))

    assert a.data["progress"] == 0


def test_throttle(clock):
    throttle = Throttle(0.045, clock)

    assert throttle.ready()
    assert not throttle.ready()
    assert throttle.ready(force=True)
    clock.advance(0.05)
    assert throttle.ready()


@pytest.mark.asyncio
async def test_live_channel_drops_own_echo_and_throttles(store, clock):
    received_a, received_b = [], []
    a = LiveChannel(store, "live-1", "cursor", Role.PARTNER_A, received_a.append, 0.045, clock)
    b = LiveChannel(store, "live-1", "cursor", Role.PARTNER_B, received_b.append, 0.045, clock)
    await a.open()
    await b.open()

    assert await a.publish({"x": 1})
    assert not await a.publish({"x": 2})
    clock.advance(0.05)
    assert await a.publish({"x": 3})

    assert [message["x"] for message in received_b] == [1, 3]
    assert received_b[0]["role"] == "partner_a"
    assert received_a == []
    await a.close()
    await b.close()
