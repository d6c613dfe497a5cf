import pytest

from game_data import Role
from presence import PresenceTracker


@pytest.mark.asyncio
async def test_partner_comes_and_goes(store):
    changes = []
    alex = PresenceTracker(store, "room-1", Role.PARTNER_A, "Alex", on_change=changes.append)
    sam = PresenceTracker(store, "room-1", Role.PARTNER_B, "Sam")

    await alex.start()
    assert alex.paused

    await sam.start()
    assert alex.partner_online and not alex.paused
    assert alex.partner_name == "Sam"
    assert sam.partner_online and sam.partner_name == "Alex"

    await sam.stop()
    assert alex.paused
    assert alex.partner_name is None
    assert changes == [True, False]

    await alex.stop()


@pytest.mark.asyncio
async def test_own_second_tab_does_not_count_as_partner(store):
    alex = PresenceTracker(store, "room-1", Role.PARTNER_A, "Alex")
    alex_again = PresenceTracker(store, "room-1", Role.PARTNER_A, "Alex")

    await alex.start()
    await alex_again.start()

    assert alex.paused
    await alex.stop()
    await alex_again.stop()


@pytest.mark.asyncio
async def test_scopes_are_separate(store):
    alex = PresenceTracker(store, "room-1", Role.PARTNER_A, "Alex")
    stranger = PresenceTracker(store, "room-2", Role.PARTNER_B, "Kim")

    await alex.start()
    await stranger.start()

    assert alex.paused
    await alex.stop()
    await stranger.stop()


@pytest.mark.asyncio
async def test_reconnect_announces_again(store):
    alex = PresenceTracker(store, "room-1", Role.PARTNER_A, "Alex")
    sam = PresenceTracker(store, "room-1", Role.PARTNER_B, "Sam")
    await alex.start()
    await sam.start()
    await sam.stop()

    await sam.start()

    assert alex.partner_online
    assert sam.partner_online
    await alex.stop()
    await sam.stop()
