"""
DateNight
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import logging
from typing import Callable, Optional

from store import Change, Channel, Store, StoreError, dispatch, utc_now


class DayAdvancer:
    """
    Pointer to the active day of the week-long arc, stored on the ``rooms`` row for a room code.

    Both partners evaluate the same completion predicates, so both may try to advance at once. A local flag
    stops one client from issuing two advances, and the write itself only lands if the stored day is still
    the one this client saw. The loser re-reads and ends up on the same day.
    """
    _channel: Optional[Channel] = None

    def __init__(self, store: Store, room_code: str, max_day: int = 7, on_day_changed: Optional[Callable] = None):
        self._store = store
        self.room_code = room_code
        self.max_day = max_day
        self._on_day_changed = on_day_changed
        self._advancing = False
        self._closed = False

        self.room_id: Optional[str] = None
        self.current_day = 0
        self.error: Optional[str] = None

    def _clamp(self, row: dict) -> int:
        day = row.get("current_day")
        if day is None:
            day = row.get("current_stage")
        return max(0, min(self.max_day, int(day or 0)))

    async def _set_day(self, day: int):
        if day == self.current_day:
            return
        self.current_day = day
        logging.info(f"Room {self.room_code} now on day {day}")
        if self._on_day_changed is not None:
            await dispatch(self._on_day_changed, day)

    async def load(self) -> bool:
        self.error = None
        try:
            row = await self._store.upsert("rooms", {"room_code": self.room_code}, on_conflict=("room_code",))
        except StoreError as e:
            self.error = "Failed to load room state."
            logging.warning(f"{self.error} {e}")
            return False
        self.room_id = row["id"]
        await self._set_day(self._clamp(row))
        return True

    async def watch(self):
        if self.room_id is None:
            return
        self._channel = self._store.channel(f"room-{self.room_id}")
        self._channel.on_changes("rooms", self._on_change, event="UPDATE", filter=("id", self.room_id))
        await self._channel.subscribe()

    async def _on_change(self, change: Change):
        if self._closed:
            return
        await self._set_day(self._clamp(change.new))

    async def advance(self, target_day: int) -> bool:
        if self.room_id is None or self._advancing:
            return False
        target_day = max(0, min(self.max_day, target_day))
        if target_day == self.current_day:
            return False
        self._advancing = True
        expected = self.current_day
        try:
            rows = await self._store.update(
                "rooms",
                {"current_day": target_day, "current_stage": target_day, "updated_at": utc_now()},
                {"id": self.room_id, "current_day": expected},
            )
            if not rows:
                logging.debug(f"Day {expected} already advanced elsewhere, re-reading")
                row = await self._store.select_one("rooms", {"id": self.room_id})
                if row is not None and not self._closed:
                    await self._set_day(self._clamp(row))
                return False
            if not self._closed:
                await self._set_day(target_day)
            return True
        except StoreError as e:
            self.error = f"Failed to advance day: {e}"
            logging.warning(self.error)
            return False
        finally:
            self._advancing = False

    async def close(self):
        self._closed = True
        if self._channel is not None:
            await self._channel.unsubscribe()
            self._channel = None
