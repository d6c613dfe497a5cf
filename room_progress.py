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
import math
from typing import Iterable, Optional

from game_data import LOBBY, ROOM_SEQUENCE, TERMINAL_PHASES, THE_END
from session_manager import SessionStateManager
from store import Change, Channel, Store, StoreError, utc_now


def next_unlocked(sequence: Iterable[str], completed: Iterable[str]) -> Optional[str]:
    done = set(completed)
    for room in sequence:
        if room not in done:
            return room
    return None


class RoomProgressTracker:
    """
    Tracks which rooms the pair has finished. ``room_progress`` holds one row per (session, room), so a
    completion is an upsert and redelivered events fold into the same set.
    """
    _channel: Optional[Channel] = None

    def __init__(self, store: Store, sessions: SessionStateManager, sequence: tuple = ROOM_SEQUENCE,
                 terminal: str = THE_END, hub: str = LOBBY):
        self._store = store
        self._sessions = sessions
        self.sequence = tuple(sequence)
        self.terminal = terminal
        self.hub = hub
        self.completed: list[str] = []
        self.error: Optional[str] = None
        self._session_id: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.sequence)

    @property
    def love_step(self) -> int:
        return math.ceil(100 / self.total)

    def next_unlocked(self) -> Optional[str]:
        return next_unlocked(self.sequence, self.completed)

    def _add(self, room_name: str) -> bool:
        if room_name not in self.sequence or room_name in self.completed:
            return False
        self.completed.append(room_name)
        return True

    async def load_completed(self, session_id: str) -> list[str]:
        try:
            rows = await self._store.select("room_progress", {"session_id": session_id, "completed": True})
        except StoreError as e:
            self.error = str(e)
            logging.warning(f"Could not load room progress: {e}")
            return self.completed
        names = {row.get("room_name") for row in rows}
        self.completed = [room for room in self.sequence if room in names]
        return self.completed

    def on_remote_change(self, change: Change) -> bool:
        row = change.new
        if not row.get("completed"):
            return False
        if self._session_id is not None and row.get("session_id") != self._session_id:
            return False
        added = self._add(row.get("room_name"))
        if added:
            logging.debug(f"Partner completed {row.get('room_name')}")
        return added

    async def watch(self, session_id: str):
        if session_id == self._session_id and self._channel is not None:
            return
        await self.close()
        self._session_id = session_id
        self.completed = []
        await self.load_completed(session_id)
        self._channel = self._store.channel(f"progress-{session_id}")
        self._channel.on_changes("room_progress", self.on_remote_change, filter=("session_id", session_id))
        await self._channel.subscribe()

    async def complete_room(self, room_name: str) -> bool:
        session = self._sessions.session
        if session is None:
            return False
        self.error = None
        repeated = room_name in self.completed
        try:
            await self._store.upsert("room_progress", {
                "session_id": session.id,
                "room_name": room_name,
                "completed": True,
                "completed_at": utc_now(),
            }, on_conflict=("session_id", "room_name"))
        except StoreError as e:
            self.error = f"Failed to save progress: {e}"
            logging.warning(self.error)
            return False

        self._add(room_name)
        if len(self.completed) >= self.total:
            await self._sessions.set_love_meter(100)
            await self._sessions.update_phase(self.terminal)
            return True

        if room_name in self.completed:
            # derived from the set, so a repeated completion adds nothing
            target = min(100, len(self.completed) * self.love_step)
            if target > session.love_meter:
                await self._sessions.set_love_meter(target)

        if repeated and self._sessions.phase != room_name:
            logging.debug(f"{room_name} was already completed, phase stays {self._sessions.phase}")
            return True

        index = self.sequence.index(room_name) if room_name in self.sequence else -1
        if 0 <= index < self.total - 1:
            await self._sessions.update_phase(self.sequence[index + 1])
        else:
            await self._sessions.update_phase(self.hub)
        return True

    async def select_room(self, room: str) -> bool:
        unlocked = self.next_unlocked()
        if unlocked is None:
            return await self._sessions.update_phase(self.terminal)
        if room != unlocked:
            logging.debug(f"{room} is locked, {unlocked} is next")
            return False
        return await self._sessions.update_phase(room)

    async def reconcile(self) -> bool:
        session = self._sessions.session
        if session is None or session.current_phase in TERMINAL_PHASES:
            return False
        if self.next_unlocked() is None:
            await self._sessions.set_love_meter(100)
            await self._sessions.update_phase(self.terminal)
            return True
        if session.love_meter >= 100:
            await self._sessions.update_phase(self.terminal)
            return True
        return False

    async def close(self):
        if self._channel is not None:
            await self._channel.unsubscribe()
            self._channel = None
