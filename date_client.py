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

from content import CapsuleGarden, Constellation, Library
from game_data import CELEBRATION, DOOR, LOBBY, THE_END, Session
from minigames import KintsugiRepair, WeekArc
from room_progress import RoomProgressTracker
from session_manager import SessionStateManager
from store import Store


class DateNightClient:
    """
    One participant. Wires the session manager to the progress tracker and re-applies the healing rules
    whenever the shared session changes: unknown phases fall back to the lobby, and a finished or full-meter
    pair is sent to the end.
    """

    def __init__(self, store: Store, poll_interval: float = 1.5, room_code_length: int = 6,
                 broadcast_interval: float = 0.045):
        self._store = store
        self.poll_interval = poll_interval
        self.broadcast_interval = broadcast_interval
        self.sessions = SessionStateManager(store, poll_interval, room_code_length)
        self.progress = RoomProgressTracker(store, self.sessions)
        self.sessions.add_listener(self._session_changed)
        self._healing = False

    @classmethod
    def from_settings(cls, store: Store, settings: dict) -> "DateNightClient":
        sync = settings["sync"]
        return cls(store, poll_interval=sync["poll_interval"], room_code_length=sync["room_code_length"],
                   broadcast_interval=sync["broadcast_interval"])

    @property
    def session(self) -> Optional[Session]:
        return self.sessions.session

    @property
    def phase(self) -> str:
        return self.sessions.phase

    @property
    def error(self) -> Optional[str]:
        return self.sessions.error or self.progress.error

    @property
    def in_hallway(self) -> bool:
        return self.session is not None and bool(self.session.player2_name) and self.phase == LOBBY

    async def _session_changed(self, session: Session):
        await self.progress.watch(session.id)
        if self._healing:
            return
        # healing writes come back through this listener
        self._healing = True
        try:
            await self.sessions.heal_phase()
            await self.progress.reconcile()
        finally:
            self._healing = False

    async def create(self, name: str) -> Optional[Session]:
        return await self.sessions.create_session(name)

    async def join(self, code: str, name: str) -> Optional[Session]:
        return await self.sessions.join_session(code, name)

    async def enter(self) -> bool:
        if self.phase != DOOR:
            return False
        return await self.sessions.update_phase(LOBBY)

    async def select_room(self, room: str) -> bool:
        return await self.progress.select_room(room)

    async def complete_room(self, room: str) -> bool:
        completed = await self.progress.complete_room(room)
        if completed:
            logging.info(f"{self.sessions.player_name} finished {room}")
        return completed

    async def back_to_hallway(self) -> bool:
        return await self.sessions.update_phase(LOBBY)

    async def celebrate(self) -> bool:
        if self.phase != THE_END:
            return False
        return await self.sessions.update_phase(CELEBRATION)

    async def close(self):
        await self.progress.close()
        await self.sessions.close()

    def library(self, on_change: Optional[Callable] = None, on_complete: Optional[Callable] = None) -> Library:
        return Library(self._store, self.session.id, self.sessions.player_name, on_change,
                       poll_interval=self.poll_interval, on_complete=on_complete)

    def constellation(self, on_change: Optional[Callable] = None,
                      on_complete: Optional[Callable] = None) -> Constellation:
        return Constellation(self._store, self.session.id, self.sessions.player_name, self.sessions.partner_name,
                             on_change, poll_interval=self.poll_interval, on_complete=on_complete)

    def capsule_garden(self, on_change: Optional[Callable] = None,
                       on_complete: Optional[Callable] = None) -> CapsuleGarden:
        return CapsuleGarden(self._store, self.session.id, self.sessions.player_name, on_change,
                             poll_interval=self.poll_interval, on_complete=on_complete)

    def kintsugi(self, on_complete: Optional[Callable] = None) -> KintsugiRepair:
        return KintsugiRepair(self._store, self.session.id, self.sessions.role, on_complete,
                              interval=self.broadcast_interval)

    def week(self, on_day_changed: Optional[Callable] = None) -> WeekArc:
        return WeekArc(self._store, self.session.id, self.session.room_code, self.sessions.role,
                       self.sessions.player_name, on_day_changed=on_day_changed,
                       pointer_interval=self.broadcast_interval)
