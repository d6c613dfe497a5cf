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

import asyncio
import logging
import random
import string
from typing import Callable, Optional

from game_data import DOOR, LOBBY, PHASES, WAITING, Role, Session
from store import Change, Channel, Store, StoreError, dispatch, utc_now

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


class SessionError(Exception): pass


class SessionNotFound(SessionError): pass


class RoomFull(SessionError): pass


class CreateFailed(SessionError): pass


def generate_room_code(length: int = 6) -> str:
    # no check against codes already in use; a collision surfaces as CreateFailed
    return "".join(random.choices(ROOM_CODE_ALPHABET, k=length))


class SessionStateManager:
    """
    Holds one participant's view of the shared session row.

    Every phase or love meter change is written to the store first and only applied locally once the write
    returns. Remote changes come from the change feed and, while the partner has not joined yet, from polling
    as well. Both sources go through the same merge, so duplicates are harmless.
    """
    _channel: Optional[Channel] = None
    _poll_task: Optional[asyncio.Task] = None

    def __init__(self, store: Store, poll_interval: float = 1.5, room_code_length: int = 6):
        self._store = store
        self._poll_interval = poll_interval
        self._room_code_length = room_code_length
        self._listeners: list[Callable] = []
        self._closed = False

        self.session: Optional[Session] = None
        self.player_name: str = ""
        self.is_player1: bool = False
        self.loading: bool = False
        self.error: Optional[str] = None
        self.failure: Optional[Exception] = None

    @property
    def role(self) -> Role:
        return Role.PARTNER_A if self.is_player1 else Role.PARTNER_B

    @property
    def phase(self) -> str:
        if self.session is None or self.session.current_phase not in PHASES:
            return LOBBY
        return self.session.current_phase

    @property
    def partner_name(self) -> str:
        if self.session is None:
            return ""
        return (self.session.player2_name if self.is_player1 else self.session.player1_name) or ""

    def add_listener(self, callback: Callable):
        self._listeners.append(callback)

    def _fail(self, e: Exception, fallback: str):
        self.failure = e
        self.error = str(e) or fallback
        logging.warning(f"Session operation failed: {self.error}")

    async def create_session(self, name: str) -> Optional[Session]:
        self.loading = True
        self.error = None
        self.failure = None
        try:
            code = generate_room_code(self._room_code_length)
            try:
                row = await self._store.insert("sessions", {
                    "room_code": code,
                    "player1_name": name,
                    "current_phase": WAITING,
                })
            except StoreError as e:
                raise CreateFailed(f"Failed to create session: {e}") from e
            self.player_name = name
            self.is_player1 = True
            await self._set_session(Session.from_row(row))
            logging.info(f"Created session {row['id']} with room code {code}")
            return self.session
        except SessionError as e:
            self._fail(e, "Failed to create session")
            return None
        finally:
            self.loading = False

    async def join_session(self, code: str, name: str) -> Optional[Session]:
        self.loading = True
        self.error = None
        self.failure = None
        try:
            try:
                existing = await self._store.select_one("sessions", {"room_code": code.strip().upper()})
            except StoreError as e:
                raise SessionNotFound("Room not found") from e
            if existing is None:
                raise SessionNotFound("Room not found")
            if existing.get("player2_name"):
                raise RoomFull("Room is full")

            try:
                rows = await self._store.update(
                    "sessions",
                    {"player2_name": name, "current_phase": DOOR, "updated_at": utc_now()},
                    {"id": existing["id"], "player2_name": None},
                )
            except StoreError as e:
                raise SessionError(f"Failed to join session: {e}") from e
            if not rows:
                # someone else joined between the lookup and the write
                raise RoomFull("Room is full")

            self.player_name = name
            self.is_player1 = False
            await self._set_session(Session.from_row(rows[0]))
            logging.info(f"Joined session {existing['id']} as {name}")
            return self.session
        except SessionError as e:
            self._fail(e, "Failed to join session")
            return None
        finally:
            self.loading = False

    async def _write(self, values: dict) -> bool:
        if self.session is None:
            return False
        values = dict(values, updated_at=utc_now())
        try:
            rows = await self._store.update("sessions", values, {"id": self.session.id})
        except StoreError as e:
            self._fail(e, "Failed to update session")
            return False
        if not rows:
            logging.warning(f"Session {self.session.id} vanished from the store")
            return False
        if not self._closed:
            await self.apply_remote(rows[0])
        return True

    async def update_phase(self, phase: str) -> bool:
        # any phase may follow any phase; which transitions are offered is up to the caller
        logging.debug(f"Phase -> {phase}")
        return await self._write({"current_phase": phase})

    async def update_love_meter(self, delta: int) -> bool:
        if self.session is None:
            return False
        value = max(0, min(100, self.session.love_meter + delta))
        return await self._write({"love_meter": value})

    async def set_love_meter(self, value: float) -> bool:
        if self.session is None:
            return False
        clamped = max(0, min(100, round(value)))
        if clamped == self.session.love_meter:
            return True
        return await self._write({"love_meter": clamped})

    async def heal_phase(self) -> bool:
        if self.session is not None and self.session.current_phase not in PHASES:
            logging.warning(f"Unknown phase {self.session.current_phase!r}, resetting to {LOBBY}")
            return await self.update_phase(LOBBY)
        return False

    async def refresh(self) -> bool:
        if self.session is None:
            return False
        try:
            row = await self._store.select_one("sessions", {"id": self.session.id})
        except StoreError as e:
            logging.debug(f"Session refresh failed: {e}")
            return False
        if row is None or self._closed:
            return False
        return await self.apply_remote(row)

    async def apply_remote(self, row: dict) -> bool:
        incoming = Session.from_row(row)
        if self.session is not None and self.session.observable() == incoming.observable():
            return False
        await self._set_session(incoming)
        return True

    async def _on_change(self, change: Change):
        if self._closed:
            return
        await self.apply_remote(change.new)

    async def _set_session(self, session: Session):
        previous = self.session
        self.session = session
        if previous is None or previous.id != session.id:
            await self._watch(session.id)
        self._update_polling()
        for listener in list(self._listeners):
            await dispatch(listener, session)

    async def _watch(self, session_id: str):
        if self._channel is not None:
            await self._channel.unsubscribe()
        self._channel = self._store.channel(f"session-{session_id}")
        self._channel.on_changes("sessions", self._on_change, event="UPDATE", filter=("id", session_id))
        await self._channel.subscribe()

    def _should_poll(self) -> bool:
        return (self.session is not None and not self._closed
                and (self.session.current_phase == WAITING or not self.session.player2_name))

    def _update_polling(self):
        if self._should_poll() and (self._poll_task is None or self._poll_task.done()):
            self._poll_task = asyncio.create_task(self._poll())

    async def _poll(self):
        # the change feed may be unavailable; keep pulling until the partner shows up
        while self._should_poll():
            await asyncio.sleep(self._poll_interval)
            if not self._should_poll():
                break
            await self.refresh()

    async def close(self):
        self._closed = True
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        if self._channel is not None:
            await self._channel.unsubscribe()
            self._channel = None
