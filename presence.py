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

from game_data import Role
from store import Channel, Store, dispatch


class PresenceTracker:
    """
    Partner online/offline signal. Nothing is persisted: a reconnect announces again from scratch, and the
    shared state stays writable while the partner is away.
    """
    _channel: Optional[Channel] = None

    def __init__(self, store: Store, scope_id: str, role: Role, name: str, on_change: Optional[Callable] = None):
        self._store = store
        self.scope_id = scope_id
        self.role = role
        self.name = name
        self._on_change = on_change
        self.partner_online = False
        self.partner_name: Optional[str] = None

    @property
    def paused(self) -> bool:
        return not self.partner_online

    async def start(self):
        self._channel = self._store.channel(f"presence-{self.scope_id}", presence_key=self.role.tag)
        self._channel.on_presence(self._on_presence)
        await self._channel.subscribe()
        await self._channel.track({"key": self.role.tag, "name": self.name})
        logging.debug(f"{self.role.tag} announced in presence-{self.scope_id}")

    async def _on_presence(self, event: str, key: str, state: dict):
        partner_tag = self.role.other.tag
        partner_entries = [entry for entries in state.values() for entry in entries
                           if entry.get("key") == partner_tag]
        online = len(partner_entries) > 0
        self.partner_name = partner_entries[0].get("name") if online else None
        if online == self.partner_online:
            return
        self.partner_online = online
        logging.info(f"Partner {'online' if online else 'offline'} in presence-{self.scope_id}")
        if self._on_change is not None:
            await dispatch(self._on_change, online)

    async def stop(self):
        if self._channel is not None:
            await self._channel.unsubscribe()
            self._channel = None
        self.partner_online = False
