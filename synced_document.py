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

import copy
import dataclasses
import logging
import time
from typing import Any, Callable, Optional

from game_data import Role
from store import Change, Channel, Store, StoreError, dispatch, new_id, utc_now

"""
A synced document is one JSON blob per (session, room), co-edited by the two partners.

Each partner writes only the fields it owns plus shared fields whose merge is monotonic, and always upserts
the whole document. When the partner's copy arrives, fields are merged one by one: our own fields stay as we
have them, the partner's fields are taken as sent, and shared fields go through their merge strategy so a
stale copy can never roll progress back.
"""


class FieldOwnershipError(Exception): pass


def take_max(local, remote):
    values = [value for value in (local, remote) if value is not None]
    return max(values) if values else None


def take_min(local, remote):
    values = [value for value in (local, remote) if value is not None]
    return min(values) if values else None


def logical_or(local, remote) -> bool:
    return bool(local) or bool(remote)


def longest(local, remote) -> list:
    # append-only lists: the longer copy has seen every append the shorter one has
    local, remote = list(local or []), list(remote or [])
    return remote if len(remote) > len(local) else local


def max_by_key(local, remote) -> dict:
    local, remote = dict(local or {}), dict(remote or {})
    return {key: take_max(local.get(key), remote.get(key)) for key in {**local, **remote}}


def or_by_key(local, remote) -> dict:
    local, remote = dict(local or {}), dict(remote or {})
    return {key: logical_or(local.get(key), remote.get(key)) for key in {**local, **remote}}


def role_fields(*names: str) -> dict:
    owners = dict()
    for name in names:
        for role in Role:
            owners[role.field(name)] = role
    return owners


@dataclasses.dataclass
class DocumentSpec:
    room_name: str
    defaults: dict
    owners: dict = dataclasses.field(default_factory=dict)  # field -> Role
    strategies: dict = dataclasses.field(default_factory=dict)  # field -> merge function
    derive: Optional[Callable[[dict], dict]] = None
    is_complete: Callable[[dict], bool] = lambda doc: False
    aliases: dict = dataclasses.field(default_factory=dict)  # legacy field name -> field name

    def empty(self) -> dict:
        return self.apply_derive(copy.deepcopy(self.defaults))

    def owner(self, field: str) -> Optional[Role]:
        return self.owners.get(field)

    def apply_derive(self, doc: dict) -> dict:
        return self.derive(doc) if self.derive is not None else doc

    def normalize(self, data: Optional[dict]) -> dict:
        doc = copy.deepcopy(self.defaults)
        for field, value in (data or {}).items():
            field = self.aliases.get(field, field)
            if field in doc and value is not None:
                doc[field] = copy.deepcopy(value)
        return self.apply_derive(doc)


def merge_documents(spec: DocumentSpec, local: dict, remote: Optional[dict], role: Role) -> dict:
    incoming = spec.normalize(remote)
    merged = dict(local)
    for field, remote_value in incoming.items():
        strategy = spec.strategies.get(field)
        if strategy is not None:
            merged[field] = strategy(local.get(field), remote_value)
        elif spec.owner(field) == role and field in local:
            continue
        else:
            merged[field] = remote_value
    return spec.apply_derive(merged)


class SyncedDocument:
    _channel: Optional[Channel] = None

    def __init__(self, store: Store, session_id: str, spec: DocumentSpec, role: Role,
                 on_change: Optional[Callable] = None, on_complete: Optional[Callable] = None):
        self._store = store
        self.session_id = session_id
        self.spec = spec
        self.role = role
        self._on_change = on_change
        self._on_complete = on_complete
        self._fired = False
        self._closed = False

        self.data: dict = spec.empty()
        self.loaded = False
        self.error: Optional[str] = None

    @property
    def room_name(self) -> str:
        return self.spec.room_name

    @property
    def completed(self) -> bool:
        return bool(self.spec.is_complete(self.data))

    def mine(self, name: str) -> Any:
        return self.data.get(self.role.field(name))

    def partners(self, name: str) -> Any:
        return self.data.get(self.role.other.field(name))

    async def load(self) -> dict:
        try:
            row = await self._store.select_one("room_progress", {"session_id": self.session_id,
                                                                 "room_name": self.room_name})
        except StoreError as e:
            self.error = f"Failed to load {self.room_name}: {e}"
            logging.warning(self.error)
            return self.data
        if row is not None and not self._closed:
            self.data = self.spec.normalize(row.get("data"))
        self.loaded = True
        await self._check_complete()
        return self.data

    async def watch(self):
        self._channel = self._store.channel(f"doc-{self.session_id}-{self.room_name}")
        self._channel.on_changes("room_progress", self._on_row_change, filter=("session_id", self.session_id))
        await self._channel.subscribe()

    async def _on_row_change(self, change: Change):
        await self.apply_remote(change.new)

    async def update(self, **patch) -> bool:
        for field in patch:
            if field not in self.spec.defaults:
                raise KeyError(f"{self.room_name} has no field {field!r}")
            owner = self.spec.owner(field)
            if owner is not None and owner != self.role:
                raise FieldOwnershipError(f"{self.role.tag} may not write {field!r} in {self.room_name}")

        self.data = self.spec.apply_derive({**self.data, **copy.deepcopy(patch)})
        await self._notify()
        saved = await self.save()
        await self._check_complete()
        return saved

    async def save(self) -> bool:
        self.error = None
        try:
            await self._store.upsert("room_progress", {
                "session_id": self.session_id,
                "room_name": self.room_name,
                "completed": self.completed,
                "completed_at": utc_now(),
                "data": copy.deepcopy(self.data),
            }, on_conflict=("session_id", "room_name"))
        except StoreError as e:
            # local state stays as written; the next successful save carries it
            self.error = f"Failed to save {self.room_name}: {e}"
            logging.warning(self.error)
            return False
        return True

    async def apply_remote(self, row: dict) -> bool:
        if self._closed or row.get("room_name") != self.room_name:
            return False
        merged = merge_documents(self.spec, self.data, row.get("data"), self.role)
        if merged == self.data:
            return False
        self.data = merged
        await self._notify()
        await self._check_complete()
        return True

    async def _notify(self):
        if self._on_change is not None:
            await dispatch(self._on_change, self)

    async def _check_complete(self):
        if self._fired or not self.completed:
            return
        self._fired = True
        logging.debug(f"{self.room_name} complete")
        if self._on_complete is not None:
            await dispatch(self._on_complete, self)

    async def close(self):
        self._closed = True
        if self._channel is not None:
            await self._channel.unsubscribe()
            self._channel = None


class Throttle:

    def __init__(self, interval: float = 0.045, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self, force: bool = False) -> bool:
        now = self._clock()
        if not force and self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        return True


class LiveChannel:
    """
    Ephemeral broadcast path for continuous data such as cursors. Nothing sent here is persisted, and sends
    are throttled so pointer sampling does not turn into message rate.
    """
    _channel: Optional[Channel] = None

    def __init__(self, store: Store, name: str, event: str, role: Role, on_message: Callable,
                 interval: float = 0.045, clock: Callable[[], float] = time.monotonic):
        self._store = store
        self.name = name
        self.event = event
        self.role = role
        self._on_message = on_message
        self._throttle = Throttle(interval, clock)
        self.client_id = new_id()

    async def open(self):
        self._channel = self._store.channel(self.name)
        self._channel.on_broadcast(self.event, self._on_broadcast)
        await self._channel.subscribe()

    async def publish(self, payload: dict, force: bool = False) -> bool:
        if self._channel is None:
            return False
        if not self._throttle.ready(force):
            return False
        await self._channel.send(self.event, {**payload, "senderId": self.client_id, "role": self.role.tag})
        return True

    async def _on_broadcast(self, payload: dict):
        if payload.get("senderId") == self.client_id:
            return
        await dispatch(self._on_message, payload)

    async def close(self):
        if self._channel is not None:
            await self._channel.unsubscribe()
            self._channel = None
