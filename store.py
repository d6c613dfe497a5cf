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
import copy
import dataclasses
import inspect
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

import aiofiles

"""
The store is the single source of truth shared by both partners. It holds a fixed set of tables, and every
write is published on the change feed to channels that asked for it. Channels also carry ephemeral broadcasts
and presence, neither of which ever touches the tables.
"""


class StoreError(Exception): pass


class UnknownTable(StoreError): pass


class UnknownColumn(StoreError): pass


class ConstraintViolation(StoreError): pass


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


@dataclasses.dataclass
class TableSchema:
    columns: tuple
    unique: tuple = ()  # tuples of column names
    defaults: dict = dataclasses.field(default_factory=dict)

    def default_row(self) -> dict:
        row = {column: None for column in self.columns}
        for column, default in self.defaults.items():
            row[column] = default() if callable(default) else copy.deepcopy(default)
        return row


TABLES = {
    "sessions": TableSchema(
        columns=("id", "room_code", "player1_name", "player2_name", "current_phase", "love_meter",
                 "created_at", "updated_at"),
        unique=(("id",), ("room_code",)),
        defaults={"id": new_id, "current_phase": "lobby", "love_meter": 0, "created_at": utc_now,
                  "updated_at": utc_now},
    ),
    "room_progress": TableSchema(
        columns=("id", "session_id", "room_name", "completed", "completed_at", "data"),
        unique=(("id",), ("session_id", "room_name")),
        defaults={"id": new_id, "completed": False},
    ),
    "rooms": TableSchema(
        columns=("id", "room_code", "current_day", "current_stage", "love_meter", "created_at", "updated_at"),
        unique=(("id",), ("room_code",)),
        defaults={"id": new_id, "current_day": 0, "current_stage": 0, "love_meter": 0, "created_at": utc_now,
                  "updated_at": utc_now},
    ),
    "stars": TableSchema(
        columns=("id", "session_id", "placed_by", "x", "y", "label", "created_at"),
        unique=(("id",),),
        defaults={"id": new_id, "created_at": utc_now},
    ),
    "messages": TableSchema(
        columns=("id", "session_id", "sender_name", "content", "is_prompt", "created_at"),
        unique=(("id",),),
        defaults={"id": new_id, "is_prompt": False, "created_at": utc_now},
    ),
    "capsules": TableSchema(
        columns=("id", "session_id", "author_name", "content", "capsule_type", "unlocked", "created_at"),
        unique=(("id",),),
        defaults={"id": new_id, "capsule_type": "love-letter", "unlocked": False, "created_at": utc_now},
    ),
}


@dataclasses.dataclass
class Change:
    event_type: str  # INSERT | UPDATE
    table: str
    new: dict
    old: Optional[dict] = None

    def to_payload(self) -> dict:
        return {"eventType": self.event_type, "table": self.table, "new": self.new, "old": self.old}

    @staticmethod
    def from_payload(payload: dict) -> "Change":
        return Change(payload["eventType"], payload["table"], payload["new"], payload.get("old"))


@dataclasses.dataclass
class ChangeListener:
    table: str
    callback: Callable
    event: str = "*"
    filter: Optional[tuple] = None  # (column, value)

    def matches(self, change: Change) -> bool:
        if change.table != self.table:
            return False
        if self.event != "*" and self.event != change.event_type:
            return False
        if self.filter is not None:
            column, value = self.filter
            return change.new.get(column) == value
        return True

    def describe(self) -> dict:
        return {"table": self.table, "event": self.event,
                "filter": list(self.filter) if self.filter is not None else None}


async def dispatch(handler, *args):
    if inspect.iscoroutinefunction(handler):
        return await handler(*args)
    return handler(*args)


def row_matches(row: dict, match: Optional[dict]) -> bool:
    if not match:
        return True
    for column, expected in match.items():
        if isinstance(expected, (list, tuple, set, frozenset)):
            if row.get(column) not in expected:
                return False
        elif row.get(column) != expected:
            return False
    return True


class Channel:
    """
    A named subscription. Listeners are registered before ``subscribe`` and receive row changes, broadcasts
    from other subscribers of the same name, and presence updates.
    """

    def __init__(self, name: str, presence_key: Optional[str] = None):
        self.name = name
        self.presence_key = presence_key or new_id()
        self.subscribed = False
        self._change_listeners: list[ChangeListener] = []
        self._broadcast_listeners: dict[str, list[Callable]] = dict()
        self._presence_listeners: list[Callable] = []
        self._presence_state: dict[str, list[dict]] = dict()

    def on_changes(self, table: str, callback: Callable, event: str = "*", filter: Optional[tuple] = None):
        self._change_listeners.append(ChangeListener(table, callback, event, tuple(filter) if filter else None))
        return self

    def on_broadcast(self, event: str, callback: Callable):
        self._broadcast_listeners.setdefault(event, []).append(callback)
        return self

    def on_presence(self, callback: Callable):
        self._presence_listeners.append(callback)
        return self

    def presence_state(self) -> dict:
        return copy.deepcopy(self._presence_state)

    async def subscribe(self):
        raise NotImplementedError

    async def unsubscribe(self):
        raise NotImplementedError

    async def send(self, event: str, payload: dict):
        raise NotImplementedError

    async def track(self, meta: dict):
        raise NotImplementedError

    async def _deliver_change(self, change: Change):
        if not self.subscribed:
            return
        for listener in list(self._change_listeners):
            if listener.matches(change):
                await dispatch(listener.callback, change)

    async def _deliver_broadcast(self, event: str, payload: dict):
        if not self.subscribed:
            return
        for callback in list(self._broadcast_listeners.get(event, [])):
            await dispatch(callback, copy.deepcopy(payload))

    async def _deliver_presence(self, event: str, key: str, state: dict):
        if not self.subscribed:
            return
        self._presence_state = copy.deepcopy(state)
        for callback in list(self._presence_listeners):
            await dispatch(callback, event, key, self.presence_state())


class Store:
    """Contract shared by the in-memory store and the websocket client."""

    async def insert(self, table: str, row: dict) -> dict:
        raise NotImplementedError

    async def update(self, table: str, values: dict, match: dict) -> list[dict]:
        raise NotImplementedError

    async def upsert(self, table: str, row: dict, on_conflict: tuple) -> dict:
        raise NotImplementedError

    async def select(self, table: str, match: Optional[dict] = None, order_by: Optional[str] = None) -> list[dict]:
        raise NotImplementedError

    async def select_one(self, table: str, match: Optional[dict] = None) -> Optional[dict]:
        rows = await self.select(table, match)
        return rows[0] if rows else None

    def channel(self, name: str, presence_key: Optional[str] = None) -> Channel:
        raise NotImplementedError


class MemoryChannel(Channel):

    def __init__(self, store: "MemoryStore", name: str, presence_key: Optional[str] = None):
        super(MemoryChannel, self).__init__(name, presence_key)
        self._store = store
        self.tracking = False

    async def subscribe(self):
        if self.subscribed:
            return self
        self.subscribed = True
        self._store._attach(self)
        logging.debug(f"Channel {self.name} subscribed ({self.presence_key=})")
        return self

    async def unsubscribe(self):
        if not self.subscribed:
            return
        if self.tracking:
            await self.untrack()
        self._store._detach(self)
        self.subscribed = False
        logging.debug(f"Channel {self.name} unsubscribed ({self.presence_key=})")

    async def send(self, event: str, payload: dict):
        if not self.subscribed:
            logging.warning(f"Tried to broadcast {event} on {self.name} before subscribing")
            return
        await self._store._broadcast(self, event, payload)

    async def track(self, meta: dict):
        if not self.subscribed:
            logging.warning(f"Tried to track presence on {self.name} before subscribing")
            return
        self.tracking = True
        await self._store._track(self, meta)

    async def untrack(self):
        if not self.tracking:
            return
        self.tracking = False
        await self._store._untrack(self)


class MemoryStore(Store):

    def __init__(self, tables: Optional[dict] = None, realtime: bool = True, latency: float = 0):
        self._schemas: dict[str, TableSchema] = dict(tables if tables is not None else TABLES)
        self._rows: dict[str, list[dict]] = {name: [] for name in self._schemas}
        self._channels: dict[str, list[MemoryChannel]] = dict()
        self._presence: dict[str, dict[str, list[tuple]]] = dict()
        self.realtime = realtime
        self.latency = latency

    def _schema(self, table: str) -> TableSchema:
        if table not in self._schemas:
            raise UnknownTable(f'relation "{table}" does not exist')
        return self._schemas[table]

    def _check_columns(self, table: str, values: dict):
        schema = self._schema(table)
        for column in values:
            if column not in schema.columns:
                raise UnknownColumn(f'column "{column}" of relation "{table}" does not exist')

    def _check_unique(self, table: str, candidate: dict, others: Optional[list] = None):
        schema = self._schema(table)
        if others is None:
            others = self._rows[table]
        for columns in schema.unique:
            key = tuple(candidate.get(column) for column in columns)
            if any(part is None for part in key):
                continue
            for row in others:
                if tuple(row.get(column) for column in columns) == key:
                    raise ConstraintViolation(
                        f'duplicate key value violates unique constraint "{table}_{"_".join(columns)}_key"')

    async def _pause(self):
        await asyncio.sleep(self.latency)

    async def _emit(self, change: Change):
        if not self.realtime:
            return
        for channels in list(self._channels.values()):
            for channel in list(channels):
                await channel._deliver_change(Change(change.event_type, change.table, copy.deepcopy(change.new),
                                                     copy.deepcopy(change.old)))

    async def insert(self, table: str, row: dict) -> dict:
        await self._pause()
        self._check_columns(table, row)
        new_row = self._schema(table).default_row()
        new_row.update(copy.deepcopy(row))
        self._check_unique(table, new_row)
        self._rows[table].append(new_row)
        logging.debug(f"INSERT {table} {new_row.get('id')}")
        await self._emit(Change("INSERT", table, copy.deepcopy(new_row)))
        return copy.deepcopy(new_row)

    async def update(self, table: str, values: dict, match: dict) -> list[dict]:
        await self._pause()
        self._check_columns(table, values)
        self._check_columns(table, match)
        matched = [row for row in self._rows[table] if row_matches(row, match)]
        others = [row for row in self._rows[table] if not any(row is m for m in matched)]
        for row in matched:
            candidate = dict(row)
            candidate.update(copy.deepcopy(values))
            self._check_unique(table, candidate, others)
            others.append(candidate)

        # nothing is written until every matched row passes
        changes = []
        for row in matched:
            old = copy.deepcopy(row)
            row.update(copy.deepcopy(values))
            changes.append(Change("UPDATE", table, copy.deepcopy(row), old))
        logging.debug(f"UPDATE {table} matched {len(changes)} row(s)")
        for change in changes:
            await self._emit(change)
        return [copy.deepcopy(change.new) for change in changes]

    async def upsert(self, table: str, row: dict, on_conflict: tuple) -> dict:
        await self._pause()
        self._check_columns(table, row)
        key = {column: row.get(column) for column in on_conflict}
        existing = next((r for r in self._rows[table] if row_matches(r, key)), None)
        if existing is None:
            new_row = self._schema(table).default_row()
            new_row.update(copy.deepcopy(row))
            self._check_unique(table, new_row)
            self._rows[table].append(new_row)
            logging.debug(f"UPSERT (insert) {table} {key}")
            await self._emit(Change("INSERT", table, copy.deepcopy(new_row)))
            return copy.deepcopy(new_row)

        old = copy.deepcopy(existing)
        values = {column: value for column, value in row.items() if column != "id"}
        candidate = dict(existing)
        candidate.update(copy.deepcopy(values))
        self._check_unique(table, candidate, [r for r in self._rows[table] if r is not existing])
        existing.update(copy.deepcopy(values))
        logging.debug(f"UPSERT (update) {table} {key}")
        await self._emit(Change("UPDATE", table, copy.deepcopy(existing), old))
        return copy.deepcopy(existing)

    async def select(self, table: str, match: Optional[dict] = None, order_by: Optional[str] = None) -> list[dict]:
        await self._pause()
        self._schema(table)
        if match:
            self._check_columns(table, match)
        rows = [copy.deepcopy(row) for row in self._rows[table] if row_matches(row, match)]
        if order_by is not None:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)))
        return rows

    def channel(self, name: str, presence_key: Optional[str] = None) -> MemoryChannel:
        return MemoryChannel(self, name, presence_key)

    def _attach(self, channel: MemoryChannel):
        self._channels.setdefault(channel.name, []).append(channel)

    def _detach(self, channel: MemoryChannel):
        channels = self._channels.get(channel.name, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._channels.pop(channel.name, None)

    async def _broadcast(self, sender: MemoryChannel, event: str, payload: dict):
        for channel in list(self._channels.get(sender.name, [])):
            if channel is sender:
                continue
            await channel._deliver_broadcast(event, payload)

    def _presence_view(self, name: str) -> dict:
        return {key: [copy.deepcopy(meta) for _, meta in entries]
                for key, entries in self._presence.get(name, {}).items() if entries}

    async def _announce_presence(self, name: str, event: str, key: str):
        state = self._presence_view(name)
        for channel in list(self._channels.get(name, [])):
            await channel._deliver_presence(event, key, state)
            await channel._deliver_presence("sync", key, state)

    async def _track(self, channel: MemoryChannel, meta: dict):
        entries = self._presence.setdefault(channel.name, {}).setdefault(channel.presence_key, [])
        entries[:] = [entry for entry in entries if entry[0] is not channel]
        entries.append((channel, copy.deepcopy(meta)))
        await self._announce_presence(channel.name, "join", channel.presence_key)

    async def _untrack(self, channel: MemoryChannel):
        entries = self._presence.get(channel.name, {}).get(channel.presence_key, [])
        entries[:] = [entry for entry in entries if entry[0] is not channel]
        await self._announce_presence(channel.name, "leave", channel.presence_key)

    def snapshot(self) -> dict:
        return {table: copy.deepcopy(rows) for table, rows in self._rows.items()}

    def restore(self, snapshot: dict):
        for table, rows in snapshot.items():
            if table not in self._schemas:
                logging.warning(f"Ignoring unknown table {table} in snapshot")
                continue
            self._rows[table] = [copy.deepcopy(row) for row in rows]

    async def save(self, path: Union[str, Path]):
        async with aiofiles.open(path, 'w') as snapshot_file:
            await snapshot_file.write(json.dumps(self.snapshot(), indent=2))
        logging.debug(f"Store snapshot saved to {path}")

    async def load(self, path: Union[str, Path]):
        try:
            async with aiofiles.open(path, 'r') as snapshot_file:
                file_data = await snapshot_file.read()
        except FileNotFoundError:
            logging.info(f"No store snapshot at {path}, starting empty")
            return
        try:
            self.restore(json.loads(file_data))
        except json.JSONDecodeError as e:
            logging.exception(e)
            raise StoreError(f"Snapshot {path} is not valid JSON") from e
        logging.info(f"Store snapshot loaded from {path}")
