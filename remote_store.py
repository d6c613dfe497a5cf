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
import itertools
import json
import logging
from typing import Optional

import websockets
from websockets.asyncio.client import ClientConnection

from store import (
    Change,
    Channel,
    ConstraintViolation,
    Store,
    StoreError,
    UnknownColumn,
    UnknownTable,
    dispatch,
    new_id,
)

EVENT_PREFIX = "date_night:"

STORE_ERRORS = {cls.__name__: cls for cls in (StoreError, UnknownTable, UnknownColumn, ConstraintViolation)}


class RemoteChannel(Channel):
    """
    Channel whose membership lives on the server. Pushed events are queued and handed to listeners by a
    per-channel task, in arrival order, so a listener may await store calls on the same connection.
    """
    _pump_task: Optional[asyncio.Task] = None

    def __init__(self, store: "RemoteStore", name: str, presence_key: Optional[str] = None):
        super(RemoteChannel, self).__init__(name, presence_key)
        self._store = store
        self.channel_id = new_id()
        self._queue: asyncio.Queue = asyncio.Queue()

    async def subscribe(self):
        if self.subscribed:
            return self
        self.subscribed = True
        self._store._channels[self.channel_id] = self
        self._pump_task = asyncio.create_task(self._pump())
        await self._store._request("channel/subscribe", {
            "channel_id": self.channel_id,
            "name": self.name,
            "presence_key": self.presence_key,
            "changes": [listener.describe() for listener in self._change_listeners],
            "broadcast": list(self._broadcast_listeners),
        })
        logging.debug(f"Remote channel {self.name} subscribed as {self.channel_id}")
        return self

    async def unsubscribe(self):
        if not self.subscribed:
            return
        self.subscribed = False
        self._store._channels.pop(self.channel_id, None)
        if self._pump_task is not None and self._pump_task is asyncio.current_task():
            # unsubscribed from one of our own listeners; stop after this event
            self._queue.put_nowait(None)
            self._pump_task = None
        elif self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        if self._store.connected:
            await self._store._request("channel/unsubscribe", {"channel_id": self.channel_id})

    async def send(self, event: str, payload: dict):
        if not self.subscribed:
            logging.warning(f"Tried to broadcast {event} on {self.name} before subscribing")
            return
        await self._store._request("channel/send", {"channel_id": self.channel_id, "broadcast_event": event,
                                                    "payload": payload})

    async def track(self, meta: dict):
        if not self.subscribed:
            logging.warning(f"Tried to track presence on {self.name} before subscribing")
            return
        await self._store._request("channel/track", {"channel_id": self.channel_id, "meta": meta})

    def push(self, packet: dict):
        self._queue.put_nowait(packet)

    async def _pump(self):
        while True:
            packet = await self._queue.get()
            if packet is None:
                return
            try:
                await self._handle_push(packet)
            except Exception as e:
                # a failing listener must not stop later events from arriving
                logging.exception(e)

    async def _handle_push(self, packet: dict):
        event = packet["event"]
        if event == f"{EVENT_PREFIX}channel/changes":
            index = packet["listener"]
            if not self.subscribed or not 0 <= index < len(self._change_listeners):
                return
            from_server = Change.from_payload(packet["data"])
            listener = self._change_listeners[index]
            if listener.matches(from_server):
                await dispatch(listener.callback, from_server)
        elif event == f"{EVENT_PREFIX}channel/broadcast":
            await self._deliver_broadcast(packet["broadcast_event"], packet["data"])
        elif event == f"{EVENT_PREFIX}channel/presence":
            await self._deliver_presence(packet["presence_event"], packet["key"], packet["data"])
        else:
            logging.warning(f"Unknown push {event} on {self.name}")


class RemoteStore(Store):
    """Store contract spoken over one websocket connection to a ``WebsocketServer``."""
    _websocket: Optional[ClientConnection] = None
    _reader_task: Optional[asyncio.Task] = None

    def __init__(self, uri: str):
        self.uri = uri
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = dict()
        self._channels: dict[str, RemoteChannel] = dict()

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    async def connect(self):
        self._websocket = await websockets.connect(self.uri)
        self._reader_task = asyncio.create_task(self._reader())
        logging.debug(f"Connected to {self.uri}")
        return self

    async def close(self):
        for channel in list(self._channels.values()):
            try:
                await channel.unsubscribe()
            except StoreError as e:
                logging.debug(f"Could not unsubscribe {channel.name} while closing: {e}")
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

    async def __aenter__(self):
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _reader(self):
        try:
            async for message in self._websocket:
                try:
                    packet = json.loads(message)
                except json.JSONDecodeError as e:
                    logging.warning(f"Server sent non-JSON data; details:")
                    logging.exception(e)
                    continue
                self._route(packet)
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Connection to {self.uri} closed")
        finally:
            self._websocket = None
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(StoreError("Connection to sync server lost"))
            self._pending.clear()

    def _route(self, packet: dict):
        if "channel_id" in packet and "id" not in packet:
            channel = self._channels.get(packet["channel_id"])
            if channel is not None:
                channel.push(packet)
            return
        future = self._pending.pop(packet.get("id"), None)
        if future is None:
            logging.warning(f"Reply to unknown request: {packet.get('event')}")
            return
        if not future.done():
            future.set_result(packet)

    async def _request(self, operation: str, fields: dict) -> dict:
        if self._websocket is None:
            raise StoreError("Not connected to sync server")
        packet_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[packet_id] = future
        try:
            await self._websocket.send(json.dumps({"id": packet_id, "event": f"{EVENT_PREFIX}{operation}", **fields}))
        except websockets.exceptions.ConnectionClosed as e:
            self._pending.pop(packet_id, None)
            raise StoreError("Connection to sync server lost") from e
        reply = await future

        event = reply["event"]
        if event == f"{EVENT_PREFIX}error/store":
            error = reply.get("data") or {}
            raise STORE_ERRORS.get(error.get("kind"), StoreError)(error.get("message", "store error"))
        if event == f"{EVENT_PREFIX}error/malformed_request":
            raise StoreError(f"Server rejected {operation} as malformed")
        if event == f"{EVENT_PREFIX}error/channel/unknown":
            raise StoreError(f"Server does not know channel for {operation}")
        return reply

    async def insert(self, table: str, row: dict) -> dict:
        return (await self._request("store/insert", {"table": table, "row": row}))["data"]

    async def update(self, table: str, values: dict, match: dict) -> list[dict]:
        return (await self._request("store/update", {"table": table, "values": values, "match": match}))["data"]

    async def upsert(self, table: str, row: dict, on_conflict: tuple) -> dict:
        return (await self._request("store/upsert", {"table": table, "row": row,
                                                     "on_conflict": list(on_conflict)}))["data"]

    async def select(self, table: str, match: Optional[dict] = None, order_by: Optional[str] = None) -> list[dict]:
        return (await self._request("store/select", {"table": table, "match": match,
                                                     "order_by": order_by}))["data"]

    def channel(self, name: str, presence_key: Optional[str] = None) -> RemoteChannel:
        return RemoteChannel(self, name, presence_key)
