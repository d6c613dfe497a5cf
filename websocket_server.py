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
import json
import logging
from typing import Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection
from websockets.protocol import State as WebsocketState

from server_data import ConnectedClient, ServerData
from store import Change, MemoryChannel, MemoryStore, StoreError, new_id

EVENT_PREFIX = "date_night:"


class WebsocketServer:
    _server: Optional[Server] = None

    def __init__(self, config, data: ServerData, store: MemoryStore):
        self._config = config
        self._data = data
        self._store = store
        self._websocket_server = websockets.serve(self.handler, self._config["server"]["host"],
                                                  int(self._config["server"]["websocket_port"]))

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return next(iter(self._server.sockets)).getsockname()[1]

    async def handler(self, websocket: ServerConnection):
        client = ConnectedClient(new_id(), websocket)
        self._data.connected_clients[client.cid] = client
        logging.info(f"Client {client.cid} connected from {websocket.remote_address}")
        shutdown_wait_task = asyncio.create_task(self._data.shutdown_event.wait())
        try:
            while websocket.state == WebsocketState.OPEN:
                recv_task = asyncio.create_task(websocket.recv())
                await asyncio.wait(
                    [recv_task, shutdown_wait_task],
                    return_when=asyncio.FIRST_COMPLETED
                )
                # shutdown case
                if self._data.shutdown_event.is_set():
                    recv_task.cancel()
                    await websocket.close()
                    break

                # raises ConnectionClosed once the peer has gone
                message = await recv_task
                if isinstance(message, str):
                    await self._parse_message(client, message)
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Websocket connection {client.cid} closed")
        finally:
            shutdown_wait_task.cancel()
            await self._disconnect(client)

    async def _disconnect(self, client: ConnectedClient):
        for channel in list(client.channels.values()):
            await channel.unsubscribe()
        client.channels.clear()
        self._data.connected_clients.pop(client.cid, None)
        logging.info(f"Client {client.cid} disconnected")

    @staticmethod
    async def _send(client: ConnectedClient, packet: dict):
        try:
            await client.websocket.send(json.dumps(packet))
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Dropped {packet['event']} for closed connection {client.cid}")

    async def _parse_message(self, client: ConnectedClient, message: str):
        try:
            packet = json.loads(message)
        except json.JSONDecodeError as e:
            logging.warning(f"Client {client.cid} sent non-JSON data; details:")
            logging.exception(e)
            return
        logging.debug(f"Received message: {packet}")
        if not isinstance(packet, dict) or ("id" not in packet) or ("event" not in packet):
            logging.warning(f"Malformed packet - no event")
            return
        try:
            await self._handle_packet(client, packet)
        except (KeyError, TypeError, ValueError) as e:
            logging.warning(f"Malformed {packet['event']} request: {e!r}")
            await self._send(client, {
                "id": packet["id"],
                "event": f"{EVENT_PREFIX}error/malformed_request",
            })

    async def _handle_packet(self, client: ConnectedClient, packet: dict) -> None:
        event = packet["event"]
        if event.startswith(f"{EVENT_PREFIX}store/"):
            await self._handle_store(client, packet)
            return
        if event == f"{EVENT_PREFIX}channel/subscribe":
            await self._subscribe(client, packet)
            await self._send(client, {"id": packet["id"], "event": f"{EVENT_PREFIX}channel/subscribed"})
            return

        channel = client.channels.get(packet.get("channel_id"))
        if channel is None:
            await self._send(client, {"id": packet["id"], "event": f"{EVENT_PREFIX}error/channel/unknown"})
            return

        if event == f"{EVENT_PREFIX}channel/unsubscribe":
            del client.channels[packet["channel_id"]]
            await channel.unsubscribe()
            await self._send(client, {"id": packet["id"], "event": f"{EVENT_PREFIX}channel/unsubscribed"})
        elif event == f"{EVENT_PREFIX}channel/send":
            await channel.send(packet["broadcast_event"], dict(packet["payload"]))
            await self._send(client, {"id": packet["id"], "event": f"{EVENT_PREFIX}channel/sent"})
        elif event == f"{EVENT_PREFIX}channel/track":
            await channel.track(dict(packet["meta"]))
            await self._send(client, {"id": packet["id"], "event": f"{EVENT_PREFIX}channel/tracked"})
        else:
            raise ValueError(f"Unknown event {event}")

    async def _handle_store(self, client: ConnectedClient, packet: dict):
        operation = packet["event"][len(f"{EVENT_PREFIX}store/"):]
        try:
            if operation == "insert":
                data = await self._store.insert(packet["table"], dict(packet["row"]))
            elif operation == "update":
                data = await self._store.update(packet["table"], dict(packet["values"]), dict(packet["match"]))
            elif operation == "upsert":
                data = await self._store.upsert(packet["table"], dict(packet["row"]), tuple(packet["on_conflict"]))
            elif operation == "select":
                data = await self._store.select(packet["table"], packet.get("match"), packet.get("order_by"))
            else:
                raise ValueError(f"Unknown store operation {operation}")
        except StoreError as e:
            logging.debug(f"Store {operation} from {client.cid} rejected: {e}")
            await self._send(client, {
                "id": packet["id"],
                "event": f"{EVENT_PREFIX}error/store",
                "data": {"kind": type(e).__name__, "message": str(e)},
            })
            return
        await self._send(client, {"id": packet["id"], "event": f"{EVENT_PREFIX}store/result", "data": data})

    async def _subscribe(self, client: ConnectedClient, packet: dict):
        channel_id = packet["channel_id"]
        if channel_id in client.channels:
            await client.channels.pop(channel_id).unsubscribe()
        channel = self._store.channel(packet["name"], packet.get("presence_key"))

        for index, listener in enumerate(packet.get("changes") or []):
            channel.on_changes(listener["table"], self._forward_change(client, channel_id, index),
                               listener.get("event", "*"), listener.get("filter"))
        for broadcast_event in set(packet.get("broadcast") or []):
            channel.on_broadcast(broadcast_event, self._forward_broadcast(client, channel_id, broadcast_event))
        channel.on_presence(self._forward_presence(client, channel_id))

        client.channels[channel_id] = channel
        await channel.subscribe()
        logging.debug(f"Client {client.cid} subscribed {channel_id} to {channel.name}")

    def _forward_change(self, client: ConnectedClient, channel_id: str, listener: int):
        async def forward(change: Change):
            await self._send(client, {
                "event": f"{EVENT_PREFIX}channel/changes",
                "channel_id": channel_id,
                "listener": listener,
                "data": change.to_payload(),
            })
        return forward

    def _forward_broadcast(self, client: ConnectedClient, channel_id: str, broadcast_event: str):
        async def forward(payload: dict):
            await self._send(client, {
                "event": f"{EVENT_PREFIX}channel/broadcast",
                "channel_id": channel_id,
                "broadcast_event": broadcast_event,
                "data": payload,
            })
        return forward

    def _forward_presence(self, client: ConnectedClient, channel_id: str):
        async def forward(presence_event: str, key: str, state: dict):
            await self._send(client, {
                "event": f"{EVENT_PREFIX}channel/presence",
                "channel_id": channel_id,
                "presence_event": presence_event,
                "key": key,
                "data": state,
            })
        return forward

    async def __aenter__(self):
        if self._websocket_server is not None:
            logging.debug(f"Starting websocket server")
            self._server = await self._websocket_server.__aenter__()
            logging.info(f"Sync server listening on port {self.port}")
            return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._websocket_server is not None:
            logging.debug(f"Stopping websocket server")
            self._data.shutdown_event.set()
            return await self._websocket_server.__aexit__(exc_type, exc_val, exc_tb)
