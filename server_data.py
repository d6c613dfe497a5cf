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
import dataclasses

from websockets.asyncio.server import ServerConnection

from store import MemoryChannel


@dataclasses.dataclass
class ConnectedClient:
    cid: str  # connection id, also used in log lines
    websocket: ServerConnection
    channels: dict[str, MemoryChannel] = dataclasses.field(default_factory=dict)  # client channel_id -> channel


class ServerData:

    def __init__(self):
        self.connected_clients: dict[str, ConnectedClient] = dict()
        self.shutdown_event = asyncio.Event()
