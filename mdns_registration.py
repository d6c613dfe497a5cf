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
import socket
from typing import Optional

import zeroconf
from zeroconf import IPVersion
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

SERVICE_TYPE = "_datenight._tcp.local."


class ZeroconfException(Exception): pass


def local_address() -> str:
    # no packets are sent; connecting a UDP socket only picks the outgoing interface
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        try:
            probe.connect(("10.255.255.255", 1))
            return probe.getsockname()[0]
        except OSError:
            return "127.0.0.1"


def service_properties(config, port: int) -> dict:
    return {
        "name": config['server']['name'],
        "path": "/",
        "proto": "date_night/1",
        "port": str(port),
    }


class DateNightZeroconf:
    """Advertises the sync server on the LAN so a partner's client can find it without typing an address."""
    _zeroconf: Optional[AsyncZeroconf] = None
    _service: Optional[AsyncServiceInfo] = None

    def __init__(self, config, port_source=None):
        self._config = config
        # callable returning the bound port, for servers started on port 0
        self._port_source = port_source

    @property
    def enabled(self) -> bool:
        return bool(self._config['server'].get('advertise', False))

    def _port(self) -> int:
        if self._port_source is not None and self._port_source() is not None:
            return int(self._port_source())
        return int(self._config['server']['websocket_port'])

    async def start(self):
        if not self.enabled:
            logging.debug("LAN advertisement disabled.")
            return
        port = self._port()
        name = self._config['server']['name']
        try:
            self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)
            self._service = AsyncServiceInfo(
                SERVICE_TYPE,
                f"{name}.{SERVICE_TYPE}",
                addresses=[socket.inet_aton(local_address())],
                port=port,
                properties=service_properties(self._config, port),
                server=f"{name.replace(' ', '-')}.local."
            )
            await self._zeroconf.async_register_service(self._service)
            logging.info(f"Advertising {name} on {SERVICE_TYPE} port {port}")
        except zeroconf.Error as e:
            logging.exception(e)
            raise ZeroconfException() from e

    async def stop(self):
        if self._zeroconf is None:
            return
        await self._zeroconf.async_unregister_all_services()
        await self._zeroconf.async_close()
        self._zeroconf = None
        logging.debug(f"Unregistered services.")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
