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
import os

from config import Config, ConfigurationLoadError
from logger import setup_logging
from mdns_registration import DateNightZeroconf, ZeroconfException
from server_data import ServerData
from store import MemoryStore, StoreError
from websocket_server import WebsocketServer


class DateNight:

    def __init__(self, settings):
        self._settings = settings
        self._data = ServerData()
        self._store = MemoryStore()
        self._websocket_server = WebsocketServer(self._settings, self._data, self._store)
        self._mdns = DateNightZeroconf(self._settings, lambda: self._websocket_server.port)

    @property
    def snapshot_path(self):
        return self._settings["store"]["snapshot"]

    async def load_store(self):
        if self.snapshot_path:
            await self._store.load(self.snapshot_path)

    async def save_store(self):
        if self.snapshot_path:
            await self._store.save(self.snapshot_path)

    async def begin(self):
        logging.info("Starting Date Night Server")
        await self.load_store()
        try:
            logging.info("Starting Date Night Sync Server")
            async with self._websocket_server:
                logging.info("Starting MDNS")
                async with self._mdns:
                    try:
                        logging.info("Ctrl^C to quit")
                        while True:
                            await asyncio.sleep(1)
                    except asyncio.CancelledError:
                        logging.info("Cancelled ...")
                    except KeyboardInterrupt:
                        logging.info("Cancelled ...")
                    finally:
                        logging.info("Stopping Server ...")
        finally:
            await self.save_store()


async def main():
    logging.info("Starting date night ...")
    config = Config(os.environ.get("DATE_NIGHT_CONFIG", "./config.toml"))
    try:
        await config.initialize()
        date_night = DateNight(config.settings)
        await date_night.begin()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return
    except ZeroconfException:
        logging.error("Could not advertise on the local network. Set server.advertise = false to skip it")
        return
    except StoreError:
        logging.error("Could not load the store snapshot. Exiting")
        return
    finally:
        await config.close()


def run():
    setup_logging()
    asyncio.run(main())


if __name__ == "__main__":
    run()
