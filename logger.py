import os
import logging
from typing import Optional
from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install

# ignore errors from these libs
import tomlkit, voluptuous, websockets, zeroconf

console = Console()

# library loggers that flood DEBUG with frame-level detail
NOISY_LOGGERS = ("websockets", "zeroconf", "asyncio")


def setup_logging(level: Optional[str] = None):
    FORMAT = "%(message)s"
    level = level or os.environ.get("LOGLEVEL", "INFO")
    logging_handler = RichHandler(
        level=level,
        console=console,
        rich_tracebacks=True,
        tracebacks_suppress=[tomlkit, voluptuous, websockets, zeroconf]
    )
    logging.basicConfig(
        level="NOTSET", format=FORMAT, datefmt="[%X]", handlers=[logging_handler]
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(os.environ.get("LIBLOGLEVEL", "WARNING"))
    install(
        console=console
    )
