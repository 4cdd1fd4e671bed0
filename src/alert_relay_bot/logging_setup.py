import logging
import os

def setup_logging(level: str = "INFO") -> None:
    lvl = os.getenv("LOG_LEVEL", level).upper()
    logging.basicConfig(
        level=getattr(logging, lvl, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # aiohttp access lines and websocket frames drown the trade log at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
