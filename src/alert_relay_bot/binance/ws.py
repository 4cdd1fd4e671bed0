from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable

import websockets

from ..errors import ExchangeError
from .rest import BinanceRest

log = logging.getLogger("binance.ws")

MAX_BACKOFF_SEC = 60


class UserDataStream:
    """Single user data stream for one account.

    Obtains a listen key, keeps it alive every ``keepalive_minutes`` and
    reconnects with exponential backoff (1s doubling to 60s) whenever the
    socket drops or the key expires.
    """

    def __init__(
        self,
        rest: BinanceRest,
        ws_base_url: str,
        on_msg: Callable[[dict], Awaitable[None]],
        keepalive_minutes: int = 30,
    ):
        self.rest = rest
        self.ws_base = ws_base_url.rstrip("/")
        self.on_msg = on_msg
        self.keepalive_sec = keepalive_minutes * 60
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_sec)
            try:
                await self.rest.keepalive_user_stream()
                log.debug("listen_key_keepalive ok")
            except ExchangeError as e:
                log.warning("listen_key_keepalive_failed status=%s code=%s msg=%s", e.status, e.code, e.msg)

    async def _consume(self, url: str) -> None:
        async with websockets.connect(url, ping_interval=20, ping_timeout=20, close_timeout=10) as ws:
            log.info("user_stream_connected")
            keepalive = asyncio.create_task(self._keepalive())
            try:
                async for raw in ws:
                    if self._stop.is_set():
                        break
                    try:
                        msg = json.loads(raw)
                    except ValueError:
                        log.warning("user_stream_bad_frame len=%d", len(raw))
                        continue
                    if msg.get("e") == "listenKeyExpired":
                        log.warning("listen_key_expired; reconnecting")
                        break
                    try:
                        await self.on_msg(msg)
                    except Exception:
                        log.exception("user_stream_handler_error event=%s", msg.get("e"))
            finally:
                keepalive.cancel()

    async def run(self) -> None:
        backoff = 1
        while not self._stop.is_set():
            try:
                listen_key = await self.rest.start_user_stream()
                await self._consume(f"{self.ws_base}/ws/{listen_key}")
                backoff = 1
                if self._stop.is_set():
                    break
                log.info("user_stream_closed; reconnecting in %ss", backoff)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("user_stream_error (%s). Reconnecting in %ss", e, backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, MAX_BACKOFF_SEC)
