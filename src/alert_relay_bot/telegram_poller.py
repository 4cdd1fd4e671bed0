from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

log = logging.getLogger("telegram.poller")


class TelegramPoller:
    """Long-polls getUpdates and hands each update to ``on_update`` one at a
    time, so edits to a signal are applied in the order they arrived.

    The last processed update id is persisted to ``state_path`` so a restart
    does not replay old button presses.
    """

    def __init__(
        self,
        token: str,
        state_path: str,
        on_update: Callable[[Dict[str, Any]], Awaitable[None]],
        poll_timeout_sec: int = 30,
    ):
        self.token = token
        self.state_path = Path(state_path)
        self.on_update = on_update
        self.poll_timeout_sec = poll_timeout_sec
        self._session: Optional[aiohttp.ClientSession] = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._last_update_id: int = 0

    async def start(self) -> None:
        if not self.token:
            log.warning("Telegram polling enabled but token missing")
            return
        self._load_state()
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.poll_timeout_sec + 5))
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            self._task = None
        if self._session:
            await self._session.close()
            self._session = None

    def _load_state(self) -> None:
        if self.state_path.exists():
            try:
                data = json.loads(self.state_path.read_text(encoding="utf-8"))
                self._last_update_id = int(data.get("last_update_id", 0))
            except (OSError, ValueError) as e:
                log.warning("Failed to load telegram poller state: %s", e)

    def _save_state(self) -> None:
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps({"last_update_id": self._last_update_id}), encoding="utf-8")
        except OSError as e:
            log.warning("Failed to persist telegram poller state: %s", e)

    async def process(self, update: Dict[str, Any]) -> None:
        self._last_update_id = max(self._last_update_id, int(update.get("update_id", 0)))
        try:
            await self.on_update(update)
        except Exception:
            # one bad update must not stop the loop
            log.exception("update_handler_failed update_id=%s", update.get("update_id"))

    async def _poll_loop(self) -> None:
        assert self._session is not None
        url = f"https://api.telegram.org/bot{self.token}/getUpdates"
        while not self._stop.is_set():
            try:
                params = {
                    "timeout": self.poll_timeout_sec,
                    "offset": self._last_update_id + 1,
                    "allowed_updates": json.dumps(["message", "callback_query"]),
                }
                async with self._session.get(url, params=params) as resp:
                    data = await resp.json(content_type=None)
                if not data.get("ok"):
                    log.warning("getUpdates not ok: %s", str(data.get("description", ""))[:200])
                    await asyncio.sleep(5)
                    continue
                for update in data.get("result", []):
                    await self.process(update)
                if data.get("result"):
                    self._save_state()
            except asyncio.CancelledError:
                break
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                log.warning("Telegram polling error: %s", e)
                await asyncio.sleep(5)
