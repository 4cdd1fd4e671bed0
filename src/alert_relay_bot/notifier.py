from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

log = logging.getLogger("notifier")

MAX_TELEGRAM_CHARS = 4096


class TelegramNotifier:
    """Telegram Bot API sink: send, edit in place, answer callbacks.

    Transport failures are retried and then logged; they never propagate to
    the caller.
    """

    def __init__(self, token: str, default_chat_id: Optional[int] = None, parse_mode: str = "HTML", enabled: bool = True):
        self.enabled = enabled
        self.token = token
        self.default_chat_id = default_chat_id
        self.parse_mode = parse_mode
        self.timeout = aiohttp.ClientTimeout(total=10)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        if not self.enabled:
            return
        if not self.token:
            log.warning("Telegram enabled but TELEGRAM_BOT_TOKEN missing.")
            self.enabled = False
            return
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _call(self, method: str, payload: Dict[str, Any], attempts_max: int = 3) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        if not self._session:
            await self.start()
            if not self.enabled or self._session is None:
                return None
        url = f"https://api.telegram.org/bot{self.token}/{method}"
        # Basic rate limit + retries
        async with self._lock:
            delay = 1.0
            attempts = 0
            last_err: Optional[Exception] = None
            while attempts < attempts_max:
                attempts += 1
                try:
                    async with self._session.post(url, json=payload) as r:
                        body = await r.json(content_type=None)
                        if not isinstance(body, dict):
                            body = {}
                        if r.status == 200 and body.get("ok"):
                            return body.get("result") if isinstance(body.get("result"), dict) else {}
                        desc = str(body.get("description", ""))
                        # editing with identical content is not worth retrying
                        if r.status == 400:
                            log.warning("Telegram %s rejected: %s", method, desc[:300])
                            return None
                        last_err = RuntimeError(f"HTTP {r.status}: {desc[:300]}")
                        log.warning("Telegram %s failed (attempt %s): %s", method, attempts, last_err)
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                    last_err = e
                    log.warning("Telegram %s exception (attempt %s): %s", method, attempts, e)
                await asyncio.sleep(delay)
                delay = min(delay * 2, 30)
            if last_err:
                log.error("Telegram %s exhausted retries: %s", method, last_err)
        return None

    @staticmethod
    def _truncate(text: str) -> str:
        if len(text) <= MAX_TELEGRAM_CHARS:
            return text
        suffix = "... [truncated]"
        return text[: MAX_TELEGRAM_CHARS - len(suffix)] + suffix

    async def send(self, text: str, chat_id: Optional[int] = None, reply_markup: Optional[dict] = None) -> Optional[int]:
        """Returns the new message id, or None if delivery failed."""
        target = chat_id if chat_id is not None else self.default_chat_id
        if target is None:
            log.warning("Telegram send skipped: no chat id")
            return None
        payload: Dict[str, Any] = {
            "chat_id": target,
            "text": self._truncate(text),
            "disable_web_page_preview": True,
            "parse_mode": self.parse_mode,
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        res = await self._call("sendMessage", payload)
        if not res:
            return None
        return res.get("message_id")

    async def edit_text(self, chat_id: int, message_id: int, text: str, reply_markup: Optional[dict] = None) -> bool:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": self._truncate(text),
            "disable_web_page_preview": True,
            "parse_mode": self.parse_mode,
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self._call("editMessageText", payload) is not None

    async def edit_markup(self, chat_id: int, message_id: int, reply_markup: Optional[dict] = None) -> bool:
        payload: Dict[str, Any] = {"chat_id": chat_id, "message_id": message_id}
        payload["reply_markup"] = reply_markup or {"inline_keyboard": []}
        return await self._call("editMessageReplyMarkup", payload) is not None

    async def answer_callback(self, callback_id: str, text: str = "") -> None:
        payload: Dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text[:200]
        await self._call("answerCallbackQuery", payload, attempts_max=1)
