from __future__ import annotations

import itertools
import logging
import re
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from .errors import SignalClosedError, SignalNotFoundError
from .locks import RWLock
from .models import Signal

log = logging.getLogger("store")

_UNSAFE = re.compile(r"[^A-Za-z0-9]+")
# Telegram callback_data is capped at 64 bytes; "field|<id>|entry_price" must fit.
MAX_SIGNAL_ID_LEN = 40
FALLBACK_PREFIX = "signal"

_fallback_seq = itertools.count(1)


def sanitize_signal_id(raw: Optional[str]) -> str:
    """Collapse every non-alphanumeric run to "_" and trim the result.

    Idempotent on its own output. Empty results get a generated
    ``signal_<ns>_<seq>`` id so two empty inputs never collide.
    """
    s = _UNSAFE.sub("_", raw or "").strip("_")
    s = s[:MAX_SIGNAL_ID_LEN].strip("_")
    if not s:
        s = f"{FALLBACK_PREFIX}_{time.time_ns()}_{next(_fallback_seq)}"
        log.info("signal_id_fallback raw=%r assigned=%s", raw, s)
    return s


class SignalRepository:
    """Signals keyed by sanitized id.

    Readers get copies; every mutation goes through a write section so a
    reader never observes a half-applied edit. Confirmed or dismissed signals
    reject further updates.
    """

    def __init__(self) -> None:
        self._lock = RWLock()
        self._signals: Dict[str, Signal] = {}

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._signals)

    def create(self, signal_id: str, signal: Signal) -> Signal:
        stored = replace(signal, signal_id=signal_id)
        with self._lock.write():
            # re-insert so insertion order tracks recency on overwrite
            self._signals.pop(signal_id, None)
            self._signals[signal_id] = stored
        return replace(stored)

    def get(self, signal_id: str) -> Optional[Signal]:
        with self._lock.read():
            sig = self._signals.get(signal_id)
            return replace(sig) if sig is not None else None

    def require(self, signal_id: str) -> Signal:
        sig = self.get(signal_id)
        if sig is None:
            raise SignalNotFoundError(signal_id)
        return sig

    def update(self, signal_id: str, mutate: Callable[[Signal], None]) -> Signal:
        with self._lock.write():
            current = self._signals.get(signal_id)
            if current is None:
                raise SignalNotFoundError(signal_id)
            if current.closed:
                raise SignalClosedError(signal_id, "confirmed" if current.confirmed else "dismissed")
            draft = replace(current)
            mutate(draft)
            # terminal flags only change through mark_confirmed / mark_dismissed
            draft.confirmed = current.confirmed
            draft.dismissed = current.dismissed
            self._signals[signal_id] = draft
            return replace(draft)

    def _close(self, signal_id: str, confirmed: bool) -> Signal:
        with self._lock.write():
            current = self._signals.get(signal_id)
            if current is None:
                raise SignalNotFoundError(signal_id)
            if current.closed:
                raise SignalClosedError(signal_id, "confirmed" if current.confirmed else "dismissed")
            done = replace(current, confirmed=confirmed, dismissed=not confirmed)
            self._signals[signal_id] = done
            return replace(done)

    def mark_confirmed(self, signal_id: str) -> Signal:
        return self._close(signal_id, confirmed=True)

    def mark_dismissed(self, signal_id: str) -> Signal:
        return self._close(signal_id, confirmed=False)

    def list_unconfirmed(self, limit: int) -> List[Signal]:
        """Pending signals, most recently created first."""
        with self._lock.read():
            out = [replace(s) for s in reversed(self._signals.values()) if not s.closed]
        return out[: max(limit, 0)]


class MessageIdRegistry:
    """signal id -> (chat id, message id) of the rendered alert."""

    def __init__(self) -> None:
        self._lock = RWLock()
        self._messages: Dict[str, tuple[int, int]] = {}

    def set(self, signal_id: str, chat_id: int, message_id: int) -> None:
        with self._lock.write():
            self._messages[signal_id] = (chat_id, message_id)

    def get(self, signal_id: str) -> Optional[tuple[int, int]]:
        with self._lock.read():
            return self._messages.get(signal_id)
