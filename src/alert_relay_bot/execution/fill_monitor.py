from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..models import Signal
from .base import OrderLeg

if TYPE_CHECKING:
    from ..binance.ws import UserDataStream
    from ..notifier import TelegramNotifier
    from ..storage.journal import TradeJournal
    from ..supervisor import TaskSupervisor

log = logging.getLogger("fill_monitor")

DROP_STATUSES = ("CANCELED", "EXPIRED", "EXPIRED_IN_MATCH", "REJECTED")


@dataclass
class TrackedOrder:
    chat_id: Optional[int]
    signal_id: str
    symbol: str
    role: str
    entry_price: float


class FillMonitor:
    """Turns ``ORDER_TRADE_UPDATE`` events for our own orders into one chat
    notification per fill.

    Only client order ids registered through ``track`` are considered.
    Already-notified ids are kept in a bounded LRU so a retransmitted
    FILLED event does not notify twice.
    """

    def __init__(
        self,
        notifier: "TelegramNotifier",
        journal: Optional["TradeJournal"] = None,
        dedupe_size: int = 1024,
    ):
        self.notifier = notifier
        self.journal = journal
        self.dedupe_size = max(dedupe_size, 1)
        self._tracked: Dict[str, TrackedOrder] = {}
        self._notified: "OrderedDict[str, None]" = OrderedDict()
        self._stream: Optional["UserDataStream"] = None
        self._supervisor: Optional["TaskSupervisor"] = None
        self._running = False

    def attach(self, stream: "UserDataStream", supervisor: "TaskSupervisor") -> None:
        self._stream = stream
        self._supervisor = supervisor

    @property
    def tracked_count(self) -> int:
        return len(self._tracked)

    def track(self, chat_id: Optional[int], signal: Signal, leg: OrderLeg) -> None:
        self._tracked[leg.client_order_id] = TrackedOrder(
            chat_id=chat_id,
            signal_id=signal.signal_id,
            symbol=signal.symbol,
            role=leg.role,
            entry_price=signal.entry_price,
        )

    def forget(self, client_order_id: str) -> None:
        self._tracked.pop(client_order_id, None)

    def ensure_running(self) -> None:
        """Start the shared stream once; later calls are no-ops."""
        if self._running or self._stream is None or self._supervisor is None:
            return
        self._running = True
        task = self._supervisor.spawn("fill_stream", self._stream.run())
        task.add_done_callback(self._on_stream_done)

    def _on_stream_done(self, _task: Any) -> None:
        self._running = False

    def stop(self) -> None:
        if self._stream is not None:
            self._stream.stop()

    def _remember(self, ref: str) -> None:
        self._notified[ref] = None
        self._notified.move_to_end(ref)
        while len(self._notified) > self.dedupe_size:
            self._notified.popitem(last=False)

    async def handle_event(self, msg: Dict[str, Any]) -> None:
        if msg.get("e") != "ORDER_TRADE_UPDATE":
            return
        o = msg.get("o") or {}
        ref = str(o.get("c") or "")
        status = str(o.get("X") or "")
        symbol = str(o.get("s") or "")

        if ref in self._notified:
            if status == "FILLED":
                self._notified.move_to_end(ref)
                log.info("fill_duplicate_ignored ref=%s symbol=%s", ref, symbol)
            return

        tracked = self._tracked.get(ref)
        if tracked is None:
            return

        if status in DROP_STATUSES:
            self.forget(ref)
            log.info("order_closed_unfilled ref=%s symbol=%s status=%s", ref, symbol, status)
            return
        if status != "FILLED":
            return

        self._remember(ref)
        self.forget(ref)
        log.info("order_filled ref=%s symbol=%s role=%s signal=%s", ref, symbol, tracked.role, tracked.signal_id)
        await self.notifier.send(f"Order {ref} for {symbol or tracked.symbol} has been filled.", chat_id=tracked.chat_id)

        if tracked.role != "entry" and self.journal is not None:
            self.journal.log_trade(
                {
                    "ts_ms": int(msg.get("E") or time.time() * 1000),
                    "signal_id": tracked.signal_id,
                    "symbol": tracked.symbol,
                    "leg": tracked.role,
                    "entry_price": tracked.entry_price,
                    "exit_price": _as_float(o.get("ap")),
                    "profit": _as_float(o.get("rp")),
                }
            )


def _as_float(raw: Any) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0
