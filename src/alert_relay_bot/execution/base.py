from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional

from ..errors import TradeError

LegRole = Literal["entry", "tp1", "tp2", "tp3", "sl"]


@dataclass
class OrderLeg:
    role: LegRole
    client_order_id: str
    order_type: str
    side: str
    price: str = ""  # limit price or trigger price, empty for market entries
    qty: str = ""  # empty for closePosition triggers
    order_id: Optional[int] = None


@dataclass
class ExecutionResult:
    ok: bool
    msg: str
    error: Optional[BaseException] = None
    legs: List[OrderLeg] = field(default_factory=list)

    @property
    def error_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        if isinstance(self.error, TradeError):
            return self.error.kind
        return "unexpected"

    @property
    def order_ids(self) -> List[str]:
        return [leg.client_order_id for leg in self.legs]
