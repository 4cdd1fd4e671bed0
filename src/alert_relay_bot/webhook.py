from __future__ import annotations

import asyncio
import hmac
import logging
import math
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

from .errors import ValidationError
from .models import Signal, normalize_direction

if TYPE_CHECKING:
    from .supervisor import TaskSupervisor

log = logging.getLogger("webhook")

REQUIRED_FIELDS = ("signal_id", "symbol", "time")


class AlertRejected(ValidationError):
    def __init__(self, code: str, detail: str = ""):
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code


def normalize_symbol(sym: str) -> str:
    """Best-effort normalization of alert tickers.

    Common inputs:
      - "BTCUSDT"
      - "BINANCE:BTCUSDT"
      - "BINANCE:BTCUSDT.P"  (perps)
      - "btcusdt.p"
    """
    s = (sym or "").strip()
    if not s:
        return ""
    if ":" in s:
        s = s.split(":", 1)[1]
    s = s.upper()
    for suf in (".P", ".PERP", "PERP"):
        if s.endswith(suf):
            s = s[: -len(suf)]
            break
    return s


def _price(payload: Dict[str, Any], key: str) -> float:
    raw = payload.get(key)
    if raw is None or raw == "":
        return 0.0
    try:
        val = float(raw)
    except (TypeError, ValueError):
        raise AlertRejected("bad_number", key) from None
    if not math.isfinite(val) or val < 0:
        raise AlertRejected("bad_number", key)
    return val


def parse_alert(payload: Any) -> Signal:
    """Turn a webhook body into an unsanitized, pending Signal.

    ``signal_id``, ``symbol`` and ``time`` are mandatory; the direction comes
    from ``signal`` (or ``direction``/``side``) and must read as buy/long or
    sell/short. Inbound ``confirmed``/``dismissed`` flags are ignored.
    """
    if not isinstance(payload, dict):
        raise AlertRejected("invalid_json", "object expected")
    for key in REQUIRED_FIELDS:
        if not str(payload.get(key) or "").strip():
            raise AlertRejected("missing_field", key)

    symbol = normalize_symbol(str(payload.get("symbol")))
    if not symbol:
        raise AlertRejected("missing_field", "symbol")
    direction = normalize_direction(str(payload.get("signal") or payload.get("direction") or payload.get("side") or ""))
    if direction is None:
        raise AlertRejected("bad_direction")

    return Signal(
        signal_id=str(payload["signal_id"]),
        direction=direction,
        symbol=symbol,
        timeframe=str(payload.get("timeframe") or payload.get("tf") or ""),
        time=str(payload["time"]),
        entry_price=_price(payload, "entry_price"),
        tp1=_price(payload, "tp1"),
        tp2=_price(payload, "tp2"),
        tp3=_price(payload, "tp3"),
        sl=_price(payload, "sl"),
        high_price=_price(payload, "high_price"),
        low_price=_price(payload, "low_price"),
        midpoint=_price(payload, "midpoint"),
    )


@dataclass
class AlertWebhookConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    path: str = "/webhook"
    # security
    secret: str = ""
    secret_env: str = "WEBHOOK_SECRET"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AlertWebhookConfig":
        dd = d or {}
        secret = str(dd.get("secret") or "").strip()
        secret_env = str(dd.get("secret_env") or "WEBHOOK_SECRET").strip()
        if not secret:
            secret = os.getenv(secret_env, "").strip()
        return cls(
            enabled=bool(dd.get("enabled", True)),
            host=str(dd.get("host", "0.0.0.0")),
            port=int(dd.get("port", 8080)),
            path=str(dd.get("path", "/webhook")),
            secret=secret,
            secret_env=secret_env,
        )


class AlertWebhookServer:
    """Small aiohttp server receiving alert JSON and handing it to the desk."""

    def __init__(
        self,
        cfg: AlertWebhookConfig,
        on_alert: Callable[[Signal], Awaitable[Any]],
        supervisor: Optional["TaskSupervisor"] = None,
    ):
        self.cfg = cfg
        self.on_alert = on_alert
        self.supervisor = supervisor
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes([web.post(self.cfg.path, self._handle), web.get("/health", self._health)])
        return app

    async def start(self) -> None:
        if not self.cfg.enabled:
            return
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host=self.cfg.host, port=self.cfg.port)
        await self._site.start()
        log.info("webhook_listening host=%s port=%s path=%s", self.cfg.host, self.cfg.port, self.cfg.path)

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True})

    async def _handle(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            txt = (await request.text()) if request.can_read_body else ""
            log.warning("webhook_invalid_json body=%r", txt[:200])
            return web.json_response({"ok": False, "error": "invalid_json"}, status=400)

        # Secret (optional but strongly recommended)
        if self.cfg.secret:
            got = str(payload.get("secret") or "") if isinstance(payload, dict) else ""
            if not hmac.compare_digest(got.encode("utf-8"), self.cfg.secret.encode("utf-8")):
                log.warning("webhook_bad_secret remote=%s", request.remote)
                return web.json_response({"ok": False, "error": "bad_secret"}, status=401)

        try:
            alert = parse_alert(payload)
        except AlertRejected as e:
            log.warning("webhook_rejected code=%s err=%s", e.code, e)
            return web.json_response({"ok": False, "error": e.code}, status=400)

        # don't block the response on chat delivery
        if self.supervisor is not None:
            self.supervisor.spawn(f"ingest:{alert.signal_id}", self.on_alert(alert))
        else:
            asyncio.get_running_loop().create_task(self.on_alert(alert))

        log.info("webhook_accepted id=%s symbol=%s dir=%s", alert.signal_id, alert.symbol, alert.direction)
        return web.json_response({"ok": True, "symbol": alert.symbol, "direction": alert.direction})
