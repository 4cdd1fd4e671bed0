from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from .binance.endpoints import endpoints
from .binance.rest import BinanceRest
from .binance.ws import UserDataStream
from .config import ExchangeConfig, MonitorConfig, TelegramConfig
from .desk import SignalDesk
from .errors import ExchangeError
from .execution.fill_monitor import FillMonitor
from .execution.orchestrator import TradeOrchestrator
from .notifier import TelegramNotifier
from .sessions import OperatorSessionStore
from .settings import SettingsRepository, TradeSettings
from .storage.journal import TradeJournal
from .store import MessageIdRegistry, SignalRepository
from .supervisor import TaskSupervisor
from .telegram_poller import TelegramPoller
from .webhook import AlertWebhookConfig, AlertWebhookServer

log = logging.getLogger("app")


class RelayApp:
    """Wires the relay together from a loaded config dict and owns the
    start/stop order of its long-lived parts."""

    def __init__(self, cfg: Dict[str, Any]):
        self.cfg = cfg
        self.tg_cfg = TelegramConfig.from_dict(cfg.get("telegram", {}))
        self.ex_cfg = ExchangeConfig.from_dict(cfg.get("exchange", {}))
        self.mon_cfg = MonitorConfig.from_dict(cfg.get("monitor", {}))
        self.webhook_cfg = AlertWebhookConfig.from_dict(cfg.get("webhook", {}))
        self.defaults = TradeSettings.from_dict(cfg.get("defaults", {}))

        ep = endpoints(testnet=self.ex_cfg.testnet)
        self.rest = BinanceRest(
            ep["rest"],
            recv_window_ms=self.ex_cfg.recv_window_ms,
            timeout_sec=self.ex_cfg.request_timeout_sec,
            api_key=os.getenv(self.ex_cfg.api_key_env, ""),
            api_secret=os.getenv(self.ex_cfg.api_secret_env, ""),
        )
        self.notifier = TelegramNotifier(
            token=self.tg_cfg.token,
            default_chat_id=self.tg_cfg.chat_id,
            parse_mode=self.tg_cfg.parse_mode,
            enabled=bool(cfg.get("telegram", {}).get("enabled", True)),
        )
        self.supervisor = TaskSupervisor(self.notifier, admin_chat_id=self.tg_cfg.admin_chat_id)
        self.journal = TradeJournal(cfg.get("storage", {}).get("out_dir", "artifacts"))

        self.fill_monitor = FillMonitor(self.notifier, journal=self.journal, dedupe_size=self.mon_cfg.dedupe_size)
        self.stream = UserDataStream(
            self.rest, ep["ws"], on_msg=self.fill_monitor.handle_event, keepalive_minutes=self.mon_cfg.keepalive_minutes
        )
        self.fill_monitor.attach(self.stream, self.supervisor)
        self.orchestrator = TradeOrchestrator(self.rest, fill_monitor=self.fill_monitor)

        self.desk = SignalDesk(
            signals=SignalRepository(),
            messages=MessageIdRegistry(),
            sessions=OperatorSessionStore(),
            settings=SettingsRepository(self.defaults),
            notifier=self.notifier,
            orchestrator=self.orchestrator,
            supervisor=self.supervisor,
            journal=self.journal,
            rest=self.rest,
            default_chat_id=self.tg_cfg.chat_id,
            allowed_chat_ids=self.tg_cfg.allowed_chat_ids,
        )
        self.poller = TelegramPoller(
            token=self.tg_cfg.token,
            state_path=self.tg_cfg.state_path,
            on_update=self.desk.handle_update,
            poll_timeout_sec=self.tg_cfg.poll_timeout_sec,
        )
        self.webhook: Optional[AlertWebhookServer] = None

    async def start(self) -> None:
        await self.rest.start()
        await self.notifier.start()
        if self.notifier.enabled:
            await self.poller.start()
        else:
            log.warning("telegram_disabled; operator chat not polled")

        if self.webhook_cfg.enabled:
            self.webhook = AlertWebhookServer(self.webhook_cfg, on_alert=self.desk.ingest_alert, supervisor=self.supervisor)
            await self.webhook.start()
            if not self.webhook_cfg.secret:
                log.warning("webhook_enabled_but_no_secret")

        if self.rest.has_credentials:
            self.fill_monitor.ensure_running()
        else:
            log.warning("binance_credentials_missing; trading disabled until /setapi")

        log.info(
            "relay_started testnet=%s webhook=%s chat=%s",
            self.ex_cfg.testnet,
            self.webhook_cfg.enabled,
            self.tg_cfg.chat_id,
        )

    async def stop(self) -> None:
        if self.webhook:
            await self.webhook.stop()
            self.webhook = None
        await self.poller.stop()
        self.fill_monitor.stop()
        await self.supervisor.stop()
        if self.rest.has_credentials:
            try:
                await self.rest.close_user_stream()
            except ExchangeError as e:
                log.warning("listen_key_close_failed err=%s", e)
        await self.rest.stop()
        await self.notifier.stop()
        log.info("relay_stopped")
