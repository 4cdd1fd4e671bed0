from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import os
import yaml
import re

_ENV_PATTERN = re.compile(r"\$\{([^:}]+)(?::([^}]*))?\}")

def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, str):
        def repl(m):
            key = m.group(1)
            default = m.group(2) if m.group(2) is not None else ""
            return os.getenv(key, default)
        return _ENV_PATTERN.sub(repl, value)
    return value

def load_yaml(path: Path) -> Dict[str, Any]:
    d = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return _expand_env(d)

def load_config(config_path: str) -> Dict[str, Any]:
    return load_yaml(Path(config_path))


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class TelegramConfig:
    token: str = ""
    chat_id: Optional[int] = None
    admin_chat_id: Optional[int] = None
    allowed_chat_ids: List[int] = field(default_factory=list)
    parse_mode: str = "HTML"
    state_path: str = "state/telegram_poller.json"
    poll_timeout_sec: int = 30

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TelegramConfig":
        dd = d or {}
        token = str(dd.get("token") or "").strip() or os.getenv("TELEGRAM_BOT_TOKEN", "")
        chat_id = _opt_int(dd.get("chat_id")) if dd.get("chat_id") not in (None, "") else _opt_int(os.getenv("TELEGRAM_CHAT_ID"))
        admin = _opt_int(dd.get("admin_chat_id"))
        allowed = [int(x) for x in (dd.get("allowed_chat_ids") or []) if str(x).strip()]
        if not allowed and chat_id is not None:
            allowed = [chat_id]
        return cls(
            token=token,
            chat_id=chat_id,
            admin_chat_id=admin if admin is not None else chat_id,
            allowed_chat_ids=allowed,
            parse_mode=str(dd.get("parse_mode", "HTML")),
            state_path=str(dd.get("state_path", "state/telegram_poller.json")),
            poll_timeout_sec=int(dd.get("poll_timeout_sec", 30)),
        )


@dataclass
class ExchangeConfig:
    testnet: bool = True
    recv_window_ms: int = 5000
    request_timeout_sec: float = 10.0
    api_key_env: str = "BINANCE_API_KEY"
    api_secret_env: str = "BINANCE_API_SECRET"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExchangeConfig":
        dd = d or {}
        timeout = float(dd.get("request_timeout_sec", 10.0))
        if timeout <= 0:
            raise ValueError("exchange.request_timeout_sec must be positive")
        return cls(
            testnet=bool(dd.get("testnet", True)),
            recv_window_ms=int(dd.get("recv_window_ms", 5000)),
            request_timeout_sec=timeout,
            api_key_env=str(dd.get("api_key_env", "BINANCE_API_KEY")),
            api_secret_env=str(dd.get("api_secret_env", "BINANCE_API_SECRET")),
        )


@dataclass
class MonitorConfig:
    dedupe_size: int = 1024
    keepalive_minutes: int = 30

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MonitorConfig":
        dd = d or {}
        return cls(
            dedupe_size=max(int(dd.get("dedupe_size", 1024)), 1),
            keepalive_minutes=max(int(dd.get("keepalive_minutes", 30)), 1),
        )
