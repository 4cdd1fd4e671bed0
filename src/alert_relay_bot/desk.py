from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Literal, Optional

from .alerts import formatters as fmt
from .errors import ExchangeError, RelayError, SignalClosedError, SignalNotFoundError, ValidationError, user_message
from .models import EDITABLE_FIELDS, FIELD_LABELS, REFERENCE_FIELDS, Signal
from .recalc import apply_levels, recalculate
from .sessions import EditingCredential, EditingSetting, EditingSignalField, OperatorSessionStore
from .settings import (
    CHOICES,
    SETTING_LABELS,
    TEXT_SETTINGS,
    TOGGLES,
    SettingsRepository,
    TradeSettings,
    apply_choice,
    apply_text_setting,
    toggle,
)
from .storage.journal import PERIODS_MS, performance_metrics
from .store import MessageIdRegistry, SignalRepository, sanitize_signal_id

if TYPE_CHECKING:
    from .binance.rest import BinanceRest
    from .execution.base import ExecutionResult
    from .execution.orchestrator import TradeOrchestrator
    from .notifier import TelegramNotifier
    from .storage.journal import TradeJournal
    from .supervisor import TaskSupervisor

log = logging.getLogger("desk")

ConfirmOutcome = Literal["confirmed", "not_found", "closed"]

# pending signals refreshed after a settings change
RECALC_BATCH = 20

WELCOME_TEXT = (
    "Welcome! Signals arrive here with Edit / Confirm / Dismiss buttons.\n"
    "Use /settings to adjust trading settings and /setapi to set your Binance API keys."
)
NO_SESSION_TEXT = "Nothing is waiting for input. Use the buttons under a signal, or /settings."


def parse_price(text: str) -> float:
    try:
        value = float(text.strip().replace(",", "."))
    except ValueError:
        raise ValidationError("Invalid value. Please enter a numeric value.") from None
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Invalid value. Please enter a positive number.")
    return value


class SignalDesk:
    """Operator-facing side of the relay: renders alerts, runs the edit /
    confirm / dismiss flow and the settings and credential dialogs."""

    def __init__(
        self,
        signals: SignalRepository,
        messages: MessageIdRegistry,
        sessions: OperatorSessionStore,
        settings: SettingsRepository,
        notifier: "TelegramNotifier",
        orchestrator: "TradeOrchestrator",
        supervisor: "TaskSupervisor",
        journal: Optional["TradeJournal"] = None,
        rest: Optional["BinanceRest"] = None,
        default_chat_id: Optional[int] = None,
        allowed_chat_ids: Iterable[int] = (),
    ):
        self.signals = signals
        self.messages = messages
        self.sessions = sessions
        self.settings = settings
        self.notifier = notifier
        self.orchestrator = orchestrator
        self.supervisor = supervisor
        self.journal = journal
        self.rest = rest
        self.default_chat_id = default_chat_id
        self.allowed_chat_ids = set(allowed_chat_ids)

    def is_allowed(self, chat_id: Optional[int]) -> bool:
        if chat_id is None:
            return False
        return not self.allowed_chat_ids or chat_id in self.allowed_chat_ids

    async def _say(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> Optional[int]:
        return await self.notifier.send(text, chat_id=chat_id, reply_markup=reply_markup)

    async def _rerender(self, sig: Signal, chat_id: Optional[int] = None, message_id: Optional[int] = None) -> None:
        loc = self.messages.get(sig.signal_id)
        if loc is not None:
            chat_id, message_id = loc
        if chat_id is None or message_id is None:
            log.info("rerender_skipped signal=%s no_message", sig.signal_id)
            return
        keyboard = None if sig.closed else fmt.signal_keyboard(sig.signal_id)
        await self.notifier.edit_text(chat_id, message_id, fmt.format_signal(sig), reply_markup=keyboard)

    # --- ingestion ---

    async def ingest_alert(self, alert: Signal, chat_id: Optional[int] = None) -> Signal:
        target = chat_id if chat_id is not None else self.default_chat_id
        signal_id = sanitize_signal_id(alert.signal_id)
        sig = alert
        if target is not None:
            sig = recalculate(alert, self.settings.get(target))
        stored = self.signals.create(signal_id, sig)
        log.info(
            "signal_ingested id=%s symbol=%s dir=%s entry=%s tp1=%s sl=%s",
            stored.signal_id,
            stored.symbol,
            stored.direction,
            stored.entry_price,
            stored.tp1,
            stored.sl,
        )
        if target is None:
            log.warning("signal_not_rendered id=%s reason=no_chat_id", stored.signal_id)
            return stored
        message_id = await self._say(target, fmt.format_signal(stored), fmt.signal_keyboard(stored.signal_id))
        if message_id is not None:
            self.messages.set(stored.signal_id, target, message_id)
        return stored

    # --- chat events ---

    async def handle_update(self, update: Dict[str, Any]) -> None:
        if update.get("callback_query"):
            await self.handle_callback(update["callback_query"])
        elif update.get("message"):
            await self.handle_message(update["message"])

    async def handle_callback(self, cq: Dict[str, Any]) -> None:
        cq_id = str(cq.get("id") or "")
        message = cq.get("message") or {}
        chat_id = (message.get("chat") or {}).get("id")
        message_id = message.get("message_id")
        data = str(cq.get("data") or "")
        try:
            if not self.is_allowed(chat_id):
                log.warning("callback_ignored chat=%s reason=not_allowed", chat_id)
                return
            parts = data.split("|")
            if len(parts) < 2 or not parts[1]:
                log.warning("callback_invalid data=%r", data)
                return
            action, payload = parts[0], parts[1]
            extra = parts[2] if len(parts) > 2 else ""
            try:
                await self._dispatch(chat_id, message_id, action, payload, extra)
            except RelayError as e:
                log.info("callback_rejected chat=%s action=%s err=%s", chat_id, action, e)
                await self._say(chat_id, user_message(e))
        finally:
            if cq_id:
                await self.notifier.answer_callback(cq_id)

    async def _dispatch(self, chat_id: int, message_id: Optional[int], action: str, payload: str, extra: str) -> None:
        if action == fmt.ACTION_EDIT:
            await self.show_edit_options(chat_id, message_id, payload)
        elif action == fmt.ACTION_FIELD:
            if not extra:
                log.warning("callback_missing_field signal=%s", payload)
                return
            await self.select_field(chat_id, message_id, payload, extra)
        elif action == fmt.ACTION_CONFIRM:
            await self.confirm(chat_id, payload, message_id)
        elif action == fmt.ACTION_DISMISS:
            await self.dismiss(chat_id, payload, message_id)
        elif action == fmt.ACTION_SET_OPTION:
            await self.set_option(chat_id, message_id, payload)
        elif action == fmt.ACTION_CHANGE_OPTION:
            if not extra:
                log.warning("callback_missing_value option=%s", payload)
                return
            await self.change_option(chat_id, payload, extra)
        elif action == fmt.ACTION_PERFORMANCE:
            await self.show_performance(chat_id, payload)
        else:
            log.warning("callback_unknown_action action=%s", action)

    async def handle_message(self, message: Dict[str, Any]) -> None:
        chat_id = (message.get("chat") or {}).get("id")
        text = str(message.get("text") or "").strip()
        if not self.is_allowed(chat_id):
            log.warning("message_ignored chat=%s reason=not_allowed", chat_id)
            return
        if not text:
            return
        if text.startswith("/"):
            await self.handle_command(chat_id, text)
            return

        pending = self.sessions.get(chat_id)
        if pending is None:
            await self._say(chat_id, NO_SESSION_TEXT)
        elif isinstance(pending, EditingSignalField):
            await self._apply_field_value(chat_id, pending, text)
        elif isinstance(pending, EditingSetting):
            await self._apply_setting_value(chat_id, pending, text)
        elif isinstance(pending, EditingCredential):
            await self._apply_credential(chat_id, pending, text)

    async def handle_command(self, chat_id: int, text: str) -> None:
        command = text.split()[0][1:].split("@")[0].lower()
        if command == "start":
            await self._say(chat_id, WELCOME_TEXT)
        elif command == "settings":
            await self.show_settings(chat_id)
        elif command == "setapi":
            await self.start_credentials(chat_id)
        else:
            await self._say(chat_id, "Unknown command.")

    # --- signal edits ---

    async def show_edit_options(self, chat_id: int, message_id: Optional[int], signal_id: str) -> None:
        sig = self.signals.require(signal_id)
        if sig.closed:
            raise SignalClosedError(signal_id, "confirmed" if sig.confirmed else "dismissed")
        if message_id is None:
            return
        await self.notifier.edit_markup(chat_id, message_id, fmt.edit_keyboard(signal_id))

    async def select_field(self, chat_id: int, message_id: Optional[int], signal_id: str, field: str) -> None:
        if field in REFERENCE_FIELDS:
            settings = self.settings.get(chat_id)

            def use_reference(d: Signal) -> None:
                ref = getattr(d, field)
                if not ref > 0:
                    raise ValidationError(f"{FIELD_LABELS[field]} is not available for this signal.")
                d.entry_price = ref
                d.manual_entry_edited = True
                apply_levels(d, recalculate(d, settings))

            sig = self.signals.update(signal_id, use_reference)
            log.info("entry_from_reference signal=%s field=%s entry=%s", signal_id, field, sig.entry_price)
            await self._rerender(sig, chat_id, message_id)
            return

        if field not in EDITABLE_FIELDS:
            log.warning("field_unknown signal=%s field=%s", signal_id, field)
            return
        sig = self.signals.require(signal_id)
        if sig.closed:
            raise SignalClosedError(signal_id, "confirmed" if sig.confirmed else "dismissed")
        self.sessions.set(chat_id, EditingSignalField(signal_id=signal_id, field=field))
        await self._say(chat_id, f"Please enter the new value for {FIELD_LABELS[field]}.")

    async def _apply_field_value(self, chat_id: int, pending: EditingSignalField, text: str) -> None:
        try:
            value = parse_price(text)
        except ValidationError as e:
            # session stays open for another attempt
            await self._say(chat_id, str(e))
            return

        field = pending.field
        settings = self.settings.get(chat_id)

        def edit(d: Signal) -> None:
            setattr(d, field, value)
            if field == "entry_price":
                d.manual_entry_edited = True
                apply_levels(d, recalculate(d, settings))

        try:
            sig = self.signals.update(pending.signal_id, edit)
        except (SignalNotFoundError, SignalClosedError) as e:
            self.sessions.clear_if(chat_id, pending)
            await self._say(chat_id, user_message(e))
            return

        self.sessions.clear_if(chat_id, pending)
        log.info("field_updated signal=%s field=%s value=%s", sig.signal_id, field, value)
        await self._say(chat_id, fmt.format_field_updated(sig, field, value))
        await self._rerender(sig)

    # --- terminal transitions ---

    async def confirm(self, chat_id: int, signal_id: str, message_id: Optional[int] = None) -> ConfirmOutcome:
        if self.signals.get(signal_id) is None:
            log.info("confirm_unknown_signal chat=%s signal=%s", chat_id, signal_id)
            await self._say(chat_id, "Signal not found.")
            return "not_found"

        settings = self.settings.get(chat_id)
        try:
            self.signals.update(signal_id, lambda d: apply_levels(d, recalculate(d, settings)))
            sig = self.signals.mark_confirmed(signal_id)
        except SignalNotFoundError:
            await self._say(chat_id, "Signal not found.")
            return "not_found"
        except SignalClosedError as e:
            await self._say(chat_id, user_message(e))
            return "closed"

        log.info("signal_confirmed chat=%s signal=%s symbol=%s", chat_id, signal_id, sig.symbol)
        await self._rerender(sig, chat_id, message_id)
        if self.journal is not None:
            try:
                self.journal.log_signal(sig)
            except OSError:
                log.exception("journal_write_failed signal=%s", signal_id)
        self.supervisor.spawn(f"trade:{signal_id}", self._execute(chat_id, sig, settings), chat_id=chat_id)
        return "confirmed"

    async def _execute(self, chat_id: int, sig: Signal, settings: TradeSettings) -> "ExecutionResult":
        result = await self.orchestrator.execute(sig, settings, chat_id=chat_id)
        await self._say(chat_id, result.msg)
        return result

    async def dismiss(self, chat_id: int, signal_id: str, message_id: Optional[int] = None) -> None:
        sig = self.signals.mark_dismissed(signal_id)
        log.info("signal_dismissed chat=%s signal=%s", chat_id, signal_id)
        await self._rerender(sig, chat_id, message_id)
        await self._say(chat_id, "Signal has been dismissed.")

    # --- settings ---

    async def show_settings(self, chat_id: int) -> None:
        s = self.settings.get(chat_id)
        await self._say(chat_id, fmt.format_settings(s), fmt.settings_keyboard(s))

    async def set_option(self, chat_id: int, message_id: Optional[int], name: str) -> None:
        if name in CHOICES:
            if message_id is not None:
                await self.notifier.edit_markup(chat_id, message_id, fmt.option_keyboard(name))
        elif name in TOGGLES:
            s = await self._update_settings(chat_id, lambda cur: toggle(cur, name))
            state = "enabled" if getattr(s, name) else "disabled"
            await self._say(chat_id, f"{SETTING_LABELS[name]} has been {state}.")
            await self.show_settings(chat_id)
        elif name in TEXT_SETTINGS:
            if name in ("tp2_pct", "tp3_pct") and not getattr(self.settings.get(chat_id), name[:3] + "_enabled"):
                raise ValidationError(f"{name[:3].upper()} is currently disabled by the TP close percentages.")
            self.sessions.set(chat_id, EditingSetting(name=name))
            await self._say(chat_id, fmt.format_setting_prompt(name))
        elif name == "performance":
            await self._say(chat_id, "Select the time period for performance data:", fmt.performance_keyboard())
        else:
            log.warning("setting_unknown name=%s", name)
            await self._say(chat_id, "Unknown setting.")

    async def change_option(self, chat_id: int, name: str, value: str) -> None:
        s = await self._update_settings(chat_id, lambda cur: apply_choice(cur, name, value))
        await self._say(chat_id, f"{SETTING_LABELS[name]} has been updated to {fmt.CHOICE_LABELS[getattr(s, name)]}.")
        await self.show_settings(chat_id)

    async def _apply_setting_value(self, chat_id: int, pending: EditingSetting, text: str) -> None:
        try:
            await self._update_settings(chat_id, lambda cur: apply_text_setting(cur, pending.name, text))
        except ValidationError as e:
            await self._say(chat_id, str(e))
            return
        self.sessions.clear_if(chat_id, pending)
        await self._say(chat_id, f"Setting '{SETTING_LABELS[pending.name]}' updated successfully.")
        await self.show_settings(chat_id)

    async def _update_settings(self, chat_id: int, change: Callable[[TradeSettings], TradeSettings]) -> TradeSettings:
        updated = self.settings.update(chat_id, change)
        await self.recalculate_pending(updated)
        return updated

    async def recalculate_pending(self, settings: TradeSettings) -> int:
        """Refresh the most recent pending signals against new settings,
        keeping operator-set entries. Returns how many changed."""
        changed = 0
        for sig in self.signals.list_unconfirmed(RECALC_BATCH):
            try:
                updated = self.signals.update(
                    sig.signal_id, lambda d: apply_levels(d, recalculate(d, settings))
                )
            except (SignalNotFoundError, SignalClosedError):
                continue
            if updated != sig:
                changed += 1
                await self._rerender(updated)
        if changed:
            log.info("pending_signals_recalculated count=%d", changed)
        return changed

    # --- exchange credentials ---

    async def start_credentials(self, chat_id: int) -> None:
        self.sessions.set(chat_id, EditingCredential(step="api_key"))
        await self._say(chat_id, "Please send your Binance API key.")

    async def _apply_credential(self, chat_id: int, pending: EditingCredential, text: str) -> None:
        value = text.strip()
        if not value or " " in value:
            await self._say(chat_id, "That does not look like a Binance key. Please try again.")
            return
        if pending.step == "api_key":
            self.sessions.set(chat_id, EditingCredential(step="api_secret", api_key=value))
            await self._say(chat_id, "Now send your Binance API secret.")
            return
        self.sessions.clear_if(chat_id, pending)
        await self._say(chat_id, "Validating your Binance API credentials...")
        self.supervisor.spawn("validate_credentials", self._validate_credentials(chat_id, pending.api_key, value), chat_id=chat_id)

    async def _validate_credentials(self, chat_id: int, api_key: str, api_secret: str) -> bool:
        if self.rest is None:
            await self._say(chat_id, "Exchange client is not configured.")
            return False
        try:
            await self.rest.check_credentials(api_key, api_secret)
        except ExchangeError as e:
            log.warning("credentials_rejected chat=%s status=%s code=%s", chat_id, e.status, e.code)
            await self._say(chat_id, "Binance rejected these API credentials. Nothing was changed.")
            return False
        self.rest.set_credentials(api_key, api_secret)
        if self.orchestrator.fill_monitor is not None:
            self.orchestrator.fill_monitor.ensure_running()
        await self._say(chat_id, "Binance API credentials updated successfully.")
        return True

    # --- performance ---

    async def show_performance(self, chat_id: int, period: str) -> None:
        if self.journal is None:
            await self._say(chat_id, "Performance data is not available.")
            return
        if period not in PERIODS_MS:
            log.warning("performance_unknown_period period=%s", period)
            await self._say(chat_id, "Unknown time period.")
            return
        trades = self.journal.trades_for_period(period)
        await self._say(chat_id, fmt.format_performance(period, performance_metrics(trades)))
