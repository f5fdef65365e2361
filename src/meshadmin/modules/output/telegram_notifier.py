"""
Telegram notification module.

Canonical platform events are rendered into HTML messages and delivered with
python-telegram-bot.  Delivery targets come from two places: the global bot
token plus its chat ids, and per-user credential sets stored under ``users``
so each dashboard user can receive notifications through their own bot.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import html
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.request import HTTPXRequest

from ...core.config import AppSettings
from ...core.contracts import (
    ActionDescriptor,
    ActionHandler,
    Actor,
    BaseModule,
    DeliveryResult,
    EventResult,
    utc_timestamp,
)
from ...core.schema import FieldDescriptor, ValidationRules, section
from ...core.store import SettingsStore
from ...core.templating import render_template

logger = logging.getLogger(__name__)

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

# Canonical event -> (settings toggle, template key)
EVENT_SETTINGS: dict[str, tuple[str, str]] = {
    "device.connect": ("notifyDeviceConnect", "deviceConnect"),
    "device.disconnect": ("notifyDeviceDisconnect", "deviceDisconnect"),
    "user.login": ("notifyUserLogin", "userLogin"),
    "user.loginFailed": ("notifyLoginFailed", "loginFailed"),
    "support.request": ("notifySupportRequest", "supportRequest"),
}

# Older per-user records used shorter toggle names.
_LEGACY_USER_TOGGLES = {
    "notifyConnect": "notifyDeviceConnect",
    "notifyDisconnect": "notifyDeviceDisconnect",
    "notifyLogin": "notifyUserLogin",
}

DEFAULT_TEMPLATES: dict[str, str] = {
    "deviceConnect": (
        "🟢 <b>Device Connected</b>\n\n"
        "📱 <b>Device:</b> {deviceName}\n"
        "🌐 <b>IP:</b> {ipAddress}\n"
        "🕐 <b>Time:</b> {timestamp}"
    ),
    "deviceDisconnect": (
        "🔴 <b>Device Disconnected</b>\n\n"
        "📱 <b>Device:</b> {deviceName}\n"
        "🕐 <b>Time:</b> {timestamp}"
    ),
    "userLogin": (
        "👤 <b>User Login</b>\n\n"
        "👤 <b>User:</b> {userName}\n"
        "🌐 <b>IP:</b> {ipAddress}\n"
        "🕐 <b>Time:</b> {timestamp}"
    ),
    "loginFailed": (
        "⚠️ <b>Failed Login Attempt</b>\n\n"
        "👤 <b>User:</b> {userName}\n"
        "🌐 <b>IP:</b> {ipAddress}\n"
        "🕐 <b>Time:</b> {timestamp}"
    ),
    "supportRequest": (
        "🆘 <b>Support Request</b>\n\n"
        "👤 <b>Customer:</b> {customerName}\n"
        "📱 <b>Device:</b> {deviceName}\n"
        "💬 {message}\n"
        "🕐 <b>Time:</b> {timestamp}"
    ),
}

TEST_MESSAGE = (
    "🔔 <b>Test Notification</b>\n\n"
    "Your Telegram notifications are configured correctly!\n\n"
    "<i>Sent at: {timestamp}</i>"
)


class TelegramSendError(RuntimeError):
    """Raised when sending a Telegram notification fails."""


class TelegramSender(Protocol):
    """Protocol implemented by concrete Telegram senders."""

    async def send_message(self, *, chat_id: int | str, text: str) -> None: ...


SenderFactory = Callable[[str], TelegramSender]
Clock = Callable[[], dt.datetime]


class BotTelegramSender:
    """Adapter that uses python-telegram-bot to send HTML messages."""

    def __init__(self, token: str, *, timeout: float) -> None:
        if not token:
            raise TelegramSendError("Telegram token is required.")
        request = HTTPXRequest(
            connect_timeout=timeout, read_timeout=timeout, write_timeout=timeout
        )
        self._bot = Bot(token=token, request=request)
        self._timeout = timeout

    async def send_message(self, *, chat_id: int | str, text: str) -> None:
        try:
            await asyncio.wait_for(
                self._bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.HTML),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            raise TelegramSendError("Request timeout") from exc
        except TelegramError as exc:  # pragma: no cover - network errors
            raise TelegramSendError(str(exc)) from exc


@dataclass(frozen=True, slots=True)
class Recipient:
    """One delivery target: a chat reached through a specific bot token."""

    label: str
    token: str
    chat_id: str


def _ensure_list(value: Any) -> list[str]:
    """Normalize chat id config values (string or list) into a list."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in re.split(r"[\n,;]+", value) if part.strip()]
    if isinstance(value, Iterable):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return [str(value).strip()]


def parse_time_of_day(value: Any) -> int | None:
    """``"HH:MM"`` to minute-of-day, ``None`` when malformed."""
    if not isinstance(value, str) or not re.match(TIME_PATTERN, value.strip()):
        return None
    hours, minutes = value.strip().split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_hours(start: Any, end: Any, moment: dt.time | dt.datetime) -> bool:
    """
    Whether ``moment`` falls in the ``[start, end)`` window.

    ``start > end`` means the window spans midnight.  Equal or malformed
    bounds never suppress.
    """
    start_minute = parse_time_of_day(start)
    end_minute = parse_time_of_day(end)
    if start_minute is None or end_minute is None or start_minute == end_minute:
        return False
    current = moment.hour * 60 + moment.minute
    if start_minute < end_minute:
        return start_minute <= current < end_minute
    return current >= start_minute or current < end_minute


def _user_wants(user: Mapping[str, Any], toggle: str) -> bool:
    if toggle in user:
        return bool(user[toggle])
    for legacy, current in _LEGACY_USER_TOGGLES.items():
        if current == toggle and legacy in user:
            return bool(user[legacy])
    # Connect/disconnect default on for users, the rest opt-in.
    return toggle in ("notifyDeviceConnect", "notifyDeviceDisconnect", "notifySupportRequest")


def sanitize_user_settings(data: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce a per-user credential record into its stored shape."""

    def flag(key: str, default: bool) -> bool:
        for legacy, current in _LEGACY_USER_TOGGLES.items():
            if current == key and key not in data and legacy in data:
                return bool(data[legacy])
        return bool(data.get(key, default))

    return {
        "enabled": bool(data.get("enabled", False)),
        "botToken": str(data.get("botToken") or "").strip(),
        "chatId": str(data.get("chatId") or "").strip(),
        "notifyDeviceConnect": flag("notifyDeviceConnect", True),
        "notifyDeviceDisconnect": flag("notifyDeviceDisconnect", True),
        "notifyUserLogin": flag("notifyUserLogin", False),
        "notifyLoginFailed": flag("notifyLoginFailed", False),
        "notifySupportRequest": flag("notifySupportRequest", True),
        "updatedAt": utc_timestamp(),
    }


class TelegramNotifier(BaseModule):
    """Deliver canonical events to Telegram chats, globally and per user."""

    name = "telegram"
    display_name = "Telegram Notifications"
    description = "Receive notifications via Telegram when devices connect or disconnect"
    icon = "send"

    def __init__(
        self,
        store: SettingsStore,
        app_settings: AppSettings,
        *,
        sender_factory: SenderFactory | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(store, app_settings)
        self._sender_factory = sender_factory or self._bot_sender
        self._clock = clock or (lambda: dt.datetime.now(tz=dt.UTC))
        self._senders: dict[str, TelegramSender] = {}

    def _bot_sender(self, token: str) -> TelegramSender:
        return BotTelegramSender(token, timeout=self._app_settings.http_timeout_seconds)

    def _sender_for(self, token: str) -> TelegramSender:
        sender = self._senders.get(token)
        if sender is None:
            sender = self._sender_factory(token)
            self._senders[token] = sender
        return sender

    def get_default_settings(self) -> dict[str, Any]:
        return {
            "enabled": False,
            "botToken": "",
            "chatIds": "",
            "notifyDeviceConnect": True,
            "notifyDeviceDisconnect": True,
            "notifyUserLogin": False,
            "notifyLoginFailed": False,
            "notifySupportRequest": True,
            "quietHoursEnabled": False,
            "quietHoursStart": "22:00",
            "quietHoursEnd": "08:00",
            "templates": dict(DEFAULT_TEMPLATES),
            "users": {},
        }

    def get_schema(self) -> list[FieldDescriptor]:
        time_rules = ValidationRules(
            pattern=TIME_PATTERN, pattern_message="Time must use the HH:MM format"
        )
        return [
            FieldDescriptor(
                key="enabled",
                type="boolean",
                label="Enable Notifications",
                description="Turn on Telegram notifications",
            ),
            section("section_bot", "Bot Configuration"),
            FieldDescriptor(
                key="botToken",
                type="password",
                label="Bot Token",
                description="Get this from @BotFather on Telegram",
                placeholder="123456789:ABCdefGHIjklMNOpqrsTUVwxyz",
                validation=ValidationRules(
                    pattern=r"^\d+:[\w-]+$", pattern_message="Bot token format is invalid"
                ),
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="chatIds",
                type="textarea",
                label="Chat IDs",
                description="One chat id per line (get yours from @userinfobot)",
                placeholder="-100123456789",
                depends_on="enabled",
            ),
            section("section_events", "Notification Events"),
            FieldDescriptor(key="notifyDeviceConnect", type="boolean", label="Device Connects"),
            FieldDescriptor(
                key="notifyDeviceDisconnect", type="boolean", label="Device Disconnects"
            ),
            FieldDescriptor(key="notifyUserLogin", type="boolean", label="User Logins"),
            FieldDescriptor(key="notifyLoginFailed", type="boolean", label="Failed Logins"),
            FieldDescriptor(key="notifySupportRequest", type="boolean", label="Support Requests"),
            section("section_quiet", "Quiet Hours"),
            FieldDescriptor(
                key="quietHoursEnabled",
                type="boolean",
                label="Enable Quiet Hours",
                description="Suppress notifications during the window below",
            ),
            FieldDescriptor(
                key="quietHoursStart",
                type="time",
                label="Quiet Hours Start",
                validation=time_rules,
                depends_on="quietHoursEnabled",
            ),
            FieldDescriptor(
                key="quietHoursEnd",
                type="time",
                label="Quiet Hours End",
                validation=time_rules,
                depends_on="quietHoursEnabled",
            ),
        ]

    def get_actions(self) -> list[ActionDescriptor]:
        return [
            ActionDescriptor(
                name="test",
                label="Send Test Message",
                icon="send",
                description="Send a test notification",
            ),
            ActionDescriptor(
                name="testUser",
                label="Test User Notification",
                icon="send",
                description="Send a test notification to one user's chat",
                admin_only=True,
            ),
        ]

    def action_handlers(self) -> dict[str, ActionHandler]:
        return {"test": self._action_test, "testUser": self._action_test_user}

    def get_handled_events(self) -> tuple[str, ...]:
        return tuple(EVENT_SETTINGS)

    async def save_settings(self, candidate: Mapping[str, Any]) -> dict[str, Any]:
        # Per-user records are managed through the user settings methods.
        return await super().save_settings(
            {key: value for key, value in candidate.items() if key != "users"}
        )

    def timezone_name(self) -> str:
        """Dashboard timezone from the general settings, else the process timezone."""
        configured = self._store.get("general.timezone")
        return str(configured).strip() if configured else self._app_settings.timezone

    def _local_now(self) -> dt.datetime:
        now = self._clock()
        try:
            zone = ZoneInfo(self.timezone_name())
        except (ZoneInfoNotFoundError, ValueError):
            zone = dt.UTC
        return now.astimezone(zone) if now.tzinfo else now

    def is_quiet(self, settings: Mapping[str, Any] | None = None) -> bool:
        current = settings if settings is not None else self.get_settings()
        if not current.get("quietHoursEnabled"):
            return False
        return in_quiet_hours(
            current.get("quietHoursStart"), current.get("quietHoursEnd"), self._local_now()
        )

    def resolve_recipients(self, settings: Mapping[str, Any], toggle: str) -> list[Recipient]:
        recipients: list[Recipient] = []
        token = str(settings.get("botToken") or "").strip()
        if token:
            for chat_id in _ensure_list(settings.get("chatIds") or settings.get("chatId")):
                recipients.append(Recipient(label=f"chat:{chat_id}", token=token, chat_id=chat_id))
        users = settings.get("users")
        if isinstance(users, Mapping):
            for user_id, user in users.items():
                if not isinstance(user, Mapping) or not user.get("enabled"):
                    continue
                user_token = str(user.get("botToken") or "").strip()
                chat_id = str(user.get("chatId") or "").strip()
                if not user_token or not chat_id or not _user_wants(user, toggle):
                    continue
                recipients.append(
                    Recipient(label=f"user:{user_id}", token=user_token, chat_id=chat_id)
                )
        return recipients

    def render_message(
        self, event_type: str, payload: Mapping[str, Any], settings: Mapping[str, Any]
    ) -> str:
        _, template_key = EVENT_SETTINGS[event_type]
        templates = settings.get("templates")
        template = (
            templates.get(template_key) if isinstance(templates, Mapping) else None
        ) or DEFAULT_TEMPLATES[template_key]
        values = {
            key: html.escape(str(value))
            for key, value in payload.items()
            if value is not None
        }
        return render_template(template, values)

    async def handle_event(self, event_type: str, payload: dict[str, Any]) -> EventResult:
        settings = self.get_settings()
        if not settings.get("enabled"):
            return EventResult.suppressed("Module disabled")
        if event_type not in EVENT_SETTINGS:
            return EventResult.suppressed("Unknown event type")
        toggle, _ = EVENT_SETTINGS[event_type]
        if not settings.get(toggle, False):
            return EventResult.suppressed(f"{event_type} notifications disabled")
        if self.is_quiet(settings):
            logger.debug("Quiet hours active; suppressing %s", event_type)
            return EventResult.suppressed("Quiet hours active")
        recipients = self.resolve_recipients(settings, toggle)
        if not recipients:
            return EventResult.suppressed("No recipients configured")

        text = self.render_message(event_type, payload, settings)
        results = [await self._deliver(recipient, text) for recipient in recipients]
        return EventResult(handled=True, event_type=event_type, results=results)

    async def _deliver(self, recipient: Recipient, text: str) -> DeliveryResult:
        try:
            await self._sender_for(recipient.token).send_message(
                chat_id=recipient.chat_id, text=text
            )
        except TelegramSendError as exc:
            logger.error("Telegram delivery to %s failed: %s", recipient.label, exc)
            return DeliveryResult(recipient=recipient.label, success=False, error=str(exc))
        except Exception as exc:
            logger.exception("Telegram delivery to %s crashed", recipient.label)
            return DeliveryResult(recipient=recipient.label, success=False, error=str(exc))
        logger.info("Telegram notification sent to %s", recipient.label)
        return DeliveryResult(recipient=recipient.label, success=True)

    # Per-user settings

    def get_all_user_settings(self) -> dict[str, dict[str, Any]]:
        users = self.settings.get("users")
        return dict(users) if isinstance(users, Mapping) else {}

    def get_user_settings(self, user_id: str) -> dict[str, Any]:
        existing = self.get_all_user_settings().get(str(user_id))
        if isinstance(existing, Mapping):
            return dict(existing)
        defaults = sanitize_user_settings({})
        defaults.pop("updatedAt")
        return defaults

    async def save_user_settings(self, user_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        record = sanitize_user_settings(data)

        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            users = current.get("users")
            users = dict(users) if isinstance(users, Mapping) else {}
            users[str(user_id)] = record
            current["users"] = users
            return current

        await self.settings.update(_apply)
        return record

    async def delete_user_settings(self, user_id: str) -> bool:
        removed = False

        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            nonlocal removed
            users = current.get("users")
            if isinstance(users, dict) and str(user_id) in users:
                del users[str(user_id)]
                removed = True
            return current

        await self.settings.update(_apply)
        return removed

    # Actions

    async def _send_test(self, token: str, chat_id: str, label: str) -> dict[str, Any]:
        text = render_template(TEST_MESSAGE, {"timestamp": self._local_now().isoformat()})
        result = await self._deliver(Recipient(label=label, token=token, chat_id=chat_id), text)
        if result.success:
            return {"success": True, "message": "Test message sent successfully!"}
        return {"success": False, "error": result.error}

    async def _action_test(self, params: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        if actor is not None and not actor.is_admin:
            return await self._test_user(actor.id)
        settings = self.get_settings()
        token = str(params.get("botToken") or settings.get("botToken") or "").strip()
        chat_ids = _ensure_list(params.get("chatId") or settings.get("chatIds"))
        if not token or not chat_ids:
            return {"success": False, "error": "Bot token and chat ID are required"}
        return await self._send_test(token, chat_ids[0], f"chat:{chat_ids[0]}")

    async def _action_test_user(
        self, params: dict[str, Any], actor: Actor | None
    ) -> dict[str, Any]:
        user_id = params.get("userId")
        if not user_id:
            return {"success": False, "error": "userId is required"}
        return await self._test_user(str(user_id))

    async def _test_user(self, user_id: str) -> dict[str, Any]:
        user = self.get_user_settings(user_id)
        if not user.get("botToken") or not user.get("chatId"):
            return {
                "success": False,
                "error": "Please configure your Bot Token and Chat ID first",
            }
        return await self._send_test(user["botToken"], user["chatId"], f"user:{user_id}")


__all__ = [
    "BotTelegramSender",
    "Recipient",
    "TelegramNotifier",
    "TelegramSendError",
    "TelegramSender",
    "in_quiet_hours",
    "parse_time_of_day",
    "sanitize_user_settings",
]
