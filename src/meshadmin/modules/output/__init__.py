"""Output modules that deliver canonical events to external channels."""

from .email_notifier import EmailNotifier
from .telegram_notifier import TelegramNotifier
from .webhook_relay import WebhookRelay

__all__ = ["EmailNotifier", "TelegramNotifier", "WebhookRelay"]
