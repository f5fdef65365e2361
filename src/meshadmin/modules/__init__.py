"""
Feature modules grouped by responsibility.

``MODULE_FACTORIES`` is the fixed load order used by the registry.
"""

from __future__ import annotations

from .admin.branding import BrandingModule
from .admin.files import FilesModule
from .admin.general import GeneralModule
from .output.email_notifier import EmailNotifier
from .output.telegram_notifier import TelegramNotifier
from .output.webhook_relay import WebhookRelay

MODULE_FACTORIES = {
    GeneralModule.name: GeneralModule,
    TelegramNotifier.name: TelegramNotifier,
    BrandingModule.name: BrandingModule,
    EmailNotifier.name: EmailNotifier,
    WebhookRelay.name: WebhookRelay,
    FilesModule.name: FilesModule,
}

__all__ = [
    "BrandingModule",
    "EmailNotifier",
    "FilesModule",
    "GeneralModule",
    "MODULE_FACTORIES",
    "TelegramNotifier",
    "WebhookRelay",
]
