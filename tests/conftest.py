from __future__ import annotations

import os
from pathlib import Path

import pytest

from meshadmin.core.config import ENVVAR_PREFIX, LEGACY_ENVIRONMENT, AppSettings
from meshadmin.core.store import SettingsStore
from meshadmin.modules.output.email_notifier import EmailSendError
from meshadmin.modules.output.telegram_notifier import TelegramSendError
from meshadmin.modules.output.webhook_relay import WebhookSendError


class StubTelegramSender:
    """Records sends; chat ids listed in ``failing`` raise like a rejected delivery."""

    def __init__(self, token: str = "", *, failing: set[str] | None = None) -> None:
        self.token = token
        self.failing = failing or set()
        self.messages: list[dict[str, str]] = []

    async def send_message(self, *, chat_id: int | str, text: str) -> None:
        if str(chat_id) in self.failing:
            raise TelegramSendError("Bad Request: chat not found")
        self.messages.append({"token": self.token, "chat_id": str(chat_id), "text": text})


class StubSenderFactory:
    """``sender_factory`` double that hands out one stub per bot token."""

    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.senders: dict[str, StubTelegramSender] = {}

    def __call__(self, token: str) -> StubTelegramSender:
        sender = StubTelegramSender(token, failing=self.failing)
        self.senders[token] = sender
        return sender

    @property
    def messages(self) -> list[dict[str, str]]:
        return [message for sender in self.senders.values() for message in sender.messages]


class StubEmailSender:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.sent: list[dict[str, object]] = []

    async def send_email(
        self,
        *,
        subject: str,
        body: str,
        sender: str,
        recipients: list[str],
    ) -> None:
        if any(address in self.failing for address in recipients):
            raise EmailSendError("550 mailbox unavailable")
        self.sent.append(
            {"subject": subject, "body": body, "sender": sender, "recipients": list(recipients)}
        )


class StubWebhookClient:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[dict[str, object]] = []

    async def post_json(
        self,
        *,
        url: str,
        body: bytes,
        headers: dict[str, str] | None = None,
    ) -> None:
        if url in self.failing:
            raise WebhookSendError("HTTP 500: boom")
        self.calls.append({"url": url, "body": body, "headers": dict(headers or {})})


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def app_settings(data_dir: Path) -> AppSettings:
    return AppSettings(data_path=data_dir, server_domain="support.example.com", timezone="UTC")


@pytest.fixture
async def store(data_dir: Path) -> SettingsStore:
    settings_store = SettingsStore(data_dir)
    await settings_store.init()
    return settings_store


@pytest.fixture
def telegram_senders() -> StubSenderFactory:
    return StubSenderFactory()


@pytest.fixture
def email_sender() -> StubEmailSender:
    return StubEmailSender()


@pytest.fixture
def webhook_client() -> StubWebhookClient:
    return StubWebhookClient()


@pytest.fixture
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Drop deployment and ``MESHADMIN_*`` variables the host may define."""
    for name in LEGACY_ENVIRONMENT:
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith(f"{ENVVAR_PREFIX}_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
