"""
Email notification module that sends canonical events via SMTP.

Subjects and bodies are rendered from per-event templates stored in the
module settings and delivered one recipient at a time through a pluggable
``EmailSender`` (smtplib in a worker thread by default).
"""

from __future__ import annotations

import asyncio
import logging
import re
import smtplib
import ssl
from collections.abc import Mapping, Sequence
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Protocol

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
from ...core.errors import ActionError
from ...core.schema import FieldDescriptor, SelectOption, ValidationRules, section
from ...core.store import SettingsStore
from ...core.templating import render_template

logger = logging.getLogger(__name__)

EMAIL_PATTERN = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
_EMAIL_RE = re.compile(EMAIL_PATTERN)

SMTP_PRESETS: dict[str, dict[str, Any]] = {
    "gmail": {"host": "smtp.gmail.com", "port": 587, "secure": False},
    "outlook": {"host": "smtp.office365.com", "port": 587, "secure": False},
    "yahoo": {"host": "smtp.mail.yahoo.com", "port": 587, "secure": False},
    "sendgrid": {"host": "smtp.sendgrid.net", "port": 587, "secure": False},
    "mailgun": {"host": "smtp.mailgun.org", "port": 587, "secure": False},
}

# Canonical event -> (settings toggle, template key)
EVENT_SETTINGS: dict[str, tuple[str, str]] = {
    "device.connect": ("notifyDeviceConnect", "deviceConnect"),
    "device.disconnect": ("notifyDeviceDisconnect", "deviceDisconnect"),
    "support.request": ("notifySupportRequest", "supportRequest"),
}

DEFAULT_TEMPLATES: dict[str, dict[str, str]] = {
    "deviceConnect": {
        "subject": "Device Connected: {deviceName}",
        "body": (
            "A device has connected to your Remote Support server.\n\n"
            "Device: {deviceName}\nUser: {userName}\nGroup: {groupName}\n"
            "IP Address: {ipAddress}\nTime: {timestamp}"
        ),
    },
    "deviceDisconnect": {
        "subject": "Device Disconnected: {deviceName}",
        "body": (
            "A device has disconnected from your Remote Support server.\n\n"
            "Device: {deviceName}\nGroup: {groupName}\nTime: {timestamp}"
        ),
    },
    "supportRequest": {
        "subject": "New Support Request from {customerName}",
        "body": (
            "A new support request has been received.\n\n"
            "Customer: {customerName}\nEmail: {customerEmail}\nPhone: {customerPhone}\n"
            "Message:\n{message}\n\nTime: {timestamp}"
        ),
    },
}


class EmailSendError(RuntimeError):
    """Raised when sending an email notification fails."""


class EmailSender(Protocol):
    """Protocol implemented by concrete SMTP/email senders."""

    async def send_email(
        self,
        *,
        subject: str,
        body: str,
        sender: str,
        recipients: Sequence[str],
    ) -> None: ...


class SMTPLibEmailSender:
    """SMTP client backed by smtplib with optional TLS/SSL support."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        use_ssl: bool = False,
        timeout: float = 30.0,
    ) -> None:
        if not host:
            raise EmailSendError("SMTP host is required.")
        if use_tls and use_ssl:
            raise EmailSendError("use_tls and use_ssl are mutually exclusive.")
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._use_ssl = use_ssl
        self._timeout = timeout

    async def send_email(
        self,
        *,
        subject: str,
        body: str,
        sender: str,
        recipients: Sequence[str],
    ) -> None:
        await asyncio.to_thread(self._send_blocking, subject, body, sender, list(recipients))

    def _send_blocking(
        self, subject: str, body: str, sender: str, recipients: list[str]
    ) -> None:
        if not recipients:
            raise EmailSendError("At least one recipient is required.")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = sender
        message["To"] = ", ".join(recipients)
        message.set_content(body)

        context = ssl.create_default_context()
        smtp_cls = smtplib.SMTP_SSL if self._use_ssl else smtplib.SMTP
        try:
            with smtp_cls(self._host, self._port, timeout=self._timeout) as client:
                if self._use_tls and not self._use_ssl:
                    client.starttls(context=context)
                if self._username and self._password:
                    client.login(self._username, self._password)
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:  # pragma: no cover - network errors
            raise EmailSendError(str(exc)) from exc


def parse_recipients(value: Any) -> list[str]:
    """Split on newlines, commas or semicolons and drop invalid addresses."""
    if not value:
        return []
    if isinstance(value, str):
        parts = re.split(r"[\n,;]+", value)
    else:
        parts = [str(item) for item in value if item is not None]
    return [part.strip() for part in parts if _EMAIL_RE.match(part.strip())]


class EmailNotifier(BaseModule):
    """Deliver canonical events to a list of email recipients."""

    name = "email"
    display_name = "Email Notifications"
    description = "Send email notifications for important events"
    icon = "mail"

    def __init__(
        self,
        store: SettingsStore,
        app_settings: AppSettings,
        *,
        sender: EmailSender | None = None,
    ) -> None:
        super().__init__(store, app_settings)
        self._sender = sender

    def get_default_settings(self) -> dict[str, Any]:
        return {
            "enabled": False,
            "smtpPreset": "custom",
            "smtpHost": "",
            "smtpPort": 587,
            "smtpSecure": False,
            "smtpUser": "",
            "smtpPassword": "",
            "fromEmail": "",
            "fromName": "Remote Support",
            "notifyEmails": "",
            "notifyDeviceConnect": False,
            "notifyDeviceDisconnect": False,
            "notifySupportRequest": True,
            "subjectPrefix": "[Remote Support]",
            "templates": {key: dict(value) for key, value in DEFAULT_TEMPLATES.items()},
        }

    def get_schema(self) -> list[FieldDescriptor]:
        presets = [SelectOption(value="custom", label="Custom SMTP Server")] + [
            SelectOption(value=key, label=key.capitalize()) for key in SMTP_PRESETS
        ]
        return [
            FieldDescriptor(
                key="enabled",
                type="boolean",
                label="Enable Email Notifications",
                description="Send email notifications for events",
            ),
            section("section_smtp", "SMTP Server Settings"),
            FieldDescriptor(
                key="smtpPreset",
                type="select",
                label="Email Provider",
                options=presets,
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="smtpHost",
                type="text",
                label="SMTP Host",
                placeholder="smtp.gmail.com",
                required=True,
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="smtpPort",
                type="number",
                label="SMTP Port",
                required=True,
                validation=ValidationRules(min=1, max=65535),
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="smtpSecure",
                type="boolean",
                label="Use SSL/TLS",
                description="Use implicit TLS (port 465); STARTTLS is used otherwise",
                depends_on="enabled",
            ),
            FieldDescriptor(key="smtpUser", type="text", label="SMTP Username"),
            FieldDescriptor(key="smtpPassword", type="password", label="SMTP Password"),
            section("section_sender", "Sender Information"),
            FieldDescriptor(
                key="fromEmail",
                type="text",
                label="From Email",
                placeholder="notifications@example.com",
                required=True,
                validation=ValidationRules(
                    pattern=EMAIL_PATTERN, pattern_message="From Email must be a valid address"
                ),
            ),
            FieldDescriptor(key="fromName", type="text", label="From Name"),
            section("section_recipients", "Recipients"),
            FieldDescriptor(
                key="notifyEmails",
                type="textarea",
                label="Notification Recipients",
                description="One email address per line",
                required=True,
            ),
            section("section_events", "Notification Events"),
            FieldDescriptor(key="notifyDeviceConnect", type="boolean", label="Device Connects"),
            FieldDescriptor(
                key="notifyDeviceDisconnect", type="boolean", label="Device Disconnects"
            ),
            FieldDescriptor(key="notifySupportRequest", type="boolean", label="Support Requests"),
            section("section_advanced", "Advanced"),
            FieldDescriptor(
                key="subjectPrefix",
                type="text",
                label="Subject Prefix",
                validation=ValidationRules(max_length=50),
            ),
        ]

    def get_actions(self) -> list[ActionDescriptor]:
        return [
            ActionDescriptor(
                name="test",
                label="Send Test Email",
                icon="send",
                description="Send a test email to the first recipient",
                admin_only=True,
            )
        ]

    def action_handlers(self) -> dict[str, ActionHandler]:
        return {"test": self._action_test}

    def get_handled_events(self) -> tuple[str, ...]:
        return tuple(EVENT_SETTINGS)

    async def save_settings(self, candidate: Mapping[str, Any]) -> dict[str, Any]:
        changes = dict(candidate)
        preset = SMTP_PRESETS.get(str(changes.get("smtpPreset") or ""))
        if preset is not None:
            if not changes.get("smtpHost"):
                changes["smtpHost"] = preset["host"]
            changes.setdefault("smtpPort", preset["port"])
            changes.setdefault("smtpSecure", preset["secure"])
        return await super().save_settings(changes)

    def _resolve_sender(self, settings: Mapping[str, Any]) -> EmailSender:
        if self._sender is not None:
            return self._sender
        use_ssl = bool(settings.get("smtpSecure"))
        return SMTPLibEmailSender(
            host=str(settings.get("smtpHost") or ""),
            port=int(settings.get("smtpPort") or 587),
            username=settings.get("smtpUser") or None,
            password=settings.get("smtpPassword") or None,
            use_tls=not use_ssl,
            use_ssl=use_ssl,
            timeout=self._app_settings.http_timeout_seconds,
        )

    @staticmethod
    def _from_address(settings: Mapping[str, Any]) -> str:
        address = str(settings.get("fromEmail") or "")
        name = str(settings.get("fromName") or "")
        return formataddr((name, address)) if name else address

    def render(
        self, template_key: str, payload: Mapping[str, Any], settings: Mapping[str, Any]
    ) -> tuple[str, str]:
        templates = settings.get("templates")
        stored = templates.get(template_key) if isinstance(templates, Mapping) else None
        template = {**DEFAULT_TEMPLATES[template_key], **(stored or {})}
        values = {"timestamp": utc_timestamp(), **payload}
        prefix = str(settings.get("subjectPrefix") or "").strip()
        subject = render_template(template["subject"], values)
        return (f"{prefix} {subject}" if prefix else subject), render_template(
            template["body"], values
        )

    async def handle_event(self, event_type: str, payload: dict[str, Any]) -> EventResult:
        settings = self.get_settings()
        if not settings.get("enabled"):
            return EventResult.suppressed("Module disabled")
        if event_type not in EVENT_SETTINGS:
            return EventResult.suppressed("Unknown event type")
        toggle, template_key = EVENT_SETTINGS[event_type]
        if not settings.get(toggle):
            return EventResult.suppressed(f"{event_type} notifications disabled")
        recipients = parse_recipients(settings.get("notifyEmails"))
        if not recipients:
            return EventResult.suppressed("No recipients configured")

        subject, body = self.render(template_key, payload, settings)
        try:
            sender = self._resolve_sender(settings)
        except EmailSendError as exc:
            logger.error("Email sender unavailable: %s", exc)
            return EventResult(
                handled=True,
                event_type=event_type,
                results=[
                    DeliveryResult(recipient=address, success=False, error=str(exc))
                    for address in recipients
                ],
            )
        from_address = self._from_address(settings)
        results: list[DeliveryResult] = []
        for address in recipients:
            try:
                await sender.send_email(
                    subject=subject, body=body, sender=from_address, recipients=[address]
                )
            except EmailSendError as exc:
                logger.error("Email %s notification to %s failed: %s", event_type, address, exc)
                results.append(DeliveryResult(recipient=address, success=False, error=str(exc)))
            except Exception as exc:
                logger.exception("Email delivery to %s crashed", address)
                results.append(DeliveryResult(recipient=address, success=False, error=str(exc)))
            else:
                logger.info("Email %s notification sent to %s", event_type, address)
                results.append(DeliveryResult(recipient=address, success=True))
        return EventResult(handled=True, event_type=event_type, results=results)

    async def _action_test(self, params: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        settings = self.get_settings()
        if not settings.get("smtpHost") and self._sender is None:
            raise ActionError("SMTP host is not configured")
        recipients = parse_recipients(params.get("to") or settings.get("notifyEmails"))
        if not recipients:
            raise ActionError("No valid recipient email addresses")
        prefix = str(settings.get("subjectPrefix") or "").strip()
        body = (
            "This is a test email from Remote Support.\n\n"
            "If you received this email, your email notifications are configured correctly.\n\n"
            f"Time: {utc_timestamp()}"
        )
        try:
            await self._resolve_sender(settings).send_email(
                subject=f"{prefix} Test Email".strip(),
                body=body,
                sender=self._from_address(settings),
                recipients=[recipients[0]],
            )
        except EmailSendError as exc:
            raise ActionError(f"Failed to send test email: {exc}") from exc
        return {"success": True, "message": f"Test email sent to {recipients[0]}"}


__all__ = [
    "EmailNotifier",
    "EmailSendError",
    "EmailSender",
    "SMTPLibEmailSender",
    "SMTP_PRESETS",
    "parse_recipients",
]
