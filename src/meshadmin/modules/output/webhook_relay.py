"""
Webhook module: MeshCentral ingestion plus outgoing webhook relay.

Incoming requests are authenticated and canonicalized by ``EventNormalizer``
using this module's settings.  Canonical events are relayed as signed JSON
POSTs to every enabled outgoing endpoint subscribed to the event type.
"""

from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from ...core.config import AppSettings
from ...core.contracts import (
    ActionDescriptor,
    ActionHandler,
    Actor,
    BaseModule,
    CanonicalEvent,
    DeliveryResult,
    EventResult,
    WebhookEndpoint,
    utc_timestamp,
)
from ...core.errors import ActionError
from ...core.events import (
    DEFAULT_EVENT_MAPPING,
    SIGNATURE_HEADER,
    EventNormalizer,
    sign_payload,
)
from ...core.schema import FieldDescriptor, SelectOption, ValidationRules, section
from ...core.store import SettingsStore
from ...core.validation import ValidationIssue, validate_settings

logger = logging.getLogger(__name__)

USER_AGENT = "RemoteSupport-Webhook/1.0"
INCOMING_PATH = "/api/webhook/meshcentral"
VIEW_LOG_LIMIT = 50
TEST_MESSAGE = "This is a test webhook from Remote Support"

RELAYED_EVENTS = (
    "device.connect",
    "device.disconnect",
    "user.login",
    "user.logout",
    "user.loginFailed",
    "support.request",
)


class WebhookSendError(RuntimeError):
    """Raised when dispatching a webhook fails."""


class WebhookClient(Protocol):
    """Protocol implemented by concrete HTTP clients."""

    async def post_json(
        self,
        *,
        url: str,
        body: bytes,
        headers: dict[str, str] | None = None,
    ) -> None: ...


class HttpxWebhookClient:
    """Webhook client implemented with httpx; non-2xx responses are failures."""

    def __init__(self, *, timeout: float = 10.0, verify: bool = True) -> None:
        self._timeout = timeout
        self._verify = verify

    async def post_json(
        self,
        *,
        url: str,
        body: bytes,
        headers: dict[str, str] | None = None,
    ) -> None:
        if not url:
            raise WebhookSendError("Webhook URL is required.")
        async with httpx.AsyncClient(timeout=self._timeout, verify=self._verify) as client:
            try:
                response = await client.post(url, content=body, headers=headers)
            except httpx.TimeoutException as exc:
                raise WebhookSendError("Request timed out") from exc
            except httpx.HTTPError as exc:
                raise WebhookSendError(f"Request failed: {exc}") from exc
        if not response.is_success:
            raise WebhookSendError(f"HTTP {response.status_code}: {response.text[:200]}")


def generate_secret() -> str:
    return secrets.token_hex(32)


def parse_endpoints(raw: Any) -> list[WebhookEndpoint]:
    """Validate stored endpoint records, skipping malformed entries."""
    endpoints: list[WebhookEndpoint] = []
    if not isinstance(raw, list):
        return endpoints
    for item in raw:
        try:
            endpoints.append(WebhookEndpoint.model_validate(item))
        except ValidationError as exc:
            logger.warning("Ignoring malformed outgoing webhook %r: %s", item, exc)
    return endpoints


class WebhookRelay(BaseModule):
    """Accept MeshCentral webhooks and relay canonical events to external URLs."""

    name = "webhook"
    display_name = "Webhooks"
    description = "Configure incoming and outgoing webhooks"
    icon = "link"

    def __init__(
        self,
        store: SettingsStore,
        app_settings: AppSettings,
        *,
        client: WebhookClient | None = None,
    ) -> None:
        super().__init__(store, app_settings)
        self._client = client or HttpxWebhookClient(timeout=app_settings.http_timeout_seconds)
        self.normalizer = EventNormalizer(self.settings)

    def get_default_settings(self) -> dict[str, Any]:
        return {
            "enabled": True,
            "incomingEnabled": True,
            "incomingSecret": "",
            "authRequired": False,
            "webhookProtocol": "http",
            "webhookHost": "admin",
            "webhookPort": "",
            "outgoingEnabled": False,
            "outgoingWebhooks": [],
            "eventMapping": dict(DEFAULT_EVENT_MAPPING),
            "logEvents": True,
            "maxLogEntries": 100,
        }

    async def init(self) -> None:
        def _ensure_secret(current: dict[str, Any]) -> dict[str, Any]:
            if not current.get("incomingSecret"):
                current["incomingSecret"] = generate_secret()
                logger.info("Generated incoming webhook secret")
            return current

        await self.settings.update(_ensure_secret)
        await super().init()

    def get_schema(self) -> list[FieldDescriptor]:
        event_options = [
            SelectOption(value="device.connect", label="Device Connect"),
            SelectOption(value="device.disconnect", label="Device Disconnect"),
            SelectOption(value="user.login", label="User Login"),
            SelectOption(value="user.logout", label="User Logout"),
            SelectOption(value="user.loginFailed", label="Failed Login"),
            SelectOption(value="support.request", label="Support Request"),
        ]
        return [
            FieldDescriptor(
                key="enabled",
                type="boolean",
                label="Enable Webhooks",
                description="Enable webhook functionality",
            ),
            section("section_incoming", "Incoming Webhooks (from MeshCentral)"),
            FieldDescriptor(
                key="incomingEnabled",
                type="boolean",
                label="Enable Incoming Webhooks",
                description="Accept webhooks from MeshCentral",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="incomingSecret",
                type="password",
                label="Webhook Secret",
                description="Secret key to verify webhook requests (auto-generated)",
                depends_on="incomingEnabled",
            ),
            FieldDescriptor(
                key="authRequired",
                type="boolean",
                label="Require Authentication",
                description="Reject webhooks without a valid signature or secret",
                depends_on="incomingEnabled",
            ),
            section("section_endpoint", "Webhook Endpoint Configuration"),
            FieldDescriptor(
                key="webhookProtocol",
                type="select",
                label="Protocol",
                options=[
                    SelectOption(value="http", label="HTTP"),
                    SelectOption(value="https", label="HTTPS"),
                ],
                depends_on="incomingEnabled",
            ),
            FieldDescriptor(
                key="webhookHost",
                type="text",
                label="Webhook Host",
                description='Hostname for the webhook URL ("admin" inside docker)',
                placeholder="admin or 192.168.1.100",
                depends_on="incomingEnabled",
            ),
            FieldDescriptor(
                key="webhookPort",
                type="text",
                label="Webhook Port",
                placeholder=str(self._app_settings.port),
                validation=ValidationRules(
                    pattern=r"^\d{1,5}$", pattern_message="Webhook Port must be a number"
                ),
                depends_on="incomingEnabled",
            ),
            FieldDescriptor(
                key="webhookUrl",
                type="readonly",
                label="Webhook URL",
                description="Configure this URL in MeshCentral",
                value=INCOMING_PATH,
                depends_on="incomingEnabled",
            ),
            section("section_outgoing", "Outgoing Webhooks (to External Services)"),
            FieldDescriptor(
                key="outgoingEnabled",
                type="boolean",
                label="Enable Outgoing Webhooks",
                description="Send events to external URLs",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="outgoingWebhooks",
                type="array",
                label="Webhook Endpoints",
                description="External URLs to receive events",
                depends_on="outgoingEnabled",
                item_schema=[
                    FieldDescriptor(key="name", type="text", label="Name"),
                    FieldDescriptor(
                        key="url",
                        type="text",
                        label="URL",
                        required=True,
                        validation=ValidationRules(
                            pattern=r"^https?://", pattern_message="URL must start with http(s)://"
                        ),
                    ),
                    FieldDescriptor(
                        key="events", type="multiselect", label="Events", options=event_options
                    ),
                    FieldDescriptor(key="secret", type="text", label="Secret (optional)"),
                    FieldDescriptor(key="enabled", type="boolean", label="Enabled"),
                ],
            ),
            section("section_logging", "Logging"),
            FieldDescriptor(
                key="logEvents",
                type="boolean",
                label="Log Webhook Events",
                description="Keep a log of received webhook events",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="maxLogEntries",
                type="number",
                label="Max Log Entries",
                description="Maximum number of log entries to keep",
                validation=ValidationRules(min=10, max=1000),
                depends_on="logEvents",
            ),
        ]

    def get_actions(self) -> list[ActionDescriptor]:
        return [
            ActionDescriptor(
                name="regenerateSecret",
                label="Regenerate Secret",
                icon="refresh",
                description="Generate a new webhook secret",
                confirm="This will invalidate the current secret. Continue?",
                admin_only=True,
            ),
            ActionDescriptor(
                name="testOutgoing",
                label="Test Outgoing Webhook",
                icon="send",
                description="Send a test event to all enabled outgoing webhooks",
                admin_only=True,
            ),
            ActionDescriptor(
                name="clearLogs",
                label="Clear Logs",
                icon="trash",
                description="Clear webhook event logs",
                confirm="Clear all webhook logs?",
                admin_only=True,
            ),
            ActionDescriptor(
                name="viewLogs",
                label="View Logs",
                icon="list",
                description="View recent webhook events",
                admin_only=True,
            ),
        ]

    def action_handlers(self) -> dict[str, ActionHandler]:
        return {
            "regenerateSecret": self._action_regenerate_secret,
            "testOutgoing": self._action_test_outgoing,
            "clearLogs": self._action_clear_logs,
            "viewLogs": self._action_view_logs,
        }

    def get_handled_events(self) -> tuple[str, ...]:
        return RELAYED_EVENTS

    def validate_settings(self, candidate: Mapping[str, Any]) -> list[ValidationIssue]:
        issues = super().validate_settings(candidate)
        raw = candidate.get("outgoingWebhooks")
        if isinstance(raw, list):
            schema = next(f for f in self.get_schema() if f.key == "outgoingWebhooks")
            for idx, item in enumerate(raw):
                if not isinstance(item, Mapping):
                    continue
                for issue in validate_settings(schema.item_schema or [], item):
                    issues.append(
                        issue.model_copy(update={"field": f"outgoingWebhooks.{idx}.{issue.field}"})
                    )
        return issues

    async def process_incoming(
        self,
        body: bytes | str,
        *,
        signature: str | None = None,
        token: str | None = None,
    ) -> CanonicalEvent:
        return await self.normalizer.process(body, signature=signature, token=token)

    async def _send(self, endpoint: WebhookEndpoint, message: Mapping[str, Any]) -> DeliveryResult:
        body = json.dumps(message, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if endpoint.secret:
            headers[SIGNATURE_HEADER] = sign_payload(endpoint.secret, body)
        try:
            await self._client.post_json(url=endpoint.url, body=body, headers=headers)
        except WebhookSendError as exc:
            logger.error("Outgoing webhook %s failed: %s", endpoint.label, exc)
            return DeliveryResult(recipient=endpoint.label, success=False, error=str(exc))
        except Exception as exc:
            logger.exception("Outgoing webhook %s crashed", endpoint.label)
            return DeliveryResult(recipient=endpoint.label, success=False, error=str(exc))
        logger.info("Outgoing webhook %s delivered", endpoint.label)
        return DeliveryResult(recipient=endpoint.label, success=True)

    async def handle_event(self, event_type: str, payload: dict[str, Any]) -> EventResult:
        settings = self.get_settings()
        if not settings.get("enabled") or not settings.get("outgoingEnabled"):
            return EventResult.suppressed("Outgoing webhooks disabled")
        targets = [
            endpoint
            for endpoint in parse_endpoints(settings.get("outgoingWebhooks"))
            if endpoint.wants(event_type)
        ]
        if not targets:
            return EventResult.suppressed("No webhooks configured for this event")
        message = {"event": event_type, "data": payload, "timestamp": utc_timestamp()}
        results = [await self._send(endpoint, message) for endpoint in targets]
        return EventResult(handled=True, event_type=event_type, results=results)

    def get_meshcentral_config(self) -> dict[str, Any]:
        """Snippet for MeshCentral's config.json pointing its webhooks at this service."""
        settings = self.get_settings()
        protocol = settings.get("webhookProtocol") or "http"
        host = settings.get("webhookHost") or "admin"
        port = settings.get("webhookPort") or self._app_settings.port
        url = f"{protocol}://{host}:{port}{INCOMING_PATH}"
        secret = settings.get("incomingSecret")
        if secret:
            url = f"{url}?secret={secret}"
        return {"webhooks": {"serverConnect": url, "serverDisconnect": url}}

    async def _action_regenerate_secret(
        self, params: dict[str, Any], actor: Actor | None
    ) -> dict[str, Any]:
        secret = generate_secret()
        await self.settings.merge({"incomingSecret": secret})
        return {"success": True, "message": "Webhook secret regenerated", "secret": secret}

    async def _action_test_outgoing(
        self, params: dict[str, Any], actor: Actor | None
    ) -> dict[str, Any]:
        settings = self.get_settings()
        if not settings.get("outgoingEnabled"):
            raise ActionError("Outgoing webhooks are not enabled")
        endpoints = [
            endpoint
            for endpoint in parse_endpoints(settings.get("outgoingWebhooks"))
            if endpoint.enabled
        ]
        if not endpoints:
            raise ActionError("No enabled outgoing webhooks configured")
        message = {"event": "test", "message": TEST_MESSAGE, "timestamp": utc_timestamp()}
        results = [await self._send(endpoint, message) for endpoint in endpoints]
        return {
            "success": True,
            "message": f"Tested {len(endpoints)} webhook(s)",
            "results": [result.to_api() for result in results],
        }

    async def _action_clear_logs(
        self, params: dict[str, Any], actor: Actor | None
    ) -> dict[str, Any]:
        await self.normalizer.clear()
        return {"success": True, "message": "Webhook logs cleared"}

    async def _action_view_logs(
        self, params: dict[str, Any], actor: Actor | None
    ) -> dict[str, Any]:
        return {"success": True, "logs": self.normalizer.entries(VIEW_LOG_LIMIT)}


__all__ = [
    "HttpxWebhookClient",
    "WebhookClient",
    "WebhookRelay",
    "WebhookSendError",
    "generate_secret",
    "parse_endpoints",
]
