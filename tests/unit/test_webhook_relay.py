import json
from typing import Any

import pytest

from meshadmin.core.config import AppSettings
from meshadmin.core.errors import ActionError, SettingsValidationError
from meshadmin.core.events import SIGNATURE_HEADER, sign_payload
from meshadmin.core.store import SettingsStore
from meshadmin.modules.output.webhook_relay import WebhookRelay, parse_endpoints

HOOK = "https://hooks.example.com/in"
OTHER = "https://other.example.com/in"


async def _relay(
    store: SettingsStore, app_settings: AppSettings, client: Any, **settings: Any
) -> WebhookRelay:
    relay = WebhookRelay(store, app_settings, client=client)
    await store.register_module(relay.name, relay.get_default_settings())
    await relay.init()
    if settings:
        await relay.save_settings(settings)
    return relay


@pytest.mark.asyncio
async def test_init_generates_secret_once(
    store: SettingsStore, app_settings: AppSettings, webhook_client: Any
) -> None:
    relay = await _relay(store, app_settings, webhook_client)
    secret = relay.get_settings()["incomingSecret"]

    assert len(secret) == 64
    await relay.init()
    assert relay.get_settings()["incomingSecret"] == secret


@pytest.mark.asyncio
async def test_outgoing_post_is_signed_per_endpoint(
    store: SettingsStore, app_settings: AppSettings, webhook_client: Any
) -> None:
    relay = await _relay(
        store,
        app_settings,
        webhook_client,
        outgoingEnabled=True,
        outgoingWebhooks=[
            {"name": "Ops", "url": HOOK, "events": ["device.connect"], "secret": "hook-key"},
            {"url": OTHER, "events": ["device.connect"]},
            {"url": "https://off.example.com", "events": ["device.connect"], "enabled": False},
            {"url": "https://login.example.com", "events": ["user.login"]},
        ],
    )

    result = await relay.handle_event("device.connect", {"deviceName": "PC-01"})

    assert result.handled is True
    assert [item.recipient for item in result.results or []] == ["Ops", OTHER]
    assert [call["url"] for call in webhook_client.calls] == [HOOK, OTHER]

    signed = webhook_client.calls[0]
    body = signed["body"]
    message = json.loads(body)
    assert message["event"] == "device.connect"
    assert message["data"] == {"deviceName": "PC-01"}
    assert message["timestamp"]
    assert signed["headers"][SIGNATURE_HEADER] == sign_payload("hook-key", body)
    assert signed["headers"]["Content-Type"] == "application/json"
    assert SIGNATURE_HEADER not in webhook_client.calls[1]["headers"]


@pytest.mark.asyncio
async def test_failed_endpoint_is_isolated(
    store: SettingsStore, app_settings: AppSettings, webhook_client: Any
) -> None:
    webhook_client.failing = {HOOK}
    relay = await _relay(
        store,
        app_settings,
        webhook_client,
        outgoingEnabled=True,
        outgoingWebhooks=[
            {"url": HOOK, "events": ["device.connect"]},
            {"url": OTHER, "events": ["device.connect"]},
        ],
    )

    result = await relay.handle_event("device.connect", {})

    assert [(item.recipient, item.success, item.error) for item in result.results or []] == [
        (HOOK, False, "HTTP 500: boom"),
        (OTHER, True, None),
    ]


@pytest.mark.asyncio
async def test_outgoing_disabled_or_unsubscribed_is_suppressed(
    store: SettingsStore, app_settings: AppSettings, webhook_client: Any
) -> None:
    relay = await _relay(
        store,
        app_settings,
        webhook_client,
        outgoingWebhooks=[{"url": HOOK, "events": ["device.connect"]}],
    )

    assert (await relay.handle_event("device.connect", {})).reason == (
        "Outgoing webhooks disabled"
    )
    await relay.save_settings({"outgoingEnabled": True})
    assert (await relay.handle_event("user.logout", {})).reason == (
        "No webhooks configured for this event"
    )
    assert webhook_client.calls == []


@pytest.mark.asyncio
async def test_endpoint_items_are_validated_with_indexed_fields(
    store: SettingsStore, app_settings: AppSettings, webhook_client: Any
) -> None:
    relay = await _relay(store, app_settings, webhook_client)

    with pytest.raises(SettingsValidationError) as excinfo:
        await relay.save_settings(
            {
                "outgoingWebhooks": [
                    {"url": HOOK, "events": []},
                    {"url": "ftp://nope", "events": []},
                    {"name": "missing url"},
                ],
                "maxLogEntries": 5,
            }
        )

    assert {issue.field: issue.message for issue in excinfo.value.issues} == {
        "maxLogEntries": "Max Log Entries must be at least 10",
        "outgoingWebhooks.1.url": "URL must start with http(s)://",
        "outgoingWebhooks.2.url": "URL is required",
    }


def test_parse_endpoints_skips_malformed_records() -> None:
    endpoints = parse_endpoints([{"url": HOOK}, {"name": "no url"}, "junk"])

    assert [endpoint.url for endpoint in endpoints] == [HOOK]
    assert parse_endpoints(None) == []


@pytest.mark.asyncio
async def test_process_incoming_uses_module_secret(
    store: SettingsStore, app_settings: AppSettings, webhook_client: Any
) -> None:
    relay = await _relay(store, app_settings, webhook_client, incomingSecret="shared")
    body = json.dumps({"action": "serverDisconnect", "nodename": "PC-07"}).encode()

    event = await relay.process_incoming(body, signature=sign_payload("shared", body))

    assert event.event_type == "device.disconnect"
    assert event.payload["deviceName"] == "PC-07"
    logs = await relay.execute_action("viewLogs")
    assert logs["logs"][0]["eventType"] == "device.disconnect"


@pytest.mark.asyncio
async def test_actions(store: SettingsStore, app_settings: AppSettings, webhook_client: Any) -> None:
    relay = await _relay(store, app_settings, webhook_client)
    old_secret = relay.get_settings()["incomingSecret"]

    regenerated = await relay.execute_action("regenerateSecret")
    assert regenerated["secret"] != old_secret
    assert relay.get_settings()["incomingSecret"] == regenerated["secret"]

    with pytest.raises(ActionError, match="not enabled"):
        await relay.execute_action("testOutgoing")
    await relay.save_settings({"outgoingEnabled": True})
    with pytest.raises(ActionError, match="No enabled outgoing"):
        await relay.execute_action("testOutgoing")

    await relay.save_settings({"outgoingWebhooks": [{"url": HOOK, "events": []}]})
    tested = await relay.execute_action("testOutgoing")
    assert tested["message"] == "Tested 1 webhook(s)"
    assert tested["results"] == [{"recipient": HOOK, "success": True}]
    assert json.loads(webhook_client.calls[0]["body"])["event"] == "test"

    assert (await relay.execute_action("clearLogs"))["message"] == "Webhook logs cleared"
    assert (await relay.execute_action("viewLogs"))["logs"] == []


@pytest.mark.asyncio
async def test_meshcentral_config_embeds_secret_token(
    store: SettingsStore, app_settings: AppSettings, webhook_client: Any
) -> None:
    relay = await _relay(
        store,
        app_settings,
        webhook_client,
        incomingSecret="abc",
        webhookHost="10.0.0.2",
        webhookPort="8080",
    )

    config = relay.get_meshcentral_config()

    url = "http://10.0.0.2:8080/api/webhook/meshcentral?secret=abc"
    assert config == {"webhooks": {"serverConnect": url, "serverDisconnect": url}}
