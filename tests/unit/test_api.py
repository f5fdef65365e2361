import datetime as dt
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx
import pytest

from meshadmin.api import API_KEY_HEADER, USER_ID_HEADER, create_app
from meshadmin.core.config import AppSettings
from meshadmin.core.events import SIGNATURE_HEADER, sign_payload
from meshadmin.core.registry import ModuleRegistry
from meshadmin.core.store import SettingsStore
from meshadmin.modules.admin import BrandingModule, FilesModule, GeneralModule
from meshadmin.modules.output import EmailNotifier, TelegramNotifier, WebhookRelay

HOOK_SECRET = "hook-secret"
SERVER_CONNECT = json.dumps(
    {"action": "serverConnect", "node": {"name": "PC-01", "ip": "10.0.0.5"}}
).encode()


@pytest.fixture
async def registry(
    store: SettingsStore,
    app_settings: AppSettings,
    telegram_senders: Any,
    email_sender: Any,
    webhook_client: Any,
) -> ModuleRegistry:
    def noon() -> dt.datetime:
        return dt.datetime(2024, 5, 4, 12, 0, tzinfo=dt.UTC)

    registry = ModuleRegistry(
        store,
        app_settings,
        factories={
            "general": GeneralModule,
            "telegram": lambda s, a: TelegramNotifier(
                s, a, sender_factory=telegram_senders, clock=noon
            ),
            "branding": BrandingModule,
            "email": lambda s, a: EmailNotifier(s, a, sender=email_sender),
            "webhook": lambda s, a: WebhookRelay(s, a, client=webhook_client),
            "files": FilesModule,
        },
    )
    report = await registry.load_all()
    assert report.ok
    return registry


@pytest.fixture
async def client(
    registry: ModuleRegistry, store: SettingsStore, app_settings: AppSettings
) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(registry, store, app_settings)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _configure_delivery(client: httpx.AsyncClient) -> None:
    telegram = await client.put(
        "/api/modules/telegram/settings",
        json={"enabled": True, "botToken": "123:abc", "chatIds": "42"},
    )
    assert telegram.status_code == 200
    webhook = await client.put(
        "/api/modules/webhook/settings", json={"incomingSecret": HOOK_SECRET}
    )
    assert webhook.status_code == 200


@pytest.mark.asyncio
async def test_health_and_module_listing(client: httpx.AsyncClient) -> None:
    health = (await client.get("/api/health")).json()
    listing = (await client.get("/api/modules")).json()

    assert health["status"] == "ok"
    assert health["modules"] == ["general", "telegram", "branding", "email", "webhook", "files"]
    assert listing["success"] is True
    assert [item["name"] for item in listing["modules"]] == health["modules"]
    assert all("settings" not in item for item in listing["modules"])


@pytest.mark.asyncio
async def test_signed_server_connect_reaches_telegram(
    client: httpx.AsyncClient, telegram_senders: Any
) -> None:
    await _configure_delivery(client)

    response = await client.post(
        "/api/webhook/meshcentral",
        content=SERVER_CONNECT,
        headers={
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(HOOK_SECRET, SERVER_CONNECT),
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["eventType"] == "device.connect"
    assert body["results"]["telegram"]["handled"] is True
    assert body["results"]["telegram"]["results"] == [{"recipient": "chat:42", "success": True}]
    assert body["results"]["webhook"]["reason"] == "Outgoing webhooks disabled"
    assert "email" not in body["results"]
    assert "PC-01" in telegram_senders.messages[0]["text"]
    assert "10.0.0.5" in telegram_senders.messages[0]["text"]


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(client: httpx.AsyncClient, telegram_senders: Any) -> None:
    await _configure_delivery(client)

    response = await client.post(
        "/api/webhook/meshcentral",
        content=SERVER_CONNECT,
        headers={SIGNATURE_HEADER: sign_payload("wrong", SERVER_CONNECT)},
    )

    assert response.status_code == 401
    assert response.json()["success"] is False
    assert telegram_senders.messages == []


@pytest.mark.asyncio
async def test_query_secret_is_accepted(client: httpx.AsyncClient) -> None:
    await _configure_delivery(client)

    response = await client.post(
        "/api/webhook/meshcentral", params={"secret": HOOK_SECRET}, content=SERVER_CONNECT
    )

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_invalid_settings_return_validation_errors(client: httpx.AsyncClient) -> None:
    response = await client.put(
        "/api/modules/telegram/settings", json={"enabled": True, "botToken": "not a token"}
    )

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": "Validation failed",
        "validationErrors": [{"field": "botToken", "message": "Bot token format is invalid"}],
    }
    settings = (await client.get("/api/modules/telegram/settings")).json()["settings"]
    assert settings["botToken"] == ""


@pytest.mark.asyncio
async def test_unknown_module_and_action(client: httpx.AsyncClient) -> None:
    missing = await client.get("/api/modules/nope")
    unknown_action = await client.post("/api/modules/general/actions/explode")

    assert missing.status_code == 404
    assert missing.json()["error"] == "Module not found: nope"
    assert unknown_action.status_code == 400
    assert unknown_action.json()["error"] == "Unknown action: explode"


@pytest.mark.asyncio
async def test_module_detail_and_action(client: httpx.AsyncClient) -> None:
    detail = (await client.get("/api/modules/general")).json()["module"]
    action = (await client.post("/api/modules/general/actions/testConnection")).json()

    assert detail["name"] == "general"
    assert detail["settings"]["meshcentralUrl"] == "https://support.example.com"
    assert any(field["key"] == "serverDomain" for field in detail["schema"])
    assert action["success"] is True
    assert action["result"]["success"] is True


@pytest.mark.asyncio
async def test_admin_key_gates_admin_routes(client: httpx.AsyncClient) -> None:
    enable = await client.put(
        "/api/modules/general/settings",
        json={"adminAuthEnabled": True, "adminAuthSecret": "k3y"},
    )
    assert enable.status_code == 200

    denied = await client.get("/api/modules/general/settings")
    wrong = await client.get("/api/modules/general/settings", headers={API_KEY_HEADER: "nope"})
    allowed = await client.get("/api/modules/general/settings", headers={API_KEY_HEADER: "k3y"})

    assert denied.status_code == 401
    assert denied.json()["error"] == "Admin authentication required"
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert (await client.get("/api/modules")).status_code == 200

    admin_only = await client.post("/api/modules/general/actions/showEnvConfig")
    assert admin_only.status_code == 400
    assert "requires admin" in admin_only.json()["error"]
    connection = await client.post("/api/modules/general/actions/testConnection")
    assert connection.status_code == 400
    own_test = await client.post(
        "/api/modules/telegram/actions/test", headers={USER_ID_HEADER: "u1"}
    )
    assert own_test.status_code == 200
    assert own_test.json()["result"] == {
        "success": False,
        "error": "Please configure your Bot Token and Chat ID first",
    }


@pytest.mark.asyncio
async def test_anonymous_callers_cannot_run_operator_actions(
    client: httpx.AsyncClient, email_sender: Any
) -> None:
    await _configure_delivery(client)
    await client.post(
        "/api/webhook/meshcentral", params={"secret": HOOK_SECRET}, content=SERVER_CONNECT
    )
    await client.put(
        "/api/modules/general/settings",
        json={"adminAuthEnabled": True, "adminAuthSecret": "k3y"},
    )

    for module, action, params in (
        ("webhook", "viewLogs", None),
        ("webhook", "clearLogs", None),
        ("webhook", "testOutgoing", None),
        ("email", "test", {"to": "someone@example.net"}),
        ("files", "cleanup", None),
        ("general", "generateUrls", None),
    ):
        response = await client.post(f"/api/modules/{module}/actions/{action}", json=params)
        assert response.status_code == 400, action
        assert "requires admin" in response.json()["error"]

    assert email_sender.sent == []
    logs = await client.post(
        "/api/modules/webhook/actions/viewLogs", headers={API_KEY_HEADER: "k3y"}
    )
    assert logs.status_code == 200
    assert logs.json()["result"]["logs"]


@pytest.mark.asyncio
async def test_users_manage_only_their_own_telegram_settings(client: httpx.AsyncClient) -> None:
    await client.put(
        "/api/modules/general/settings",
        json={"adminAuthEnabled": True, "adminAuthSecret": "k3y"},
    )
    own = {USER_ID_HEADER: "u1"}

    saved = await client.put(
        "/api/telegram/users/u1", json={"enabled": True, "chatId": "77"}, headers=own
    )
    fetched = await client.get("/api/telegram/users/u1", headers=own)
    other = await client.get("/api/telegram/users/u2", headers=own)
    as_admin = await client.get("/api/telegram/users/u2", headers={API_KEY_HEADER: "k3y"})
    removed = await client.delete("/api/telegram/users/u1", headers=own)

    assert saved.status_code == 200
    assert saved.json()["settings"]["chatId"] == "77"
    assert fetched.json()["settings"]["enabled"] is True
    assert other.status_code == 403
    assert as_admin.status_code == 200
    assert removed.json() == {"success": True, "removed": True}


@pytest.mark.asyncio
async def test_global_settings_exclude_module_namespaces(client: httpx.AsyncClient) -> None:
    saved = await client.put(
        "/api/settings", json={"ui": {"theme": "dark"}, "telegram": {"enabled": True}}
    )
    fetched = (await client.get("/api/settings")).json()

    assert saved.json()["ignored"] == ["telegram"]
    assert fetched["settings"]["ui"] == {"theme": "dark"}
    assert "telegram" not in fetched["settings"]
    assert "_version" not in fetched["settings"]
    assert fetched["meta"]["version"]


@pytest.mark.asyncio
async def test_import_without_branding_restores_branding_defaults(
    client: httpx.AsyncClient,
) -> None:
    await client.put(
        "/api/modules/branding/settings", json={"enabled": True, "companyName": "Acme"}
    )
    assert (await client.get("/api/branding")).json()["branding"]["companyName"] == "Acme"

    exported = await client.get("/api/export")
    assert exported.headers["content-disposition"].startswith("attachment;")
    document = json.loads(exported.content)
    del document["branding"]

    imported = await client.post("/api/import", content=json.dumps(document))
    branding = (await client.get("/api/modules/branding/settings")).json()["settings"]

    assert imported.json()["success"] is True
    assert branding["enabled"] is False
    assert branding["companyName"] == ""
    assert branding["primaryColor"] == "#007bff"
    assert (await client.get("/api/branding")).json()["branding"] == {}


@pytest.mark.asyncio
async def test_malformed_import_is_rejected(client: httpx.AsyncClient) -> None:
    response = await client.post("/api/import", content=b"{broken")

    assert response.status_code == 400
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_webhook_test_endpoint(client: httpx.AsyncClient, telegram_senders: Any) -> None:
    await _configure_delivery(client)

    missing = await client.post("/api/webhook/test", json={})
    sent = await client.post(
        "/api/webhook/test",
        json={"eventType": "device.disconnect", "payload": {"deviceName": "Lab-9"}},
    )

    assert missing.status_code == 400
    assert missing.json()["error"] == "eventType is required"
    body = sent.json()
    assert body["payload"]["deviceName"] == "Lab-9"
    assert body["payload"]["groupName"] == "Test Group"
    assert body["results"]["telegram"]["handled"] is True
    assert "Lab-9" in telegram_senders.messages[0]["text"]


@pytest.mark.asyncio
async def test_downloads_serve_hosted_files(
    client: httpx.AsyncClient, registry: ModuleRegistry, tmp_path: Path
) -> None:
    files = registry.get("files")
    assert isinstance(files, FilesModule)
    source = tmp_path / "incoming.bin"
    source.write_bytes(b"installer-bytes")
    record = await files.handle_upload(source, "Agent-Setup.exe")

    response = await client.get(f"/downloads/{record['filename']}")
    missing = await client.get("/downloads/nothing.exe")

    assert response.status_code == 200
    assert response.content == b"installer-bytes"
    assert "Agent-Setup.exe" in response.headers["content-disposition"]
    assert files.get_file(record["id"])["downloads"] == 1
    assert missing.status_code == 404
    assert missing.text == "File not found"
