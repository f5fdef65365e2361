"""
FastAPI surface over the module registry and settings store.

Routes only translate HTTP to registry calls: status-code mapping, actor
resolution from the admin API key and the JSON envelopes the dashboard
frontend expects.  Business rules stay in the modules.

The admin API key is the only credential checked here.  ``X-User-Id`` is
taken as asserted by the caller: it scopes the per-user Telegram routes and
the self-service Telegram ``test`` action, so it must be set by a trusted
reverse proxy (or the dashboard session in front of it) and stripped from
client requests.  Every other module action requires the admin key once
admin authentication is enabled.
"""

from __future__ import annotations

import datetime as dt
import hmac
import logging
import time
from typing import Any

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response

from . import __version__
from .core.config import AppSettings
from .core.contracts import Actor, utc_timestamp
from .core.errors import (
    ActionError,
    ConfigError,
    ModuleNotFoundInRegistryError,
    SettingsValidationError,
    WebhookRejectedError,
)
from .core.events import SIGNATURE_HEADER
from .core.registry import ModuleRegistry
from .core.store import LEGACY_MODULES_KEY, SettingsStore
from .modules.admin.branding import BrandingModule
from .modules.admin.files import FilesModule
from .modules.admin.general import GeneralModule
from .modules.output.telegram_notifier import TelegramNotifier
from .modules.output.webhook_relay import WebhookRelay

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Api-Key"
USER_ID_HEADER = "X-User-Id"
EXPORT_FILENAME = "remote-support-settings-{stamp}.json"

TEST_EVENT_DEFAULTS = {
    "deviceName": "Test-Device",
    "userName": "Test User",
    "groupName": "Test Group",
    "ipAddress": "192.168.1.100",
}


class AccessDeniedError(Exception):
    """Raised when the caller lacks the rights for a route."""

    def __init__(self, message: str, *, status_code: int = 401) -> None:
        self.status_code = status_code
        super().__init__(message)


def _failure(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"success": False, "error": message, **extra}
    )


def create_app(
    registry: ModuleRegistry, store: SettingsStore, app_settings: AppSettings
) -> FastAPI:
    """Build the dashboard API bound to an initialized store and loaded registry."""
    app = FastAPI(title="MeshCentral Admin API", version=__version__)
    app.state.registry = registry
    app.state.store = store
    app.state.app_settings = app_settings
    started = time.monotonic()

    def _module(name: str, kind: type[Any]) -> Any | None:
        if not registry.has(name):
            return None
        module = registry.get(name)
        return module if isinstance(module, kind) else None

    def current_actor(request: Request) -> Actor:
        general = _module("general", GeneralModule)
        secret = general.admin_secret() if general is not None else None
        user_id = request.headers.get(USER_ID_HEADER) or None
        if secret is None:
            return Actor(id=user_id or "admin", name=user_id or "admin", is_admin=True)
        supplied = request.headers.get(API_KEY_HEADER) or ""
        if supplied and hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8")):
            return Actor(id=user_id or "admin", name="admin", is_admin=True)
        return Actor(id=user_id or "anonymous", name=user_id or "anonymous", is_admin=False)

    def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
        if not actor.is_admin:
            raise AccessDeniedError("Admin authentication required")
        return actor

    @app.exception_handler(ModuleNotFoundInRegistryError)
    async def _not_found(request: Request, exc: ModuleNotFoundInRegistryError) -> JSONResponse:
        return _failure(404, str(exc))

    @app.exception_handler(SettingsValidationError)
    async def _invalid(request: Request, exc: SettingsValidationError) -> JSONResponse:
        return _failure(
            400,
            "Validation failed",
            validationErrors=[issue.model_dump() for issue in exc.issues],
        )

    @app.exception_handler(ActionError)
    async def _action_failed(request: Request, exc: ActionError) -> JSONResponse:
        return _failure(400, str(exc))

    @app.exception_handler(ConfigError)
    async def _bad_document(request: Request, exc: ConfigError) -> JSONResponse:
        return _failure(400, str(exc))

    @app.exception_handler(WebhookRejectedError)
    async def _rejected(request: Request, exc: WebhookRejectedError) -> JSONResponse:
        logger.warning("Webhook rejected (%d): %s", exc.status_code, exc)
        return _failure(exc.status_code, str(exc))

    @app.exception_handler(AccessDeniedError)
    async def _denied(request: Request, exc: AccessDeniedError) -> JSONResponse:
        return _failure(exc.status_code, str(exc))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _failure(500, "Internal server error")

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": utc_timestamp(),
            "uptime": round(time.monotonic() - started, 3),
            "modules": registry.names,
        }

    # Modules

    @app.get("/api/modules")
    async def list_modules() -> dict[str, Any]:
        return {
            "success": True,
            "modules": [info.to_api() for info in registry.get_module_list()],
        }

    @app.get("/api/modules/{name}")
    async def module_detail(name: str, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        return {"success": True, "module": registry.get_module_detail(name)}

    @app.get("/api/modules/{name}/settings")
    async def module_settings(name: str, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        return {"success": True, "settings": registry.get(name).get_settings()}

    @app.put("/api/modules/{name}/settings")
    async def save_module_settings(
        name: str,
        payload: dict[str, Any] = Body(...),
        actor: Actor = Depends(require_admin),
    ) -> dict[str, Any]:
        settings = await registry.save_settings(name, payload)
        logger.info("Settings for %s saved by %s", name, actor.id)
        return {"success": True, "message": "Settings saved successfully", "settings": settings}

    @app.post("/api/modules/{name}/actions/{action}")
    async def run_action(
        name: str,
        action: str,
        params: dict[str, Any] | None = Body(default=None),
        actor: Actor = Depends(current_actor),
    ) -> dict[str, Any]:
        result = await registry.execute_action(name, action, params or {}, actor)
        return {"success": True, "result": result}

    # Webhooks

    @app.post("/api/webhook/meshcentral")
    async def meshcentral_webhook(
        request: Request,
        signature: str | None = Query(default=None),
        secret: str | None = Query(default=None),
    ) -> Any:
        relay = _module("webhook", WebhookRelay)
        if relay is None:
            return _failure(503, "Webhook module not available")
        body = await request.body()
        event = await relay.process_incoming(
            body,
            signature=request.headers.get(SIGNATURE_HEADER) or signature,
            token=secret,
        )
        results = await registry.handle_webhook(event.event_type, event.payload)
        return {
            "success": True,
            "eventType": event.event_type,
            "results": {name: result.to_api() for name, result in results.items()},
        }

    @app.post("/api/webhook/test")
    async def test_webhook(
        body: dict[str, Any] = Body(...), actor: Actor = Depends(require_admin)
    ) -> Any:
        event_type = body.get("eventType")
        if not event_type:
            return _failure(400, "eventType is required")
        payload = {**TEST_EVENT_DEFAULTS, "timestamp": utc_timestamp(), **(body.get("payload") or {})}
        results = await registry.handle_webhook(str(event_type), payload)
        return {
            "success": True,
            "eventType": event_type,
            "payload": payload,
            "results": {name: result.to_api() for name, result in results.items()},
        }

    # Global settings

    def _is_global_key(key: str) -> bool:
        return not key.startswith("_") and key != LEGACY_MODULES_KEY and key not in registry.names

    @app.get("/api/settings")
    async def global_settings(actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        document = store.get_all()
        return {
            "success": True,
            "settings": {key: value for key, value in document.items() if _is_global_key(key)},
            "meta": {
                "version": document.get("_version"),
                "lastModified": document.get("_lastModified"),
            },
        }

    @app.put("/api/settings")
    async def save_global_settings(
        payload: dict[str, Any] = Body(...), actor: Actor = Depends(require_admin)
    ) -> dict[str, Any]:
        ignored = sorted(key for key in payload if not _is_global_key(key))
        for key, value in payload.items():
            if _is_global_key(key):
                await store.set(key, value)
        return {"success": True, "message": "Settings saved successfully", "ignored": ignored}

    @app.get("/api/export")
    async def export_settings(actor: Actor = Depends(require_admin)) -> Response:
        stamp = dt.datetime.now(tz=dt.UTC).strftime("%Y%m%d%H%M%S")
        return Response(
            content=store.export(),
            media_type="application/json",
            headers={
                "Content-Disposition": f'attachment; filename="{EXPORT_FILENAME.format(stamp=stamp)}"'
            },
        )

    @app.post("/api/import")
    async def import_settings(request: Request, actor: Actor = Depends(require_admin)) -> Any:
        await store.import_document(await request.body())
        logger.info("Settings document imported by %s", actor.id)
        return {"success": True, "message": "Settings imported successfully"}

    # Public data

    @app.get("/api/branding")
    async def branding() -> dict[str, Any]:
        module = _module("branding", BrandingModule)
        return {"success": True, "branding": module.get_branding_data() if module else {}}

    # Telegram per-user settings

    def _telegram(actor: Actor, user_id: str) -> TelegramNotifier:
        if not actor.is_admin and actor.id != user_id:
            raise AccessDeniedError("Not allowed to manage another user's settings", status_code=403)
        module = _module("telegram", TelegramNotifier)
        if module is None:
            raise ModuleNotFoundInRegistryError("telegram")
        return module

    @app.get("/api/telegram/users/{user_id}")
    async def telegram_user(user_id: str, actor: Actor = Depends(current_actor)) -> dict[str, Any]:
        return {"success": True, "settings": _telegram(actor, user_id).get_user_settings(user_id)}

    @app.put("/api/telegram/users/{user_id}")
    async def save_telegram_user(
        user_id: str,
        payload: dict[str, Any] = Body(...),
        actor: Actor = Depends(current_actor),
    ) -> dict[str, Any]:
        record = await _telegram(actor, user_id).save_user_settings(user_id, payload)
        return {"success": True, "message": "Telegram settings saved", "settings": record}

    @app.delete("/api/telegram/users/{user_id}")
    async def delete_telegram_user(
        user_id: str, actor: Actor = Depends(current_actor)
    ) -> dict[str, Any]:
        removed = await _telegram(actor, user_id).delete_user_settings(user_id)
        return {"success": True, "removed": removed}

    # Downloads

    @app.get("/downloads/{filename}", response_model=None)
    async def download(filename: str) -> Response:
        files = _module("files", FilesModule)
        if files is None:
            return PlainTextResponse("File hosting not available", status_code=503)
        record = files.get_file_by_name(filename)
        if record is None:
            return PlainTextResponse("File not found", status_code=404)
        path = files.resolve_path(record)
        if not path.is_file():
            return PlainTextResponse("File not found on disk", status_code=404)
        await files.increment_downloads(record["id"])
        return FileResponse(
            path,
            media_type=record.get("mimeType") or "application/octet-stream",
            filename=record.get("originalName") or record["filename"],
        )

    return app


__all__ = ["API_KEY_HEADER", "AccessDeniedError", "USER_ID_HEADER", "create_app"]
