"""
General settings module: server identity, ports, timezone and admin access.

Port values mirror the deployment environment and are shown for reference;
changing them takes a restart.  The service URLs are derived from the domain
and HTTPS port and recomputed on every init and save.
"""

from __future__ import annotations

import logging
from typing import Any

from ...core.contracts import ActionDescriptor, ActionHandler, Actor, BaseModule
from ...core.schema import FieldDescriptor, SelectOption, ValidationRules, section

logger = logging.getLogger(__name__)

DEFAULT_HTTPS_PORT = "443"
PORT_PATTERN = r"^\d{1,5}$"

TIMEZONE_OPTIONS = (
    ("UTC", "UTC"),
    ("America/New_York", "Eastern Time (US)"),
    ("America/Chicago", "Central Time (US)"),
    ("America/Denver", "Mountain Time (US)"),
    ("America/Los_Angeles", "Pacific Time (US)"),
    ("Europe/London", "London (UK)"),
    ("Europe/Paris", "Paris (Europe)"),
    ("Europe/Berlin", "Berlin (Europe)"),
    ("Asia/Tokyo", "Tokyo (Japan)"),
    ("Asia/Shanghai", "Shanghai (China)"),
    ("Asia/Singapore", "Singapore"),
    ("Asia/Dubai", "Dubai (UAE)"),
    ("Australia/Sydney", "Sydney (Australia)"),
)


def build_service_urls(domain: str | None, https_port: str | None) -> dict[str, str]:
    """Derive the public URLs; the port is omitted when it is the HTTPS default."""
    host = (domain or "").strip() or "localhost"
    port = str(https_port or "").strip() or DEFAULT_HTTPS_PORT
    base = f"https://{host}" if port == DEFAULT_HTTPS_PORT else f"https://{host}:{port}"
    return {
        "meshcentralUrl": base,
        "supportPageUrl": f"{base}/support",
        "adminDashboardUrl": f"{base}/admin-settings",
    }


class GeneralModule(BaseModule):
    """Core server settings shared by the other modules and the API layer."""

    name = "general"
    display_name = "General Settings"
    description = "Configure server domain, ports, and system settings"
    icon = "server"

    def get_default_settings(self) -> dict[str, Any]:
        app = self._app_settings
        return {
            "enabled": True,
            "serverName": "Remote Support",
            "serverDomain": app.server_domain,
            "serverIP": app.server_ip,
            "httpPort": app.http_port,
            "httpsPort": app.https_port,
            "adminPort": app.admin_port,
            "meshcentralUrl": "",
            "supportPageUrl": "",
            "adminDashboardUrl": "",
            "timezone": app.timezone,
            "adminAuthEnabled": False,
            "adminAuthSecret": "",
            "maintenanceMode": False,
            "maintenanceMessage": "System is under maintenance. Please try again later.",
        }

    async def init(self) -> None:
        await self._update_urls()
        await super().init()

    def get_schema(self) -> list[FieldDescriptor]:
        port_rules = ValidationRules(pattern=PORT_PATTERN, pattern_message="Port must be a number")
        return [
            FieldDescriptor(
                key="enabled",
                type="boolean",
                label="Enable General Settings",
                description="This module manages core server settings",
            ),
            section("section_server", "Server Information"),
            FieldDescriptor(
                key="serverName",
                type="text",
                label="Server Name",
                description="Display name for your support server",
                placeholder="Remote Support",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="serverDomain",
                type="text",
                label="Server Domain",
                description="Domain name or IP address for your server",
                placeholder="support.example.com or 192.168.1.100",
                required=True,
                validation=ValidationRules(
                    pattern=r"^\S+$", pattern_message="Server Domain must not contain spaces"
                ),
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="serverIP",
                type="text",
                label="Server IP (optional)",
                description="Public IP address if different from domain",
                placeholder="203.0.113.50",
                depends_on="enabled",
            ),
            section("section_ports", "Ports Configuration"),
            FieldDescriptor(
                key="httpPort",
                type="text",
                label="HTTP Port",
                description="Port for HTTP traffic (default: 80). Change in .env file and restart.",
                placeholder="80",
                validation=port_rules,
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="httpsPort",
                type="text",
                label="HTTPS Port",
                description="Port for HTTPS traffic (default: 443). Change in .env file and restart.",
                placeholder="443",
                validation=port_rules,
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="adminPort",
                type="text",
                label="Admin Dashboard Port",
                description="Internal port for admin API (default: 3001). Change in .env file and restart.",
                placeholder="3001",
                validation=port_rules,
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="portsNote",
                type="readonly",
                label="Note",
                value=(
                    "Port changes require editing .env file and running: "
                    "docker compose down && docker compose up -d"
                ),
                depends_on="enabled",
            ),
            section("section_urls", "Service URLs"),
            FieldDescriptor(
                key="meshcentralUrl",
                type="readonly",
                label="MeshCentral URL",
                description="Main admin interface",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="supportPageUrl",
                type="readonly",
                label="Support Page URL",
                description="Customer-facing support page",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="adminDashboardUrl",
                type="readonly",
                label="Admin Dashboard URL",
                description="This settings dashboard",
                depends_on="enabled",
            ),
            section("section_timezone", "Timezone"),
            FieldDescriptor(
                key="timezone",
                type="select",
                label="Server Timezone",
                description="Timezone for logs and notifications",
                options=[SelectOption(value=value, label=label) for value, label in TIMEZONE_OPTIONS],
                depends_on="enabled",
            ),
            section("section_security", "Admin Security"),
            FieldDescriptor(
                key="adminAuthEnabled",
                type="boolean",
                label="Enable Admin Authentication",
                description="Require API key to access admin dashboard",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="adminAuthSecret",
                type="password",
                label="Admin API Key",
                description="Secret key for admin API authentication",
                placeholder="Enter a secure random string",
                depends_on="adminAuthEnabled",
            ),
            section("section_maintenance", "Maintenance Mode"),
            FieldDescriptor(
                key="maintenanceMode",
                type="boolean",
                label="Enable Maintenance Mode",
                description="Show maintenance message to users (support page only)",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="maintenanceMessage",
                type="textarea",
                label="Maintenance Message",
                description="Message to display during maintenance",
                placeholder="System is under maintenance...",
                depends_on="maintenanceMode",
            ),
        ]

    def get_actions(self) -> list[ActionDescriptor]:
        return [
            ActionDescriptor(
                name="generateUrls",
                label="Regenerate URLs",
                icon="refresh",
                description="Recalculate service URLs based on current settings",
                admin_only=True,
            ),
            ActionDescriptor(
                name="testConnection",
                label="Test Connection",
                icon="play",
                description="Test if server is accessible at configured domain",
                admin_only=True,
            ),
            ActionDescriptor(
                name="showEnvConfig",
                label="Show .env Config",
                icon="list",
                description="Show environment configuration for .env file",
                admin_only=True,
            ),
        ]

    def action_handlers(self) -> dict[str, ActionHandler]:
        return {
            "generateUrls": self._action_generate_urls,
            "testConnection": self._action_test_connection,
            "showEnvConfig": self._action_show_env_config,
        }

    async def after_save(self, settings: dict[str, Any]) -> None:
        await self._update_urls()

    async def _update_urls(self) -> dict[str, str]:
        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            current.update(build_service_urls(current.get("serverDomain"), current.get("httpsPort")))
            return current

        saved = await self.settings.update(_apply)
        logger.debug("Service URLs set to %s", saved.get("meshcentralUrl"))
        return {key: saved[key] for key in ("meshcentralUrl", "supportPageUrl", "adminDashboardUrl")}

    def admin_secret(self) -> str | None:
        """Admin API key when admin authentication is switched on."""
        settings = self.get_settings()
        if not settings.get("adminAuthEnabled"):
            return None
        return str(settings.get("adminAuthSecret") or "") or None

    def get_public_config(self) -> dict[str, Any]:
        settings = self.get_settings()
        return {
            "serverName": settings.get("serverName"),
            "serverDomain": settings.get("serverDomain"),
            "serverIP": settings.get("serverIP"),
            "timezone": settings.get("timezone"),
            "maintenanceMode": settings.get("maintenanceMode", False),
            "maintenanceMessage": settings.get("maintenanceMessage"),
            "urls": {
                "meshcentral": settings.get("meshcentralUrl"),
                "support": settings.get("supportPageUrl"),
                "admin": settings.get("adminDashboardUrl"),
            },
        }

    async def _action_generate_urls(
        self, params: dict[str, Any], actor: Actor | None
    ) -> dict[str, Any]:
        urls = await self._update_urls()
        return {
            "success": True,
            "message": "URLs regenerated",
            "urls": {
                "meshcentral": urls["meshcentralUrl"],
                "support": urls["supportPageUrl"],
                "admin": urls["adminDashboardUrl"],
            },
        }

    async def _action_test_connection(
        self, params: dict[str, Any], actor: Actor | None
    ) -> dict[str, Any]:
        # Only checks the configuration; reachability is not tested from inside the container.
        settings = self.get_settings()
        domain = str(settings.get("serverDomain") or "")
        port = str(settings.get("httpsPort") or "")
        issues: list[str] = []
        if not domain or domain == "localhost":
            issues.append("Server domain is not configured (still using localhost)")
        if " " in domain:
            issues.append("Server domain contains spaces")
        if port and not port.isdigit():
            issues.append("HTTPS port is not a valid number")
        if issues:
            return {"success": False, "message": "Configuration issues found", "issues": issues}
        base = build_service_urls(domain, port)["meshcentralUrl"]
        return {
            "success": True,
            "message": f"Configuration looks valid. Server should be accessible at {base}",
        }

    async def _action_show_env_config(
        self, params: dict[str, Any], actor: Actor | None
    ) -> dict[str, Any]:
        settings = self.get_settings()
        admin_secret = settings.get("adminAuthSecret", "") if settings.get("adminAuthEnabled") else ""
        lines = [
            "# Server Configuration",
            f"SERVER_DOMAIN={settings.get('serverDomain', '')}",
            f"SERVER_IP={settings.get('serverIP') or ''}",
            "",
            "# Ports",
            f"NGINX_HTTP_PORT={settings.get('httpPort', '')}",
            f"NGINX_HTTPS_PORT={settings.get('httpsPort', '')}",
            f"ADMIN_PORT={settings.get('adminPort', '')}",
            "",
            "# Timezone",
            f"TZ={settings.get('timezone', '')}",
            "",
            "# Admin Authentication",
            f"ADMIN_AUTH_SECRET={admin_secret}",
        ]
        return {
            "success": True,
            "message": "Copy this to your .env file and restart services",
            "config": "\n".join(lines),
        }


__all__ = ["GeneralModule", "build_service_urls"]
