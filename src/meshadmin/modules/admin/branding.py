"""
Branding module: colours, logo and page text injected into MeshCentral.

When enabled, ``custom.css``, ``custom.js`` and ``inject.html`` are generated
into the branding directory served to MeshCentral under ``/custom/``; turning
branding off removes them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ...core.contracts import ActionDescriptor, ActionHandler, Actor, BaseModule
from ...core.schema import FieldDescriptor, ValidationRules, section

logger = logging.getLogger(__name__)

GENERATED_FILES = ("custom.css", "custom.js", "inject.html")
INJECTION_SNIPPET = (
    "<!-- Custom Branding -->\n"
    '<link rel="stylesheet" href="/custom/custom.css">\n'
    '<script src="/custom/custom.js"></script>\n'
)
COLOR_RULES = ValidationRules(
    pattern=r"^#(?:[0-9a-fA-F]{3}){1,2}$", pattern_message="Colour must be a hex value like #1a2b3c"
)
TEXT_FIELDS = (
    "companyName",
    "pageTitle",
    "logoUrl",
    "faviconUrl",
    "loginBackground",
    "welcomeMessage",
    "footerText",
    "customCss",
)
PUBLIC_FIELDS = (
    "companyName",
    "pageTitle",
    "logoUrl",
    "faviconUrl",
    "primaryColor",
    "headerColor",
    "headerTextColor",
    "welcomeMessage",
    "footerText",
)


def _css_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def generate_css(settings: Mapping[str, Any]) -> str:
    primary = settings.get("primaryColor") or "#007bff"
    header_bg = settings.get("headerColor") or "#2c3e50"
    header_text = settings.get("headerTextColor") or "#ffffff"
    css = [
        ":root {",
        f"  --brand-primary: {primary};",
        f"  --brand-header-bg: {header_bg};",
        f"  --brand-header-text: {header_text};",
        "}",
        "",
        "#MainHeader, #mainHeader, .header, header {",
        "  background-color: var(--brand-header-bg) !important;",
        "  color: var(--brand-header-text) !important;",
        "}",
        "",
        "#MainHeader *, #mainHeader *, .header *, header * {",
        "  color: var(--brand-header-text) !important;",
        "}",
        "",
        "a, .btn-primary, button.primary {",
        "  color: var(--brand-primary);",
        "}",
        "",
        '.btn-primary, button.primary, input[type="submit"] {',
        "  background-color: var(--brand-primary) !important;",
        "  border-color: var(--brand-primary) !important;",
        "}",
        "",
    ]
    logo_url = settings.get("logoUrl")
    if logo_url:
        css += [
            "/* Custom Logo */",
            "#MainHeaderLogo, #mainHeaderLogo, .logo img, header img.logo {",
            f"  content: url({_css_string(logo_url)}) !important;",
            "  max-height: 40px !important;",
            "  width: auto !important;",
            "}",
            "",
        ]
    if settings.get("hideBuiltInLogo"):
        css += [
            "/* Hide default MeshCentral branding */",
            '.meshcentralLogo, #MeshCentralLogo, img[src*="meshcentral"] {',
            "  display: none !important;",
            "}",
            "",
        ]
    background = settings.get("loginBackground")
    if background:
        css += ["/* Login page background */", "#loginPanel, .loginPanel, body.login, #loginpanel {"]
        if background.startswith(("http", "/")):
            css += [
                f"  background-image: url({_css_string(background)}) !important;",
                "  background-size: cover !important;",
                "  background-position: center !important;",
            ]
        else:
            css.append(f"  background: {background} !important;")
        css += ["}", ""]
    footer = settings.get("footerText")
    if footer:
        css += [
            "/* Footer */",
            "#footer::after, .footer::after {",
            f"  content: {_css_string(footer)};",
            "  display: block;",
            "  text-align: center;",
            "  padding: 10px;",
            "  color: #666;",
            "}",
            "",
        ]
    custom = settings.get("customCss")
    if custom:
        css += ["/* Custom CSS */", custom, ""]
    return "\n".join(css)


def generate_js(settings: Mapping[str, Any]) -> str:
    """Script applying title, favicon and text replacements once the page is ready."""
    body: list[str] = []
    if settings.get("pageTitle"):
        body.append(f"    document.title = {json.dumps(settings['pageTitle'])};")
    if settings.get("faviconUrl"):
        body += [
            '    var favicon = document.querySelector("link[rel*=\\"icon\\"]") || document.createElement("link");',
            '    favicon.type = "image/x-icon";',
            '    favicon.rel = "shortcut icon";',
            f"    favicon.href = {json.dumps(settings['faviconUrl'])};",
            "    document.head.appendChild(favicon);",
        ]
    if settings.get("welcomeMessage"):
        body += [
            '    var loginTitle = document.querySelector("#loginpanel h1, #loginPanel h1, .login-title");',
            "    if (loginTitle) {",
            f"      loginTitle.textContent = {json.dumps(settings['welcomeMessage'])};",
            "    }",
        ]
    if settings.get("companyName"):
        body += [
            '    var headerTitle = document.querySelector("#MainHeaderTitle, #mainHeaderTitle, .header-title");',
            "    if (headerTitle) {",
            f"      headerTitle.textContent = {json.dumps(settings['companyName'])};",
            "    }",
        ]
    js = [
        "// Custom Branding Script",
        "(function() {",
        '  "use strict";',
        "",
        "  function applyBranding() {",
        *body,
        "  }",
        "",
        '  if (document.readyState === "loading") {',
        '    document.addEventListener("DOMContentLoaded", applyBranding);',
        "  } else {",
        "    applyBranding();",
        "  }",
        "",
        "  // Single-page navigation re-renders the header.",
        "  setTimeout(applyBranding, 500);",
        "  setTimeout(applyBranding, 1500);",
        "})();",
    ]
    return "\n".join(js)


class BrandingModule(BaseModule):
    """Generate MeshCentral customization assets from the branding settings."""

    name = "branding"
    display_name = "Branding & Customization"
    description = "Customize the look and feel of MeshCentral"
    icon = "palette"

    @property
    def output_dir(self) -> Path:
        return self._app_settings.branding_path

    def get_default_settings(self) -> dict[str, Any]:
        return {
            "enabled": False,
            "companyName": "",
            "pageTitle": "",
            "logoUrl": "",
            "faviconUrl": "",
            "primaryColor": "#007bff",
            "headerColor": "#2c3e50",
            "headerTextColor": "#ffffff",
            "loginBackground": "",
            "welcomeMessage": "",
            "footerText": "",
            "customCss": "",
            "hideBuiltInLogo": True,
        }

    async def init(self) -> None:
        await asyncio.to_thread(self.output_dir.mkdir, parents=True, exist_ok=True)
        await super().init()

    def get_schema(self) -> list[FieldDescriptor]:
        return [
            FieldDescriptor(key="enabled", type="boolean", label="Enable Custom Branding"),
            section("section_identity", "Identity"),
            FieldDescriptor(
                key="companyName",
                type="text",
                label="Company Name",
                placeholder="My Company",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="pageTitle",
                type="text",
                label="Page Title",
                placeholder="Remote Support Portal",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="logoUrl",
                type="text",
                label="Logo URL",
                description="URL to your logo image (recommended: 200x50px)",
                placeholder="https://example.com/logo.png",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="faviconUrl",
                type="text",
                label="Favicon URL",
                description="URL to favicon (32x32 or 16x16 ICO/PNG)",
                placeholder="https://example.com/favicon.ico",
                depends_on="enabled",
            ),
            section("section_colors", "Colours"),
            FieldDescriptor(
                key="primaryColor",
                type="color",
                label="Primary Color",
                description="Main theme color",
                default="#007bff",
                validation=COLOR_RULES,
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="headerColor",
                type="color",
                label="Header Background Color",
                default="#2c3e50",
                validation=COLOR_RULES,
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="headerTextColor",
                type="color",
                label="Header Text Color",
                default="#ffffff",
                validation=COLOR_RULES,
                depends_on="enabled",
            ),
            section("section_pages", "Pages"),
            FieldDescriptor(
                key="loginBackground",
                type="text",
                label="Login Page Background",
                description="URL to background image or CSS color",
                placeholder="#f5f5f5 or https://example.com/bg.jpg",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="welcomeMessage",
                type="text",
                label="Welcome Message",
                description="Shown on login page",
                placeholder="Welcome to our support portal",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="footerText",
                type="text",
                label="Footer Text",
                placeholder="(c) My Company",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="customCss",
                type="textarea",
                label="Custom CSS",
                description="Additional CSS to inject",
                placeholder="/* Custom styles */",
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="hideBuiltInLogo",
                type="boolean",
                label="Hide MeshCentral Logo",
                default=True,
                depends_on="enabled",
            ),
        ]

    def get_actions(self) -> list[ActionDescriptor]:
        return [
            ActionDescriptor(name="apply", label="Apply Branding", icon="check", admin_only=True),
            ActionDescriptor(
                name="reset",
                label="Reset to Default",
                icon="refresh",
                confirm="Reset all branding settings to defaults?",
                admin_only=True,
            ),
            ActionDescriptor(name="preview", label="Preview CSS", icon="eye", admin_only=True),
        ]

    def action_handlers(self) -> dict[str, ActionHandler]:
        return {
            "apply": self._action_apply,
            "reset": self._action_reset,
            "preview": self._action_preview,
        }

    async def save_settings(self, candidate: Mapping[str, Any]) -> dict[str, Any]:
        cleaned = dict(candidate)
        for key in TEXT_FIELDS:
            if isinstance(cleaned.get(key), str):
                cleaned[key] = cleaned[key].strip()
        return await super().save_settings(cleaned)

    async def after_save(self, settings: dict[str, Any]) -> None:
        await self.apply_branding()

    def get_branding_data(self) -> dict[str, Any]:
        """Public subset of the branding settings; empty while branding is off."""
        settings = self.get_settings()
        if not settings.get("enabled"):
            return {}
        return {key: settings.get(key) for key in PUBLIC_FIELDS}

    async def apply_branding(self) -> dict[str, Any]:
        settings = self.get_settings()
        if not settings.get("enabled"):
            await self.remove_branding()
            return {"success": True, "message": "Branding disabled"}
        contents = {
            "custom.css": generate_css(settings),
            "custom.js": generate_js(settings),
            "inject.html": INJECTION_SNIPPET,
        }
        await asyncio.to_thread(self._write_files, contents)
        logger.info("Branding files generated in %s", self.output_dir)
        return {
            "success": True,
            "message": "Branding applied successfully",
            "files": list(GENERATED_FILES),
        }

    async def remove_branding(self) -> None:
        await asyncio.to_thread(self._remove_files)

    def _write_files(self, contents: Mapping[str, str]) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        for filename, text in contents.items():
            (self.output_dir / filename).write_text(text, encoding="utf-8")

    def _remove_files(self) -> None:
        for filename in GENERATED_FILES:
            (self.output_dir / filename).unlink(missing_ok=True)

    async def _action_apply(self, params: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        return await self.apply_branding()

    async def _action_reset(self, params: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        await self._store.delete_module_settings(self.name)
        await self.remove_branding()
        return {"success": True, "message": "Branding reset to defaults"}

    async def _action_preview(self, params: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        settings = self.get_settings()
        return {"success": True, "css": generate_css(settings), "js": generate_js(settings)}


__all__ = ["BrandingModule", "GENERATED_FILES", "generate_css", "generate_js"]
