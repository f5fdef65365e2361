"""
Exception hierarchy shared by the store, the module contract and the registry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .validation import ValidationIssue


class MeshAdminError(RuntimeError):
    """Base class for all meshadmin errors."""


class ConfigError(MeshAdminError):
    """Raised when configuration or a settings document is missing or invalid."""


class StoreNotInitializedError(ConfigError):
    """Raised when the settings store is used before ``init()`` completed."""

    def __init__(self) -> None:
        super().__init__("Settings store not initialized. Call init() first.")


class SettingsValidationError(MeshAdminError):
    """Raised when a settings candidate fails validation; carries every issue."""

    def __init__(self, issues: list[ValidationIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues)
        super().__init__(f"Validation failed: {summary}")


class ModuleLoadError(MeshAdminError):
    """Raised when a module cannot be instantiated, registered or initialized."""


class ModuleNotFoundInRegistryError(MeshAdminError, KeyError):
    """Raised when looking up a module that is not loaded."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Module not found: {name}")

    def __str__(self) -> str:
        return self.args[0]


class ActionError(MeshAdminError):
    """Raised when an action is unknown, unsupported or cannot be performed."""


class WebhookRejectedError(MeshAdminError):
    """Raised when an inbound webhook fails authentication or parsing."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        self.status_code = status_code
        super().__init__(message)


__all__ = [
    "ActionError",
    "ConfigError",
    "MeshAdminError",
    "ModuleLoadError",
    "ModuleNotFoundInRegistryError",
    "SettingsValidationError",
    "StoreNotInitializedError",
    "WebhookRejectedError",
]
