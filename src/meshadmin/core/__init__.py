"""
Core infrastructure: settings store, module contract, registry and webhook
event normalization.
"""

from .config import AppSettings, load_app_settings
from .contracts import (
    ActionDescriptor,
    Actor,
    BaseModule,
    CanonicalEvent,
    DeliveryResult,
    EventResult,
    ModuleInfo,
    ModuleSettings,
    WebhookEndpoint,
)
from .errors import (
    ActionError,
    ConfigError,
    MeshAdminError,
    ModuleLoadError,
    ModuleNotFoundInRegistryError,
    SettingsValidationError,
    StoreNotInitializedError,
    WebhookRejectedError,
)
from .events import EventNormalizer
from .registry import LoadReport, ModuleRegistry
from .schema import FieldDescriptor, convert_object_schema
from .store import SettingsStore, deep_merge
from .validation import ValidationIssue, validate_settings

__all__ = [
    "ActionDescriptor",
    "ActionError",
    "Actor",
    "AppSettings",
    "BaseModule",
    "CanonicalEvent",
    "ConfigError",
    "DeliveryResult",
    "EventNormalizer",
    "EventResult",
    "FieldDescriptor",
    "LoadReport",
    "MeshAdminError",
    "ModuleInfo",
    "ModuleLoadError",
    "ModuleNotFoundInRegistryError",
    "ModuleRegistry",
    "ModuleSettings",
    "SettingsStore",
    "SettingsValidationError",
    "StoreNotInitializedError",
    "ValidationIssue",
    "WebhookEndpoint",
    "WebhookRejectedError",
    "convert_object_schema",
    "deep_merge",
    "load_app_settings",
    "validate_settings",
]
