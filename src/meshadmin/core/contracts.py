"""
Contracts shared by every feature module.

A module is a self-contained feature (Telegram notifications, branding, ...)
that owns exactly one namespace in the settings document.  ``BaseModule``
defines the capability set the registry relies on; settings access and
validation are composed in through ``ModuleSettings`` and the free functions
in ``validation`` rather than inherited behavior.
"""

from __future__ import annotations

import abc
import datetime as dt
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ActionError, SettingsValidationError
from .schema import FieldDescriptor
from .validation import ValidationIssue, validate_settings

if TYPE_CHECKING:
    from .config import AppSettings
    from .store import SettingsStore


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ActionDescriptor(_ApiModel):
    """Named operation a user can trigger on a module."""

    name: str
    label: str
    icon: str = "play"
    confirm: str | None = Field(
        default=None, description="Prompt the caller must confirm before invoking the action."
    )
    description: str | None = None
    admin_only: bool = False


class Actor(BaseModel):
    """Who triggered an action; ``None`` means an internal caller."""

    model_config = ConfigDict(frozen=True)

    id: str = "system"
    name: str = "system"
    is_admin: bool = True


class DeliveryResult(_ApiModel):
    """Outcome of one delivery attempt to one recipient."""

    recipient: str
    success: bool
    error: str | None = None


class EventResult(_ApiModel):
    """Aggregate outcome of ``handle_event``; suppression is not an error."""

    handled: bool
    reason: str | None = None
    event_type: str | None = None
    results: list[DeliveryResult] | None = None
    error: str | None = None

    @classmethod
    def suppressed(cls, reason: str) -> EventResult:
        return cls(handled=False, reason=reason)

    @classmethod
    def failed(cls, message: str) -> EventResult:
        return cls(handled=False, error=message)


class CanonicalEvent(_ApiModel):
    """Normalized platform event delivered to subscribed modules."""

    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookEndpoint(_ApiModel):
    """Outgoing webhook target configured by the user."""

    name: str = ""
    url: str
    events: list[str] = Field(default_factory=list)
    secret: str | None = None
    enabled: bool = True

    def wants(self, event_type: str) -> bool:
        return self.enabled and event_type in self.events

    @property
    def label(self) -> str:
        return self.name or self.url


class ModuleInfo(_ApiModel):
    """List-view metadata for a module; never includes settings values."""

    name: str
    display_name: str
    description: str
    icon: str
    enabled: bool
    has_actions: bool
    handles_events: bool


ActionHandler = Callable[[dict[str, Any], Actor | None], Awaitable[Any]]


def utc_timestamp() -> str:
    return dt.datetime.now(tz=dt.UTC).isoformat().replace("+00:00", "Z")


class ModuleSettings:
    """Namespace-scoped view of the settings store owned by one module."""

    def __init__(self, store: SettingsStore, namespace: str) -> None:
        self._store = store
        self._namespace = namespace

    @property
    def namespace(self) -> str:
        return self._namespace

    def get_all(self) -> dict[str, Any]:
        return self._store.get_module_settings(self._namespace)

    def get(self, key: str, default: Any = None) -> Any:
        return self.get_all().get(key, default)

    async def update(
        self, mutator: Callable[[dict[str, Any]], Any | Awaitable[Any]]
    ) -> dict[str, Any]:
        """Read-modify-write the whole namespace under its lock."""

        def _ensure_object(current: Any) -> Any:
            return mutator(current if isinstance(current, dict) else {})

        return await self._store.update(self._namespace, _ensure_object, default={})

    async def merge(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Shallow-merge ``changes`` over the stored namespace."""
        return await self.update(lambda current: {**current, **changes})


class BaseModule(abc.ABC):
    """
    Capability set every feature module implements.

    Lifecycle: the registry registers ``get_default_settings()`` with the
    store, awaits ``init()`` and then serves settings, actions and events for
    the rest of the process.  ``init`` must be idempotent so a reload can run
    it again.
    """

    name: ClassVar[str]
    display_name: ClassVar[str]
    description: ClassVar[str] = ""
    icon: ClassVar[str] = "settings"

    def __init__(self, store: SettingsStore, app_settings: AppSettings) -> None:
        self._store = store
        self._app_settings = app_settings
        self.settings = ModuleSettings(store, self.name)
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """Run process-wide side effects; subclasses call ``super().init()``."""
        self._initialized = True

    @abc.abstractmethod
    def get_default_settings(self) -> dict[str, Any]:
        """Default namespace contents merged into the store on registration."""

    @abc.abstractmethod
    def get_schema(self) -> list[FieldDescriptor]:
        """Ordered field descriptors rendered as the settings form."""

    def get_actions(self) -> list[ActionDescriptor]:
        return []

    def action_handlers(self) -> dict[str, ActionHandler]:
        """Explicit action name to coroutine mapping; must match ``get_actions``."""
        return {}

    def get_handled_events(self) -> tuple[str, ...]:
        return ()

    def handles_event(self, event_type: str) -> bool:
        return event_type in self.get_handled_events()

    def is_enabled(self) -> bool:
        return bool(self.settings.get("enabled", False))

    def get_settings(self) -> dict[str, Any]:
        return self.settings.get_all()

    def validate_settings(self, candidate: Mapping[str, Any]) -> list[ValidationIssue]:
        return validate_settings(self.get_schema(), candidate)

    async def save_settings(self, candidate: Mapping[str, Any]) -> dict[str, Any]:
        """
        Validate and persist ``candidate`` shallow-merged over current settings.

        The merged view is validated inside the namespace lock; any issue
        rejects the whole save with ``SettingsValidationError``.
        """

        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            merged = {**current, **candidate}
            issues = self.validate_settings(merged)
            if issues:
                raise SettingsValidationError(issues)
            return merged

        saved = await self.settings.update(_apply)
        await self.after_save(saved)
        return self.get_settings()

    async def after_save(self, settings: dict[str, Any]) -> None:
        """Hook for modules that derive state from their settings."""
        return None

    async def execute_action(
        self, name: str, params: Mapping[str, Any] | None = None, actor: Actor | None = None
    ) -> Any:
        handler = self.action_handlers().get(name)
        if handler is None:
            raise ActionError(f"Unknown action: {name}")
        descriptor = next((item for item in self.get_actions() if item.name == name), None)
        if descriptor is not None and descriptor.admin_only and actor is not None:
            if not actor.is_admin:
                raise ActionError(f"Action {name} requires admin privileges")
        return await handler(dict(params or {}), actor)

    async def handle_event(self, event_type: str, payload: dict[str, Any]) -> EventResult:
        return EventResult.suppressed("Event not handled")

    def describe(self) -> ModuleInfo:
        return ModuleInfo(
            name=self.name,
            display_name=self.display_name,
            description=self.description,
            icon=self.icon,
            enabled=self.is_enabled(),
            has_actions=bool(self.get_actions()),
            handles_events=bool(self.get_handled_events()),
        )


__all__ = [
    "ActionDescriptor",
    "ActionHandler",
    "Actor",
    "BaseModule",
    "CanonicalEvent",
    "DeliveryResult",
    "EventResult",
    "ModuleInfo",
    "ModuleSettings",
    "ValidationIssue",
    "WebhookEndpoint",
    "utc_timestamp",
]
