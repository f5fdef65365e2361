"""
In-process module registry.

Modules are loaded from a fixed, ordered factory table.  Each load registers
the module defaults with the settings store, runs ``init`` and keeps the
instance keyed by name.  A module that fails to load is reported and left
out; the others keep working.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .config import AppSettings
from .contracts import Actor, BaseModule, EventResult, ModuleInfo
from .errors import ActionError, ModuleLoadError, ModuleNotFoundInRegistryError
from .schema import dump_schema
from .store import SettingsStore

logger = logging.getLogger(__name__)

ModuleFactory = Callable[[SettingsStore, AppSettings], BaseModule]


@dataclass(slots=True)
class LoadReport:
    """Outcome of ``load_all``: loaded names in order plus per-module failures."""

    loaded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def check_action_table(module: BaseModule) -> None:
    """Ensure declared actions and handler table agree exactly."""
    declared = {action.name for action in module.get_actions()}
    handlers = set(module.action_handlers())
    missing = sorted(declared - handlers)
    extra = sorted(handlers - declared)
    if missing or extra:
        raise ModuleLoadError(
            f"Module {module.name} action table mismatch "
            f"(no handler for {missing or '-'}, undeclared handlers {extra or '-'})"
        )


def _default_factories() -> dict[str, ModuleFactory]:
    from ..modules import MODULE_FACTORIES

    return dict(MODULE_FACTORIES)


class ModuleRegistry:
    """Owns the loaded module instances and routes settings, actions and events."""

    def __init__(
        self,
        store: SettingsStore,
        app_settings: AppSettings,
        *,
        factories: Mapping[str, ModuleFactory] | None = None,
    ) -> None:
        self._store = store
        self._app_settings = app_settings
        self._factories: dict[str, ModuleFactory] = (
            dict(factories) if factories is not None else _default_factories()
        )
        self._modules: dict[str, BaseModule] = {}

    @property
    def available(self) -> Sequence[str]:
        return tuple(self._factories)

    @property
    def names(self) -> list[str]:
        return list(self._modules)

    async def load_all(self) -> LoadReport:
        report = LoadReport()
        for name in self._factories:
            try:
                await self.load(name)
            except Exception as exc:
                logger.exception("Failed to load module %s", name)
                report.failed[name] = str(exc) or exc.__class__.__name__
            else:
                report.loaded.append(name)
        logger.info(
            "Loaded %d module(s): %s%s",
            len(report.loaded),
            ", ".join(report.loaded) or "-",
            f" (failed: {', '.join(report.failed)})" if report.failed else "",
        )
        return report

    async def load(self, name: str) -> BaseModule:
        """Instantiate, register defaults, initialize and store ``name``; replaces any prior instance."""
        factory = self._factories.get(name)
        if factory is None:
            raise ModuleLoadError(f"Unknown module: {name}")
        module = factory(self._store, self._app_settings)
        if module.name != name:
            raise ModuleLoadError(f"Factory for {name} produced module named {module.name}")
        check_action_table(module)
        await self._store.register_module(name, module.get_default_settings())
        await module.init()
        self._modules[name] = module
        logger.debug("Module %s active", name)
        return module

    async def reload(self, name: str) -> BaseModule:
        return await self.load(name)

    def has(self, name: str) -> bool:
        return name in self._modules

    def get(self, name: str) -> BaseModule:
        try:
            return self._modules[name]
        except KeyError:
            raise ModuleNotFoundInRegistryError(name) from None

    def get_module_list(self) -> list[ModuleInfo]:
        return [module.describe() for module in self._modules.values()]

    def get_module_detail(self, name: str) -> dict[str, Any]:
        module = self.get(name)
        info = module.describe().to_api()
        info.update(
            schema=dump_schema(module.get_schema()),
            settings=module.get_settings(),
            actions=[action.to_api() for action in module.get_actions()],
            handledEvents=list(module.get_handled_events()),
        )
        return info

    async def save_settings(self, name: str, candidate: Mapping[str, Any]) -> dict[str, Any]:
        return await self.get(name).save_settings(candidate)

    async def execute_action(
        self,
        module_name: str,
        action: str,
        params: Mapping[str, Any] | None = None,
        actor: Actor | None = None,
    ) -> Any:
        module = self.get(module_name)
        if not module.get_actions():
            raise ActionError(f"Module {module_name} does not support actions")
        return await module.execute_action(action, params, actor)

    async def handle_webhook(
        self, event_type: str, payload: dict[str, Any]
    ) -> dict[str, EventResult]:
        """
        Deliver one canonical event to every enabled module subscribed to it.

        Each module runs in isolation: an exception is captured into that
        module's slot and the remaining modules still receive the event.
        """
        results: dict[str, EventResult] = {}
        for name, module in self._modules.items():
            if not module.handles_event(event_type):
                continue
            try:
                if not module.is_enabled():
                    logger.debug("Module %s disabled; skipping %s", name, event_type)
                    continue
                results[name] = await module.handle_event(event_type, copy.deepcopy(payload))
            except Exception as exc:
                logger.exception("Module %s failed handling %s", name, event_type)
                results[name] = EventResult.failed(str(exc) or exc.__class__.__name__)
        return results


__all__ = ["LoadReport", "ModuleFactory", "ModuleRegistry", "check_action_table"]
