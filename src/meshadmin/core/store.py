"""
Durable settings document shared by every module.

The store owns a single JSON document on disk.  Reads are served from memory,
every write replaces the file atomically (temp file + rename), and module
defaults are deep-merged into the document so new fields appear without
clobbering user customizations.
"""

from __future__ import annotations

import asyncio
import copy
import datetime as dt
import inspect
import json
import logging
import os
from collections import defaultdict
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from .errors import ConfigError, StoreNotInitializedError

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"
TEMP_SUFFIX = ".tmp"
DOCUMENT_VERSION = "2.0.0"
LEGACY_MODULES_KEY = "modules"

DEFAULT_SETTINGS: dict[str, Any] = {
    "_version": DOCUMENT_VERSION,
    "_lastModified": None,
    "general": {
        "siteName": "Remote Support",
        "siteDescription": "Secure Remote Access Portal",
        "adminEmail": "",
        "timezone": "UTC",
    },
}

Mutator = Callable[[Any], Any | Awaitable[Any]]

_MISSING = object()


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """
    Recursively merge ``updates`` onto ``base`` without mutating either.

    Values from ``updates`` win per leaf.  Recursion only happens when both
    sides hold a mapping; lists, scalars and ``None`` replace the base value
    outright and lists are never merged element-wise.
    """
    result: dict[str, Any] = copy.deepcopy(base)
    for key, value in updates.items():
        if _is_object(value) and _is_object(result.get(key)):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _utc_now() -> str:
    return dt.datetime.now(tz=dt.UTC).isoformat().replace("+00:00", "Z")


def _namespace_of(key: str) -> str:
    return key.split(".", 1)[0]


class SettingsStore:
    """
    Async facade over the persisted settings document.

    ``get`` resolves a key in three tiers: a direct top-level key, then the
    legacy ``modules.<key>`` sub-tree, then a full dot-path traversal.  Callers
    may use either addressing style.
    """

    def __init__(self, data_path: str | Path, *, filename: str = SETTINGS_FILENAME) -> None:
        self._dir = Path(data_path)
        self._path = self._dir / filename
        self._temp_path = self._dir / f"{filename}{TEMP_SUFFIX}"
        self._data: dict[str, Any] | None = None
        self._module_defaults: dict[str, dict[str, Any]] = {}
        self._save_lock = asyncio.Lock()
        self._namespace_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def temp_path(self) -> Path:
        return self._temp_path

    @property
    def initialized(self) -> bool:
        return self._data is not None

    async def init(self) -> None:
        """
        Load the document from disk or seed it with built-in defaults.

        Only a missing file is treated as "first start".  Any other failure to
        read or parse the document is fatal and raised as ``ConfigError``.
        """
        if self._data is not None:
            return
        try:
            await asyncio.to_thread(self._dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(self._temp_path.unlink, missing_ok=True)
        except OSError as exc:
            raise ConfigError(f"Unable to prepare settings directory {self._dir}: {exc}") from exc

        try:
            raw = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except FileNotFoundError:
            self._data = copy.deepcopy(DEFAULT_SETTINGS)
            self._data["_lastModified"] = _utc_now()
            await self._save()
            logger.info("Created settings document with defaults at %s", self._path)
            return
        except OSError as exc:
            raise ConfigError(f"Unable to read settings file {self._path}: {exc}") from exc

        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Settings file {self._path} is not valid JSON: {exc}") from exc
        if not _is_object(loaded):
            raise ConfigError(f"Settings file {self._path} must contain a JSON object.")

        self._data = deep_merge(DEFAULT_SETTINGS, loaded)
        logger.info("Loaded settings document from %s", self._path)

    def _require(self) -> dict[str, Any]:
        if self._data is None:
            raise StoreNotInitializedError()
        return self._data

    def _lookup(self, data: dict[str, Any], key: str) -> Any:
        if key in data:
            return data[key]
        legacy = data.get(LEGACY_MODULES_KEY)
        if _is_object(legacy) and key in legacy:
            return legacy[key]
        node: Any = data
        for part in key.split("."):
            if not _is_object(node) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve ``key`` (direct, legacy ``modules.<key>``, dot path) or return ``default``."""
        value = self._lookup(self._require(), key)
        if value is _MISSING:
            return default
        return copy.deepcopy(value)

    def get_all(self) -> dict[str, Any]:
        return copy.deepcopy(self._require())

    def has(self, key: str) -> bool:
        return self._lookup(self._require(), key) is not _MISSING

    def keys(self) -> list[str]:
        """Top-level keys excluding the ``_``-prefixed meta fields."""
        return [key for key in self._require() if not key.startswith("_")]

    def _assign(self, data: dict[str, Any], key: str, value: Any) -> None:
        if "." not in key:
            data[key] = copy.deepcopy(value)
            return
        *parents, leaf = key.split(".")
        node = data
        for part in parents:
            child = node.get(part)
            if not _is_object(child):
                child = {}
                node[part] = child
            node = child
        node[leaf] = copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        """
        Write ``value`` at ``key`` and persist.

        Dot paths create intermediate objects; a plain key replaces the
        top-level value wholesale.
        """
        data = self._require()
        self._assign(data, key, value)
        data["_lastModified"] = _utc_now()
        await self._save()

    async def delete(self, key: str) -> bool:
        """Remove ``key`` (direct, legacy or dot path); returns whether anything changed."""
        data = self._require()
        removed = False
        if key in data:
            del data[key]
            removed = True
        else:
            legacy = data.get(LEGACY_MODULES_KEY)
            if _is_object(legacy) and key in legacy:
                del legacy[key]
                removed = True
            elif "." in key:
                *parents, leaf = key.split(".")
                node: Any = data
                for part in parents:
                    node = node.get(part) if _is_object(node) else None
                if _is_object(node) and leaf in node:
                    del node[leaf]
                    removed = True
        if removed:
            data["_lastModified"] = _utc_now()
            await self._save()
        return removed

    def lock_for(self, key: str) -> asyncio.Lock:
        """Return the lock serializing read-modify-write cycles on ``key``'s namespace."""
        return self._namespace_locks[_namespace_of(key)]

    async def update(self, key: str, mutator: Mutator, *, default: Any = None) -> Any:
        """
        Run a read-modify-write cycle on ``key`` under its namespace lock.

        ``mutator`` receives a private copy of the current value (or
        ``default``) and returns the new value; returning ``None`` keeps the
        mutated copy.  Exceptions raised by the mutator abort the write.
        """
        async with self.lock_for(key):
            current = self.get(key, copy.deepcopy(default))
            result = mutator(current)
            if inspect.isawaitable(result):
                result = await result
            new_value = current if result is None else result
            await self.set(key, new_value)
            return copy.deepcopy(new_value)

    def get_module_settings(self, name: str) -> dict[str, Any]:
        value = self.get(name, {})
        return value if _is_object(value) else {}

    async def save_module_settings(self, name: str, settings: dict[str, Any]) -> None:
        await self.set(name, settings)

    async def register_module(self, name: str, defaults: dict[str, Any]) -> dict[str, Any]:
        """
        Merge ``defaults`` under the module namespace ``name``.

        Missing or empty namespaces receive the defaults verbatim; otherwise
        stored values win and only absent keys are filled in.
        """
        async with self.lock_for(name):
            data = self._require()
            self._module_defaults[name] = copy.deepcopy(defaults)
            existing = self._lookup(data, name)
            if existing is _MISSING or not existing:
                merged = copy.deepcopy(defaults)
            elif _is_object(existing):
                merged = deep_merge(defaults, existing)
            else:
                logger.warning(
                    "Settings for module %s are not an object (%r); resetting to defaults.",
                    name,
                    type(existing).__name__,
                )
                merged = copy.deepcopy(defaults)
            if data.get(name, _MISSING) != merged:
                await self.set(name, merged)
            return copy.deepcopy(merged)

    def registered_defaults(self, name: str) -> dict[str, Any] | None:
        defaults = self._module_defaults.get(name)
        return copy.deepcopy(defaults) if defaults is not None else None

    async def delete_module_settings(self, name: str) -> None:
        """
        Drop the namespace ``name`` from both the direct and legacy locations.

        A module that is still registered falls back to its defaults so the
        document keeps every registered default key.
        """
        async with self.lock_for(name):
            data = self._require()
            data.pop(name, None)
            legacy = data.get(LEGACY_MODULES_KEY)
            if _is_object(legacy):
                legacy.pop(name, None)
            defaults = self._module_defaults.get(name)
            if defaults is not None:
                data[name] = copy.deepcopy(defaults)
            data["_lastModified"] = _utc_now()
            await self._save()

    def _combined_defaults(self) -> dict[str, Any]:
        combined = copy.deepcopy(DEFAULT_SETTINGS)
        for name, defaults in self._module_defaults.items():
            combined[name] = deep_merge(combined.get(name) or {}, defaults)
        return combined

    def export(self) -> str:
        """Serialize the full document, meta fields included."""
        return json.dumps(self._require(), indent=2, ensure_ascii=False)

    async def import_document(self, document: str | bytes | dict[str, Any]) -> None:
        """
        Replace the document with ``document`` merged over every known default.

        Namespaces missing from the imported document come back with the
        registered module defaults.
        """
        self._require()
        if isinstance(document, (str, bytes)):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Invalid settings document: {exc}") from exc
        if not _is_object(document):
            raise ConfigError("Settings document must be a JSON object.")

        imported = copy.deepcopy(document)
        legacy = imported.get(LEGACY_MODULES_KEY)
        if _is_object(legacy):
            for name in self._module_defaults:
                if name not in imported and _is_object(legacy.get(name)):
                    imported[name] = legacy[name]

        self._data = deep_merge(self._combined_defaults(), imported)
        self._data["_lastModified"] = _utc_now()
        await self._save()
        logger.info("Imported settings document (%d top-level keys)", len(self.keys()))

    async def _save(self) -> None:
        async with self._save_lock:
            payload = json.dumps(self._require(), indent=2, ensure_ascii=False)
            await asyncio.to_thread(self._write_atomic, payload)

    def _write_atomic(self, payload: str) -> None:
        with open(self._temp_path, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(self._temp_path, self._path)


__all__ = [
    "DEFAULT_SETTINGS",
    "DOCUMENT_VERSION",
    "LEGACY_MODULES_KEY",
    "SETTINGS_FILENAME",
    "SettingsStore",
    "TEMP_SUFFIX",
    "deep_merge",
]
