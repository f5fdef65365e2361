"""
CLI entrypoint for the admin dashboard backend.

``serve`` initializes the settings store, loads every module and serves the
HTTP API with uvicorn.  The remaining subcommands are maintenance helpers:
settings backup/restore and the one-time schema converter for legacy
object-form schemas.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import uvicorn

from .api import create_app
from .core.config import AppSettings, load_app_settings
from .core.errors import ConfigError
from .core.registry import ModuleRegistry
from .core.schema import convert_object_schema, dump_schema
from .core.store import SettingsStore

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def configure_logging(level: str, log_file: Path | None = None) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric_level)
    if log_file is not None:
        _ensure_rotating_file_handler(log_file)


async def open_store(
    app_settings: AppSettings, *, load_modules: bool = True
) -> tuple[SettingsStore, ModuleRegistry]:
    """Initialize the store and, optionally, load every module into a registry."""
    store = SettingsStore(app_settings.data_path)
    await store.init()
    registry = ModuleRegistry(store, app_settings)
    if load_modules:
        report = await registry.load_all()
        if not report.loaded:
            raise ConfigError("No modules could be loaded.")
    return store, registry


async def run_server(app_settings: AppSettings) -> None:
    store, registry = await open_store(app_settings)
    app = create_app(registry, store, app_settings)
    config = uvicorn.Config(
        app=app,
        host=app_settings.host,
        port=app_settings.port,
        loop="asyncio",
        lifespan="on",
        log_level=app_settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    LOGGER.info(
        "Admin API listening on http://%s:%s (data: %s)",
        app_settings.host,
        app_settings.port,
        store.path,
    )
    await server.serve()


def convert_schema_file(path: Path) -> list[dict[str, Any]]:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Unable to read schema {path}: {exc}") from exc
    try:
        return dump_schema(convert_object_schema(document))
    except ValueError as exc:
        raise ConfigError(f"Unable to convert schema {path}: {exc}") from exc


async def export_settings(app_settings: AppSettings) -> str:
    store, _ = await open_store(app_settings, load_modules=False)
    return store.export()


async def import_settings(app_settings: AppSettings, source: Path) -> None:
    try:
        document = source.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Unable to read settings document {source}: {exc}") from exc
    store, _ = await open_store(app_settings)
    await store.import_document(document)


def _write_output(text: str, output: Path | None) -> None:
    if output is None:
        sys.stdout.write(text + "\n")
        return
    output.write_text(text + "\n", encoding="utf-8")
    LOGGER.info("Wrote %s", output)


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MeshCentral admin dashboard backend.")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/secrets.yaml.",
    )
    parser.add_argument(
        "--data-path",
        type=Path,
        default=None,
        help="Directory holding settings.json (default: ./data or DATA_PATH).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: INFO).",
    )
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the HTTP API (default).")
    serve.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0).")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: 3001).")

    convert = commands.add_parser(
        "convert-schema", help="Convert a legacy object-form schema to a field list."
    )
    convert.add_argument("file", type=Path, help="JSON file with the object-form schema.")
    convert.add_argument("--output", type=Path, default=None, help="Write to FILE instead of stdout.")

    export = commands.add_parser("export", help="Print the settings document.")
    export.add_argument("--output", type=Path, default=None, help="Write to FILE instead of stdout.")

    restore = commands.add_parser("import", help="Replace the settings document from FILE.")
    restore.add_argument("file", type=Path, help="Previously exported settings document.")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "serve"
        args.host = None
        args.port = None
    return args


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "data_path": args.data_path,
        "log_level": args.log_level,
        "host": getattr(args, "host", None),
        "port": getattr(args, "port", None),
    }


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        if args.command == "convert-schema":
            _write_output(json.dumps(convert_schema_file(args.file), indent=2), args.output)
            return 0
        app_settings = load_app_settings(config_dir=args.config_dir, overrides=_overrides(args))
        configure_logging(app_settings.log_level, app_settings.log_path)
        if args.command == "export":
            _write_output(asyncio.run(export_settings(app_settings)), args.output)
        elif args.command == "import":
            asyncio.run(import_settings(app_settings, args.file))
            LOGGER.info("Imported settings from %s", args.file)
        else:
            asyncio.run(run_server(app_settings))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("Admin dashboard crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["configure_logging", "convert_schema_file", "main", "open_store", "parse_args"]
