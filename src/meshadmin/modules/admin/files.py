"""
File hosting module: uploaded installers and documents served as direct downloads.

Records live in the module's ``files`` list; the bytes live in the uploads
directory.  ``refresh`` reconciles the two, ``cleanup`` drops records whose
file disappeared.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...core.contracts import ActionDescriptor, ActionHandler, Actor, BaseModule, utc_timestamp
from ...core.errors import ActionError
from ...core.schema import FieldDescriptor, ValidationRules, section

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
DEFAULT_EXTENSIONS = ".exe,.msi,.zip,.dmg,.pkg,.sh,.bat,.ps1,.pdf,.doc,.docx"
DOWNLOAD_PREFIX = "/downloads"
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class FileHostingError(ActionError):
    """Raised when an upload or file operation is refused."""


class HostedFile(BaseModel):
    """One downloadable file record as stored in the settings document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    filename: str
    original_name: str
    size: int = 0
    mime_type: str | None = None
    uploaded_at: str = Field(default_factory=utc_timestamp)
    downloads: int = 0
    last_download: str | None = None
    exists: bool = True

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def sanitize_filename(name: str) -> str:
    """Replace anything outside ``[a-zA-Z0-9._-]`` and strip leading dots."""
    cleaned = _UNSAFE_CHARS.sub("_", Path(name).name).lstrip(".")
    return cleaned or "file"


def parse_extensions(raw: Any) -> list[str]:
    if isinstance(raw, (list, tuple)):
        items = [str(item) for item in raw]
    else:
        items = str(raw or "").split(",")
    return [item.strip().lower() for item in items if item.strip()]


def unique_filename(directory: Path, filename: str) -> str:
    """First free name of the form ``stem``, ``stem_1``, ``stem_2``... in ``directory``."""
    candidate = filename
    stem, suffix = Path(filename).stem, Path(filename).suffix
    counter = 1
    while (directory / candidate).exists():
        candidate = f"{stem}_{counter}{suffix}"
        counter += 1
    return candidate


class FilesModule(BaseModule):
    """Host files for direct download from the support page."""

    name = "files"
    display_name = "File Hosting"
    description = "Host files and generate direct download links"
    icon = "folder"

    @property
    def uploads_dir(self) -> Path:
        return self._app_settings.uploads_path

    def get_default_settings(self) -> dict[str, Any]:
        return {
            "enabled": True,
            "maxFileSize": 100,
            "allowedExtensions": DEFAULT_EXTENSIONS,
            "files": [],
        }

    async def init(self) -> None:
        await asyncio.to_thread(self.uploads_dir.mkdir, parents=True, exist_ok=True)
        await self.sync_file_list()
        await super().init()

    def get_schema(self) -> list[FieldDescriptor]:
        return [
            FieldDescriptor(
                key="enabled",
                type="boolean",
                label="Enable File Hosting",
                description="Allow hosting files for direct download",
            ),
            section("section_settings", "Upload Settings"),
            FieldDescriptor(
                key="maxFileSize",
                type="number",
                label="Max File Size (MB)",
                description="Maximum file size allowed for upload",
                placeholder="100",
                validation=ValidationRules(min=1, max=1000),
                depends_on="enabled",
            ),
            FieldDescriptor(
                key="allowedExtensions",
                type="text",
                label="Allowed Extensions",
                description="Comma-separated list of allowed file extensions",
                placeholder=".exe,.msi,.zip,.dmg,.pkg",
                depends_on="enabled",
            ),
            section("section_files", "Hosted Files"),
            FieldDescriptor(
                key="files",
                type="filelist",
                label="Uploaded Files",
                description="Files available for download",
                depends_on="enabled",
            ),
        ]

    def get_actions(self) -> list[ActionDescriptor]:
        return [
            ActionDescriptor(
                name="upload",
                label="Upload File",
                icon="upload",
                description="Upload a new file",
                admin_only=True,
            ),
            ActionDescriptor(
                name="refresh",
                label="Refresh File List",
                icon="refresh",
                description="Scan directory and refresh file list",
                admin_only=True,
            ),
            ActionDescriptor(
                name="cleanup",
                label="Clean Up Orphans",
                icon="trash",
                description="Remove database entries for deleted files",
                confirm="Remove entries for files that no longer exist on disk?",
                admin_only=True,
            ),
        ]

    def action_handlers(self) -> dict[str, ActionHandler]:
        return {
            "upload": self._action_upload,
            "refresh": self._action_refresh,
            "cleanup": self._action_cleanup,
        }

    def get_files(self) -> list[dict[str, Any]]:
        files = self.settings.get("files")
        return files if isinstance(files, list) else []

    def get_file(self, file_id: str) -> dict[str, Any] | None:
        return next((item for item in self.get_files() if item.get("id") == file_id), None)

    def get_file_by_name(self, filename: str) -> dict[str, Any] | None:
        return next((item for item in self.get_files() if item.get("filename") == filename), None)

    def get_download_url(self, record: Mapping[str, Any], base_url: str = "") -> str:
        return f"{base_url}{DOWNLOAD_PREFIX}/{quote(str(record.get('filename', '')))}"

    def resolve_path(self, record: Mapping[str, Any]) -> Path:
        return self.uploads_dir / sanitize_filename(str(record.get("filename", "")))

    async def sync_file_list(self) -> list[dict[str, Any]]:
        """Add records for untracked files on disk and flag records whose file is gone."""
        on_disk = await asyncio.to_thread(self._scan_uploads)

        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            files = [dict(item) for item in current.get("files") or [] if isinstance(item, Mapping)]
            known = {item.get("filename") for item in files}
            for filename, size in on_disk.items():
                if filename not in known:
                    files.append(
                        HostedFile(filename=filename, original_name=filename, size=size).to_record()
                    )
            for item in files:
                item["exists"] = item.get("filename") in on_disk
            current["files"] = files
            return current

        saved = await self.settings.update(_apply)
        return saved["files"]

    def _scan_uploads(self) -> dict[str, int]:
        if not self.uploads_dir.is_dir():
            return {}
        return {
            entry.name: entry.stat().st_size
            for entry in self.uploads_dir.iterdir()
            if entry.is_file() and not entry.name.startswith(".")
        }

    async def handle_upload(
        self,
        temp_path: str | Path,
        original_name: str,
        *,
        custom_name: str | None = None,
        mime_type: str | None = None,
    ) -> dict[str, Any]:
        """
        Move an already-received upload into the hosted directory and record it.

        Raises ``FileHostingError`` when hosting is disabled, the file exceeds
        ``maxFileSize`` or its extension is not allowed; the temp file is
        left in place in that case.
        """
        settings = self.get_settings()
        if not settings.get("enabled"):
            raise FileHostingError("File hosting is disabled")
        source = Path(temp_path)
        size = (await asyncio.to_thread(source.stat)).st_size
        max_mb = settings.get("maxFileSize") or 100
        if size > float(max_mb) * BYTES_PER_MB:
            raise FileHostingError(f"File too large. Maximum size is {max_mb}MB")
        extension = Path(original_name).suffix.lower()
        allowed = parse_extensions(settings.get("allowedExtensions"))
        if allowed and extension not in allowed:
            raise FileHostingError(
                f"File type not allowed. Allowed: {settings.get('allowedExtensions')}"
            )

        wanted = sanitize_filename(custom_name or original_name)
        record: dict[str, Any] = {}

        async def _apply(current: dict[str, Any]) -> dict[str, Any]:
            filename = await asyncio.to_thread(self._store_upload, source, wanted)
            record.update(
                HostedFile(
                    filename=filename, original_name=original_name, size=size, mime_type=mime_type
                ).to_record()
            )
            current["files"] = [*(current.get("files") or []), dict(record)]
            return current

        await self.settings.update(_apply)
        logger.info("Hosted %s as %s (%d bytes)", original_name, record["filename"], size)
        return record

    def _store_upload(self, source: Path, wanted: str) -> str:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        filename = unique_filename(self.uploads_dir, wanted)
        shutil.move(str(source), self.uploads_dir / filename)
        return filename

    async def delete_file(self, file_id: str) -> dict[str, Any]:
        record = self.get_file(file_id)
        if record is None:
            raise FileHostingError("File not found")
        path = self.resolve_path(record)
        await asyncio.to_thread(path.unlink, missing_ok=True)

        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            current["files"] = [
                item for item in current.get("files") or [] if item.get("id") != file_id
            ]
            return current

        await self.settings.update(_apply)
        logger.info("Deleted hosted file %s", record.get("filename"))
        return {"success": True, "message": "File deleted"}

    async def increment_downloads(self, file_id: str) -> None:
        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            for item in current.get("files") or []:
                if item.get("id") == file_id:
                    item["downloads"] = int(item.get("downloads") or 0) + 1
                    item["lastDownload"] = utc_timestamp()
            return current

        await self.settings.update(_apply)

    async def _action_upload(self, params: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        settings = self.get_settings()
        max_mb = settings.get("maxFileSize") or 100
        return {
            "success": True,
            "config": {
                "maxFileSize": int(float(max_mb) * BYTES_PER_MB),
                "allowedExtensions": parse_extensions(settings.get("allowedExtensions")),
            },
        }

    async def _action_refresh(self, params: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        await self.sync_file_list()
        return {"success": True, "message": "File list refreshed", "settings": self.get_settings()}

    async def _action_cleanup(self, params: dict[str, Any], actor: Actor | None) -> dict[str, Any]:
        removed = 0

        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            nonlocal removed
            files = current.get("files") or []
            kept = [item for item in files if item.get("exists") is not False]
            removed = len(files) - len(kept)
            current["files"] = kept
            return current

        await self.settings.update(_apply)
        return {
            "success": True,
            "message": f"Removed {removed} orphan entries",
            "settings": self.get_settings(),
        }


__all__ = [
    "FileHostingError",
    "FilesModule",
    "HostedFile",
    "parse_extensions",
    "sanitize_filename",
    "unique_filename",
]
