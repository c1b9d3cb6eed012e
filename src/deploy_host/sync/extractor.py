"""Secure extraction of deployment archives into the target tree."""

from __future__ import annotations

import json
import os
import posixpath
import shutil
import stat
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Callable, Optional, Set, Union

import structlog
from pydantic import ValidationError

from deploy_host.core.exceptions import (
    ArchiveError,
    FilesystemMutationError,
    PathTraversalError,
    SymlinkEntryError,
)
from deploy_host.core.models import DeploymentManifest


logger = structlog.get_logger()

MANIFEST_ENTRY_NAME = "jsHarmonyCMS.deployment.manifest.json"
RESOURCE_FORK_PREFIX = "__MACOSX/"

# MS-DOS directory attribute, used by archives created on FAT hosts
_DOS_DIRECTORY_ATTR = 0x10
_SPECIAL_FILE_TYPES = {stat.S_IFCHR, stat.S_IFBLK, stat.S_IFIFO, stat.S_IFSOCK}


def normalize_entry_name(name: str) -> str:
    """Collapse an archive entry name to a ``/``-separated relative path."""
    name = name.replace("\\", "/")
    if not name:
        return ""
    return posixpath.normpath(name)


@dataclass
class ArchiveEntry:
    """One entry of the archive being extracted, as seen by the on_entry hook."""

    info: zipfile.ZipInfo
    archive: zipfile.ZipFile

    @property
    def filename(self) -> str:
        return self.info.filename

    @property
    def name(self) -> str:
        return normalize_entry_name(self.info.filename)

    @property
    def mode(self) -> int:
        return (self.info.external_attr >> 16) & 0xFFFF

    @property
    def is_symlink(self) -> bool:
        return stat.S_IFMT(self.mode) == stat.S_IFLNK

    @property
    def is_special(self) -> bool:
        return stat.S_IFMT(self.mode) in _SPECIAL_FILE_TYPES

    @property
    def is_dir(self) -> bool:
        if stat.S_IFMT(self.mode) == stat.S_IFDIR:
            return True
        if self.info.filename.endswith("/"):
            return True
        return self.info.create_system == 0 and self.info.external_attr == _DOS_DIRECTORY_ATTR

    def read(self) -> bytes:
        with self.archive.open(self.info, "r") as src:
            return src.read()


# Return False to skip the entry, None if it was handled out-of-band,
# or the (possibly rewritten) relative path to extract to.
OnEntry = Callable[[ArchiveEntry], Union[str, bool, None]]


@dataclass
class ExtractionResult:
    new_files: Set[str] = field(default_factory=set)
    manifest: Optional[DeploymentManifest] = None
    manifest_error: Optional[str] = None


def resolve_inside(dest_root: str, rel_path: str) -> str:
    """Resolve rel_path under dest_root, refusing anything that escapes it.

    Raises:
        PathTraversalError: If the canonical target is not a descendant of dest_root
    """
    base = os.path.realpath(dest_root)
    if posixpath.isabs(rel_path) or os.path.isabs(rel_path):
        raise PathTraversalError(f"Archive contains invalid file with absolute path: {rel_path}")
    target = os.path.realpath(os.path.join(base, rel_path))
    relative = os.path.relpath(target, base)
    if ".." in relative.split(os.sep):
        raise PathTraversalError(f"Archive contains invalid file with directory traversal: {rel_path}")
    return target


def _read_manifest(entry: ArchiveEntry, result: ExtractionResult) -> None:
    try:
        data = json.loads(entry.read().decode("utf-8"))
        result.manifest = DeploymentManifest.model_validate(data)
        logger.info("Deployment manifest found", delete_files=len(result.manifest.deleteFiles))
    except (ValueError, ValidationError) as e:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
        result.manifest_error = str(e)
        logger.error("Error parsing deployment manifest", error=str(e))


def extract_archive(archive_path: str, dest_root: str, on_entry: Optional[OnEntry] = None) -> ExtractionResult:
    """Stream every archive entry onto disk under dest_root.

    Entries are processed in archive order. The embedded deployment manifest is
    parsed and captured in the result instead of being written.

    Raises:
        ArchiveError: If the archive is corrupt or holds device entries
        PathTraversalError: If an entry resolves outside dest_root
        SymlinkEntryError: If an entry is a symbolic link
    """
    result = ExtractionResult()
    try:
        with zipfile.ZipFile(archive_path, "r") as zf:
            for info in zf.infolist():
                entry = ArchiveEntry(info=info, archive=zf)
                _extract_entry(entry, dest_root, on_entry, result)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError, NotImplementedError) as e:
        raise ArchiveError(f"Corrupt deployment archive: {e}")
    return result


def _extract_entry(entry: ArchiveEntry, dest_root: str, on_entry: Optional[OnEntry], result: ExtractionResult) -> None:
    if entry.filename.startswith(RESOURCE_FORK_PREFIX):
        return
    if entry.name == MANIFEST_ENTRY_NAME:
        _read_manifest(entry, result)
        return

    target = entry.name
    if on_entry is not None:
        target = on_entry(entry)
        if target is False:
            return
        if target is None:
            return
        if target is True or not target:
            target = entry.name
    rel_path = normalize_entry_name(target)
    if rel_path in ("", "."):
        return

    target_path = resolve_inside(dest_root, rel_path)

    if entry.is_symlink:
        raise SymlinkEntryError(f"Archive contains invalid file with symlink: {entry.filename}")
    if entry.is_special:
        raise ArchiveError(f"Archive contains unsupported special file: {entry.filename}")

    try:
        if entry.is_dir:
            os.makedirs(target_path, exist_ok=True)
            return
        os.makedirs(os.path.dirname(target_path), exist_ok=True)
        # Binary copy: newline translation would break hash equality with the server
        with entry.archive.open(entry.info, "r") as src, open(target_path, "wb") as dst:
            shutil.copyfileobj(src, dst)
    except OSError as e:
        raise FilesystemMutationError(f"Error writing {rel_path}: {e}")
    result.new_files.add(rel_path)
