"""Content-addressed manifest of the local target tree."""

from __future__ import annotations

import hashlib
import os
import stat
from typing import Dict, Optional

import aiofiles
import structlog

from deploy_host.core.exceptions import ScanError
from deploy_host.sync.ignore import PathIgnoreMatcher


logger = structlog.get_logger()

HASH_ALGORITHM = "md5"
CHUNK_SIZE = 64 * 1024


async def file_hash(path: str, algorithm: str = HASH_ALGORITHM) -> str:
    """Hex digest of a file's contents, read in chunks."""
    hasher = hashlib.new(algorithm)
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


async def build_manifest(root_dir: str, matcher: Optional[PathIgnoreMatcher] = None) -> Dict[str, str]:
    """Hash every non-ignored regular file under root_dir.

    Keys are ``/``-separated paths relative to root_dir. Symbolic links and
    other special files are never followed or hashed.

    Raises:
        ScanError: If a directory cannot be listed or a file cannot be hashed
    """
    matcher = matcher or PathIgnoreMatcher()
    if not os.path.isdir(root_dir):
        raise ScanError(f"Target path is not a directory: {root_dir}")

    manifest: Dict[str, str] = {}
    await _scan_dir(root_dir, "", matcher, manifest)
    logger.info("Local manifest built", root=root_dir, files=len(manifest))
    return dict(sorted(manifest.items()))


async def _scan_dir(dir_path: str, rel_dir: str, matcher: PathIgnoreMatcher, manifest: Dict[str, str]) -> None:
    try:
        with os.scandir(dir_path) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        raise ScanError(f"Error reading directory {dir_path}: {e}")

    for entry in entries:
        rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
        try:
            mode = entry.stat(follow_symlinks=False).st_mode
        except OSError as e:
            raise ScanError(f"Error reading {entry.path}: {e}")

        if stat.S_ISDIR(mode):
            if matcher.is_ignored(rel_path + "/"):
                logger.debug("Ignoring folder", path=rel_path)
                continue
            await _scan_dir(entry.path, rel_path, matcher, manifest)
        elif stat.S_ISREG(mode):
            if matcher.is_ignored(rel_path):
                continue
            try:
                manifest[rel_path] = await file_hash(entry.path)
            except OSError as e:
                raise ScanError(f"Error generating file hash for {entry.path}: {e}")
        else:
            logger.debug("Skipping non-regular file", path=rel_path)
