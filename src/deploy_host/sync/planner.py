"""Reconciliation of the local tree against a deployment."""

from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

import structlog

from deploy_host.core.exceptions import FilesystemMutationError, UnexpectedManifestState
from deploy_host.core.models import DeploymentManifest
from deploy_host.sync.extractor import resolve_inside


logger = structlog.get_logger()


@dataclass
class DeletionPlan:
    files: List[str] = field(default_factory=list)
    folders: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.files


def candidate_folders(files: Iterable[str]) -> List[str]:
    """Ancestor folders of every file, deepest (longest path) first."""
    folders: List[str] = []
    seen: Set[str] = set()
    for fname in files:
        folder = posixpath.dirname(fname.strip("/"))
        while folder and folder != "." and folder not in seen:
            folders.append(folder)
            seen.add(folder)
            folder = posixpath.dirname(folder)
    folders.sort(key=len, reverse=True)
    return folders


def plan_deletions(
    existing: Dict[str, str],
    new_files: Set[str],
    manifest: Optional[DeploymentManifest],
    *,
    delete_enabled: bool,
    synthesize: bool,
) -> DeletionPlan:
    """Decide which files and folders the delete phase should remove.

    With synthesize set, every existing file the archive did not write is
    deleted; otherwise the server's deleteFiles list is used as-is.

    Raises:
        UnexpectedManifestState: If the server sent deletions and local synthesis was requested
    """
    if not delete_enabled:
        return DeletionPlan()

    server_files = list(manifest.deleteFiles) if manifest else []
    if synthesize:
        if server_files:
            raise UnexpectedManifestState("Unexpected deploymentManifest deleteFiles array")
        files = [path for path in existing if path not in new_files]
    else:
        files = server_files

    return DeletionPlan(files=files, folders=candidate_folders(files))


def apply_deletions(root: str, plan: DeletionPlan) -> int:
    """Delete planned files, then remove folders that ended up empty.

    Folders are visited deepest first so that emptied parents can go in the
    same pass; non-empty folders are left alone.

    Raises:
        PathTraversalError: If a planned path resolves outside root
        FilesystemMutationError: If an unlink or rmdir fails
    """
    deleted = 0
    for fname in plan.files:
        rel_path = fname.lstrip("/")
        # Validate the parent only; the file itself is unlinked, never followed
        resolve_inside(root, posixpath.dirname(rel_path) or ".")
        if posixpath.normpath(rel_path) in ("", ".", ".."):
            raise FilesystemMutationError(f"Refusing to delete {fname!r}")
        target = os.path.join(root, rel_path)
        logger.info("Deleting", path=fname)
        try:
            os.unlink(target)
            deleted += 1
        except FileNotFoundError:
            logger.warning("File already removed", path=fname)
        except OSError as e:
            raise FilesystemMutationError(f"Error deleting {fname}: {e}")

    for folder in plan.folders:
        resolve_inside(root, folder)
        target = os.path.join(root, folder)
        try:
            if os.path.islink(target) or not os.path.isdir(target) or os.listdir(target):
                continue
            logger.info("Deleting", path=folder + "/")
            os.rmdir(target)
        except OSError as e:
            raise FilesystemMutationError(f"Error deleting folder {folder}/: {e}")
    return deleted
