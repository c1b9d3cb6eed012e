"""Deployment synchronization pipeline: ignore rules, manifests, extraction, reconciliation."""

from .ignore import PathIgnoreMatcher
from .manifest import build_manifest, file_hash
from .extractor import ArchiveEntry, ExtractionResult, extract_archive
from .planner import DeletionPlan, apply_deletions, plan_deletions

__all__ = [
    "PathIgnoreMatcher",
    "build_manifest",
    "file_hash",
    "ArchiveEntry",
    "ExtractionResult",
    "extract_archive",
    "DeletionPlan",
    "apply_deletions",
    "plan_deletions",
]
