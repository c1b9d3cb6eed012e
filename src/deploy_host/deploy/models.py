"""Models for deployment jobs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStage(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    PLANNING = "planning"
    DELETING = "deleting"
    CLEANING_UP = "cleaning_up"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobRecord(BaseModel):
    deployment_id: int
    status: JobStage = JobStage.PENDING
    createdAt: datetime = Field(default_factory=_utcnow)
    updatedAt: datetime = Field(default_factory=_utcnow)
    details: Dict[str, str] = Field(default_factory=dict)
    existing_files: int = 0
    files_written: int = 0
    files_deleted: int = 0
    error: Optional[str] = None
    failed_stage: Optional[JobStage] = None

    def update_status(self, status: JobStage, details: Optional[Dict[str, str]] = None):
        self.status = status
        self.updatedAt = _utcnow()
        if details:
            self.details.update(details)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStage.SUCCEEDED
