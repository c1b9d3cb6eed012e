"""Deployment job execution: archive download and the per-job state machine."""

from .models import JobRecord, JobStage
from .fetch import fetch_deployment_archive
from .runner import DeploymentJobRunner, JobSink

__all__ = [
    "JobRecord",
    "JobStage",
    "fetch_deployment_archive",
    "DeploymentJobRunner",
    "JobSink",
]
