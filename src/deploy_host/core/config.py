"""Configuration management for the deployment host."""

import os
import re
import socket
from typing import List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deploy_host.core.exceptions import ConfigurationError


HOST_ID_PATTERN = re.compile(r"[^a-zA-Z0-9\-_. ]+")


def default_host_id() -> str:
    """Derive a host id from the machine name."""
    host_id = (socket.gethostname() or "").upper()
    return HOST_ID_PATTERN.sub("", host_id) or "REMOTE"


class Settings(BaseSettings):
    """Deployment host configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOY_HOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    cms_url: str = Field(..., description="URL of the CMS server")
    target_path: str = Field(..., description="Directory the published files are copied to")
    host_id: str = Field(default_factory=default_host_id, description="Host ID shown in the deployment wizard")

    # Credentials
    username: Optional[str] = Field(None, description="CMS login username")
    password: Optional[str] = Field(None, description="CMS login password")
    login_cache_file: Optional[str] = Field(None, description="Where to persist session tokens")

    # Sync behaviour
    delete_excess_files: bool = Field(False, description="Delete local files that are not in the publish build")
    overwrite_all: bool = Field(False, description="Replace all local files instead of sending a delta hint")
    ignore_paths: Union[List[str], str] = Field(default_factory=list, description="Ignore rules")
    download_deployment: Optional[int] = Field(None, description="Apply a single deployment and exit")

    # Transport
    ignore_cert_errors: bool = Field(False, description="Skip TLS certificate verification")
    network_error_delay: float = Field(5.0, description="Fixed delay before retrying after a network error")
    poll_timeout: float = Field(300.0, description="Long-poll read timeout in seconds")
    request_timeout: float = Field(60.0, description="Timeout for regular requests in seconds")
    max_redirects: int = Field(20, description="Maximum redirect hops per request")
    max_archive_size: Optional[int] = Field(None, description="Reject deployment archives larger than this many bytes")
    max_error_message_length: int = Field(500, description="Error reports are truncated to this length")

    # Observability
    log_path: Optional[str] = Field(None, description="Log file or directory")
    log_level: str = Field("INFO")
    log_format: str = Field("console")
    metrics_enabled: bool = Field(False)
    metrics_port: int = Field(9090)

    @field_validator("cms_url")
    @classmethod
    def normalize_cms_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("cms_url cannot be empty")
        if v.startswith("//"):
            v = "https:" + v
        if "://" not in v:
            v = "https://" + v
        return v.rstrip("/")

    @field_validator("target_path")
    @classmethod
    def resolve_target_path(cls, v: str) -> str:
        return os.path.abspath(v)

    @field_validator("host_id")
    @classmethod
    def validate_host_id(cls, v: str) -> str:
        if not v or HOST_ID_PATTERN.search(v):
            raise ValueError(
                f"Invalid Host ID: {v}. Please use only alphanumeric characters and - _ . in the Host ID"
            )
        return v

    @field_validator("ignore_paths", mode="before")
    @classmethod
    def parse_ignore_paths(cls, v: Optional[Union[str, List[str]]]) -> List[str]:
        """Parse comma-separated ignore rules and normalize separators."""
        if not v:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [p.strip().replace("\\", "/") for p in v if p and p.strip()]

    @property
    def ignore_paths_list(self) -> List[str]:
        if isinstance(self.ignore_paths, str):
            return self.parse_ignore_paths(self.ignore_paths)
        return list(self.ignore_paths)

    @property
    def queue_name(self) -> str:
        return f"deployment_host_{self.host_id}"

    def validate_target(self) -> None:
        """Fail fast if the target directory is missing."""
        if not os.path.isdir(self.target_path):
            raise ConfigurationError(f"Target path does not exist: {self.target_path}")
