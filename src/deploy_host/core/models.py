"""Core data models for the deployment host."""

import json
from typing import Any, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, field_validator


class Session(BaseModel):
    """Authentication tuple sent with every authenticated request.

    ``password`` holds the server-issued token after the first login, never the
    raw password typed by the user.
    """

    username: str = ""
    password: str = ""
    tstmp: str = ""
    cookie_name: Optional[str] = Field(None, description="Account cookie name discovered at login")

    def cookie_header(self) -> dict:
        """Build the Cookie header, or an empty dict before the cookie name is known."""
        if not self.cookie_name:
            return {}
        payload = json.dumps(
            {
                "username": self.username,
                "password": self.password,
                "remember": False,
                "tstmp": self.tstmp,
            },
            separators=(",", ":"),
        )
        return {"Cookie": f"{self.cookie_name}=" + quote("j:" + payload, safe="!~*'()")}

    def invalidate(self) -> None:
        self.tstmp = ""


class DeploymentManifest(BaseModel):
    """Deletion manifest embedded in a deployment archive."""

    deleteFiles: List[str] = Field(default_factory=list)


class DeploymentJob(BaseModel):
    """A unit of work pulled from the server queue."""

    queue_id: str
    id: Optional[Any] = None
    deployment_id: Optional[int] = None
    body: Optional[Any] = None

    @field_validator("deployment_id", mode="before")
    @classmethod
    def coerce_deployment_id(cls, v: Any) -> Optional[int]:
        """Accept numeric strings; anything unparseable or non-positive is null."""
        if v is None or isinstance(v, bool):
            return None
        try:
            value = int(str(v).strip())
        except ValueError:
            return None
        return value if value > 0 else None
