"""Control server access: HTTP client, login, and job queue."""

from .client import ControlServerClient
from .auth import Authenticator, load_session_cache
from .queue import JobIntakeLoop, JobReporter

__all__ = [
    "ControlServerClient",
    "Authenticator",
    "load_session_cache",
    "JobIntakeLoop",
    "JobReporter",
]
