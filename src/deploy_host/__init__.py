"""CMS deployment host - applies published deployments to a local directory."""

__version__ = "0.1.0"

from deploy_host.core.config import Settings
from deploy_host.core.models import DeploymentJob, DeploymentManifest, Session

__all__ = ["Settings", "DeploymentJob", "DeploymentManifest", "Session", "__version__"]
