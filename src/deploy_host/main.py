"""Main entry point for the deployment host."""

import asyncio
import signal
import sys
from typing import Optional

import httpx
import structlog

from deploy_host import __version__
from deploy_host.core.config import Settings
from deploy_host.core.exceptions import AuthenticationError, ConfigurationError
from deploy_host.core.models import DeploymentJob, Session
from deploy_host.deploy.runner import DeploymentJobRunner
from deploy_host.remote.auth import Authenticator, Prompt, load_session_cache
from deploy_host.remote.client import ControlServerClient
from deploy_host.remote.queue import JobIntakeLoop, JobReporter
from deploy_host.utils.logging import setup_logging
from deploy_host.utils.metrics import start_metrics_server

logger = structlog.get_logger()


def initial_session(settings: Settings) -> Session:
    """Start from the login cache when it matches the configured user."""
    session = None
    if settings.login_cache_file:
        session = load_session_cache(settings.login_cache_file)
    if session is None or (settings.username and session.username != settings.username):
        session = Session(username=settings.username or "")
    return session


async def run_agent(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    prompt: Optional[Prompt] = None,
    prompt_password: Optional[Prompt] = None,
    max_jobs: Optional[int] = None,
) -> int:
    """Connect to the CMS and process deployments.

    Returns the process exit code.
    """
    session = initial_session(settings)
    async with ControlServerClient(
        settings.cms_url,
        verify=not settings.ignore_cert_errors,
        timeout=settings.request_timeout,
        max_redirects=settings.max_redirects,
        transport=transport,
    ) as client:
        authenticator = Authenticator(
            client,
            session,
            password=settings.password,
            cache_file=settings.login_cache_file,
            network_error_delay=settings.network_error_delay,
            prompt=prompt,
            prompt_password=prompt_password,
        )
        runner = DeploymentJobRunner(settings, client, session)

        async def handle(job: DeploymentJob, reporter: JobReporter) -> None:
            await runner.run(job.deployment_id, reporter)

        intake = JobIntakeLoop(
            client,
            session,
            authenticator,
            handle,
            network_error_delay=settings.network_error_delay,
            poll_timeout=settings.poll_timeout,
            max_error_message_length=settings.max_error_message_length,
        )
        await intake.start()
        logger.info("Host connected", host_id=settings.host_id, target=settings.target_path)

        if settings.download_deployment:
            job = DeploymentJob(queue_id="download", deployment_id=settings.download_deployment)
            record = await runner.run(settings.download_deployment, JobReporter(intake, job))
            return 0 if record.succeeded else 1

        await intake.run(settings.queue_name, max_jobs=max_jobs)
    return 0


def run(settings: Settings) -> int:
    """Run the host until it is stopped or hits a fatal error."""
    setup_logging(settings.log_level, settings.log_format, settings.log_path)
    logger.info("Starting deployment host", version=__version__)

    try:
        settings.validate_target()
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        return 1

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, shutting down")
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_sigterm)

    if settings.metrics_enabled:
        start_metrics_server(settings.metrics_port)

    try:
        return asyncio.run(run_agent(settings))
    except AuthenticationError as e:
        logger.error("Authentication failed", error=str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
