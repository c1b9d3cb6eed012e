"""Job intake loop: long-polls the server queue and runs one job at a time."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import ValidationError

from deploy_host.core.exceptions import (
    AuthExpiredError,
    AuthenticationError,
    RequestTimeout,
    TransportError,
)
from deploy_host.core.models import DeploymentJob, Session
from deploy_host.remote.auth import Authenticator
from deploy_host.remote.client import ControlServerClient, is_redirect
from deploy_host.utils.metrics import POLL_ERRORS


logger = structlog.get_logger()

PUBLISH_QUEUE_PREFIX = "deployment_host_publish_"
REQUEST_QUEUE_PREFIX = "deployment_host_request_"
SUCCESS_MESSAGE = "CMS Deployment Host publish complete"

JobHandler = Callable[[DeploymentJob, "JobReporter"], Awaitable[Any]]


class JobReporter:
    """Routes one job's progress and result to the server log endpoint."""

    def __init__(self, intake: "JobIntakeLoop", job: DeploymentJob):
        self.intake = intake
        self.job = job

    async def log(self, logtype: str, message: str) -> None:
        await self.intake.post_log(self.job.deployment_id, logtype, message)

    async def success(self) -> None:
        await self.intake.report_success(self.job.deployment_id)

    async def failure(self, error: BaseException) -> None:
        await self.intake.report_error(self.job.deployment_id, str(error) or type(error).__name__)


class JobIntakeLoop:
    """Authenticates, polls for jobs and dispatches them to a single handler.

    The next poll is only issued after the current job's result has been
    reported, so at most one job touches the target directory at a time.
    """

    def __init__(
        self,
        client: ControlServerClient,
        session: Session,
        authenticator: Authenticator,
        handler: Optional[JobHandler] = None,
        *,
        network_error_delay: float = 5.0,
        poll_timeout: float = 300.0,
        max_error_message_length: int = 500,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.session = session
        self.authenticator = authenticator
        self.handler = handler
        self.network_error_delay = network_error_delay
        self.poll_timeout = poll_timeout
        self.max_error_message_length = max_error_message_length
        self._sleep = sleep

    async def start(self) -> None:
        await self.authenticator.ensure_session()
        logger.info("CMS Host Connected")

    async def run(self, queue_id: str, max_jobs: Optional[int] = None) -> None:
        """Poll queue_id forever (or for max_jobs jobs).

        A session that expires is renewed once; if the renewed session is
        rejected again before any job arrives the loop stops.

        Raises:
            AuthenticationError: If the session cannot be renewed
        """
        processed = 0
        renewed = False
        while max_jobs is None or processed < max_jobs:
            try:
                job = await self.next_job(queue_id)
                renewed = False
                await self.dispatch(job)
                processed += 1
            except AuthExpiredError as e:
                if renewed:
                    raise AuthenticationError(str(e)) from e
                renewed = True
                await self._renew_session()

    async def next_job(self, queue_id: str) -> DeploymentJob:
        """Long-poll until a recognizable message arrives.

        Raises:
            AuthExpiredError: If the server redirects the poll to login
        """
        while True:
            logger.info("Requesting next item in queue", queue=queue_id)
            try:
                response, payload = await self.client.request_json(
                    "GET", f"/_queue/{queue_id}", self.session, timeout=self.poll_timeout
                )
            except RequestTimeout:
                POLL_ERRORS.labels(kind="timeout").inc()
                continue
            except TransportError as e:
                POLL_ERRORS.labels(kind="transport").inc()
                logger.warning("Queue request failed", queue=queue_id, error=str(e))
                await self._sleep(self.network_error_delay)
                continue

            if is_redirect(response):
                raise AuthExpiredError("Authentication token invalid or expired")

            if isinstance(payload, dict):
                if payload.get("_error"):
                    POLL_ERRORS.labels(kind="server").inc()
                    logger.error("Error connecting to queue", queue=queue_id, error=json.dumps(payload["_error"]))
                    await self._sleep(self.network_error_delay)
                    continue
                try:
                    return DeploymentJob.model_validate({**payload, "queue_id": queue_id})
                except ValidationError as e:
                    logger.warning("Invalid queue message", queue=queue_id, error=str(e))
            else:
                logger.warning("Unexpected response from server", queue=queue_id, body=response.text[:200])
            POLL_ERRORS.labels(kind="unrecognized").inc()
            await self._sleep(self.network_error_delay)

    async def dispatch(self, job: DeploymentJob) -> None:
        """Hand a job to the handler; jobs without a deployment id are skipped."""
        if job.deployment_id is None:
            if job.queue_id.startswith(PUBLISH_QUEUE_PREFIX):
                logger.error("Queue request missing deployment_id", queue=job.queue_id, job_id=job.id)
            elif job.queue_id.startswith(REQUEST_QUEUE_PREFIX):
                logger.info("Received request on queue, no deployment attached", queue=job.queue_id)
            else:
                logger.warning("Unrecognized queue message", queue=job.queue_id, job_id=job.id)
            return

        logger.info("Received deployment", deployment_id=job.deployment_id, queue=job.queue_id)
        reporter = JobReporter(self, job)
        if self.handler is None:
            logger.warning("No job handler registered", deployment_id=job.deployment_id)
            return
        try:
            await self.handler(job, reporter)
        except (AuthExpiredError, AuthenticationError):
            raise
        except Exception as e:
            logger.exception("Job handler failed", deployment_id=job.deployment_id)
            await reporter.failure(e)

    async def post_log(
        self,
        deployment_id: Optional[int],
        logtype: str,
        message: Optional[str],
        *,
        retry: bool = False,
    ) -> None:
        """Send a log line for a deployment; a missing id makes this a no-op.

        An expired session is renewed once and the line sent again. With retry
        set, network errors are retried every network_error_delay until the
        line is delivered; otherwise the line is dropped after one wait.

        Raises:
            AuthenticationError: If the session cannot be renewed
        """
        if not deployment_id:
            return
        renewed = False
        while True:
            try:
                response, payload = await self.client.request_json(
                    "POST",
                    f"/_funcs/deployment_host/{deployment_id}/log",
                    self.session,
                    data={"logtype": logtype, "message": message or ""},
                )
            except TransportError as e:
                logger.warning("Could not send deployment log", deployment_id=deployment_id, error=str(e))
                await self._sleep(self.network_error_delay)
                if retry:
                    continue
                return
            if is_redirect(response):
                if renewed:
                    raise AuthenticationError("Authentication token invalid or expired")
                await self._renew_session()
                renewed = True
                continue
            if isinstance(payload, dict) and payload.get("_error"):
                logger.error("Server rejected deployment log", deployment_id=deployment_id, error=json.dumps(payload["_error"]))
            return

    async def report_success(self, deployment_id: Optional[int], message: str = SUCCESS_MESSAGE) -> None:
        await self.post_log(deployment_id, "info", message, retry=True)

    async def report_error(self, deployment_id: Optional[int], message: Optional[str]) -> None:
        message = message or ""
        logger.error("Deployment error", deployment_id=deployment_id, error=message)
        await self.post_log(deployment_id, "error", message[: self.max_error_message_length], retry=True)

    async def _renew_session(self) -> None:
        logger.warning("Session expired, logging in again")
        self.session.invalidate()
        await self.authenticator.ensure_session()
