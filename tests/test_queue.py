"""Tests for the job intake loop and result reporting."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from deploy_host.core.exceptions import AuthExpiredError, AuthenticationError
from deploy_host.core.models import DeploymentJob
from deploy_host.deploy.runner import DeploymentJobRunner
from deploy_host.remote.client import ControlServerClient
from deploy_host.remote.queue import SUCCESS_MESSAGE, JobIntakeLoop, JobReporter

from conftest import form, make_zip

QUEUE = "deployment_host_TESTHOST"
POLL_PATH = f"/_queue/{QUEUE}"
REDIRECT = httpx.Response(302, headers={"location": "/login"})


def job_response(deployment_id=7, **extra):
    return httpx.Response(200, json={"id": "msg-1", "deployment_id": deployment_id, **extra})


def log_path(deployment_id):
    return f"/_funcs/deployment_host/{deployment_id}/log"


@pytest.fixture
def authenticator():
    auth = MagicMock()
    auth.ensure_session = AsyncMock()
    return auth


@pytest.fixture
def sleep():
    return AsyncMock()


def make_loop(client, session, authenticator, sleep, handler=None, **kwargs):
    return JobIntakeLoop(client, session, authenticator, handler, network_error_delay=5.0, sleep=sleep, **kwargs)


class TestDeploymentJob:
    def test_numeric_string_id(self):
        assert DeploymentJob(queue_id="q", deployment_id="12").deployment_id == 12

    @pytest.mark.parametrize("value", [None, "abc", 0, -3, True])
    def test_invalid_ids_are_null(self, value):
        assert DeploymentJob(queue_id="q", deployment_id=value).deployment_id is None


@pytest.mark.asyncio
async def test_timeout_retries_immediately(fake_cms, session, authenticator, sleep):
    def timeout(request):
        raise httpx.ReadTimeout("long poll expired", request=request)

    fake_cms.add("GET", POLL_PATH, timeout, job_response())
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        job = await make_loop(client, session, authenticator, sleep).next_job(QUEUE)

    assert job.deployment_id == 7
    assert job.queue_id == QUEUE
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_network_error_waits_fixed_delay(fake_cms, session, authenticator, sleep):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    fake_cms.add("GET", POLL_PATH, refuse, refuse, job_response())
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        job = await make_loop(client, session, authenticator, sleep).next_job(QUEUE)

    assert job.deployment_id == 7
    assert [c.args for c in sleep.await_args_list] == [(5.0,), (5.0,)]


@pytest.mark.asyncio
async def test_server_error_payload_retries(fake_cms, session, authenticator, sleep):
    fake_cms.add("GET", POLL_PATH, httpx.Response(200, json={"_error": {"message": "queue busy"}}), job_response())
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        job = await make_loop(client, session, authenticator, sleep).next_job(QUEUE)

    assert job.deployment_id == 7
    sleep.assert_awaited_once_with(5.0)


@pytest.mark.asyncio
async def test_unrecognized_body_retries(fake_cms, session, authenticator, sleep):
    fake_cms.add("GET", POLL_PATH, httpx.Response(200, text="<html>"), job_response())
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        job = await make_loop(client, session, authenticator, sleep).next_job(QUEUE)

    assert job.deployment_id == 7
    sleep.assert_awaited_once_with(5.0)


@pytest.mark.asyncio
async def test_redirect_means_session_expired(fake_cms, session, authenticator, sleep):
    fake_cms.add("GET", POLL_PATH, REDIRECT)
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        with pytest.raises(AuthExpiredError):
            await make_loop(client, session, authenticator, sleep).next_job(QUEUE)


@pytest.mark.asyncio
async def test_poll_sends_session_cookie(fake_cms, session, authenticator, sleep):
    fake_cms.add("GET", POLL_PATH, job_response())
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep).next_job(QUEUE)
    assert fake_cms.requests[0].headers["cookie"].startswith("account_cms=")


@pytest.mark.asyncio
async def test_run_renews_session_once(fake_cms, session, authenticator, sleep):
    fake_cms.add("GET", POLL_PATH, REDIRECT, job_response())
    handler = AsyncMock()
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep, handler).run(QUEUE, max_jobs=1)

    authenticator.ensure_session.assert_awaited_once()
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_stops_when_renewal_rejected(fake_cms, session, authenticator, sleep):
    fake_cms.add("GET", POLL_PATH, REDIRECT)
    handler = AsyncMock()
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        with pytest.raises(AuthenticationError):
            await make_loop(client, session, authenticator, sleep, handler).run(QUEUE)

    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_jobs_run_one_at_a_time(fake_cms, session, authenticator, sleep):
    fake_cms.add("GET", POLL_PATH, job_response(1), job_response(2))
    fake_cms.add("POST", log_path(1), httpx.Response(200, json={}))
    fake_cms.add("POST", log_path(2), httpx.Response(200, json={}))

    async def handler(job, reporter):
        await reporter.success()

    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep, handler).run(QUEUE, max_jobs=2)

    sequence = [(r.method, r.url.path) for r in fake_cms.requests]
    assert sequence == [
        ("GET", POLL_PATH),
        ("POST", log_path(1)),
        ("GET", POLL_PATH),
        ("POST", log_path(2)),
    ]


@pytest.mark.asyncio
async def test_job_without_deployment_id_is_skipped(session, authenticator, sleep):
    handler = AsyncMock()
    loop = make_loop(MagicMock(), session, authenticator, sleep, handler)
    await loop.dispatch(DeploymentJob(queue_id="deployment_host_publish_X", deployment_id=None))
    await loop.dispatch(DeploymentJob(queue_id="deployment_host_request_X", deployment_id="abc"))
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_handler_exception_is_reported(fake_cms, session, authenticator, sleep):
    fake_cms.add("POST", log_path(7), httpx.Response(200, json={}))

    async def handler(job, reporter):
        raise RuntimeError("disk full")

    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep, handler).dispatch(
            DeploymentJob(queue_id=QUEUE, deployment_id=7)
        )

    sent = form(fake_cms.calls("POST", log_path(7))[0])
    assert sent == {"logtype": "error", "message": "disk full"}


@pytest.mark.asyncio
async def test_success_report(fake_cms, session, authenticator, sleep):
    fake_cms.add("POST", log_path(7), httpx.Response(200, json={}))
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        loop = make_loop(client, session, authenticator, sleep)
        await JobReporter(loop, DeploymentJob(queue_id=QUEUE, deployment_id=7)).success()

    assert form(fake_cms.calls("POST", log_path(7))[0]) == {"logtype": "info", "message": SUCCESS_MESSAGE}


@pytest.mark.asyncio
async def test_error_report_is_truncated(fake_cms, session, authenticator, sleep):
    fake_cms.add("POST", log_path(7), httpx.Response(200, json={}))
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep).report_error(7, "x" * 600)

    assert len(form(fake_cms.calls("POST", log_path(7))[0])["message"]) == 500


@pytest.mark.asyncio
async def test_log_without_deployment_id_is_noop(fake_cms, session, authenticator, sleep):
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep).post_log(None, "info", "hello")
    assert fake_cms.requests == []


def refuse(request):
    raise httpx.ConnectError("refused", request=request)


def sent_logs(fake_cms, deployment_id):
    return [form(r) for r in fake_cms.calls("POST", log_path(deployment_id))]


@pytest.mark.asyncio
async def test_log_redirect_renews_session_and_resends(fake_cms, session, authenticator, sleep):
    fake_cms.add("POST", log_path(7), REDIRECT, httpx.Response(200, json={}))
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep).post_log(7, "info", "hello")

    authenticator.ensure_session.assert_awaited_once()
    assert sent_logs(fake_cms, 7) == [{"logtype": "info", "message": "hello"}] * 2


@pytest.mark.asyncio
async def test_log_redirect_after_renewal_is_fatal(fake_cms, session, authenticator, sleep):
    fake_cms.add("POST", log_path(7), REDIRECT)
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        with pytest.raises(AuthenticationError):
            await make_loop(client, session, authenticator, sleep).post_log(7, "info", "hello")


@pytest.mark.asyncio
async def test_progress_log_network_error_is_dropped(fake_cms, session, authenticator, sleep):
    fake_cms.add("POST", log_path(7), refuse, httpx.Response(200, json={}))
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep).post_log(7, "info", "hello")

    sleep.assert_awaited_once_with(5.0)
    assert len(fake_cms.calls("POST", log_path(7))) == 1


@pytest.mark.asyncio
async def test_results_are_retried_until_delivered(fake_cms, session, authenticator, sleep):
    fake_cms.add("POST", log_path(7), refuse, refuse, httpx.Response(200, json={}))
    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        await make_loop(client, session, authenticator, sleep).report_success(7)

    assert [c.args for c in sleep.await_args_list] == [(5.0,), (5.0,)]
    assert len(fake_cms.calls("POST", log_path(7))) == 3
    assert sent_logs(fake_cms, 7)[-1] == {"logtype": "info", "message": SUCCESS_MESSAGE}


def deployment_fixture(fake_cms, tmp_path, deployment_id):
    archive = make_zip(tmp_path / f"{deployment_id}.zip", {"index.html": b"home"})
    fake_cms.add("GET", POLL_PATH, job_response(deployment_id))
    fake_cms.add("POST", f"/_funcs/deployment_host/{deployment_id}/download", httpx.Response(
        200, content=archive.read_bytes(), headers={"content-type": "application/zip"}
    ))


@pytest.mark.asyncio
async def test_session_expiry_mid_job_does_not_fail_the_job(
    fake_cms, make_settings, session, authenticator, sleep, target_dir, tmp_path
):
    deployment_fixture(fake_cms, tmp_path, 5)
    fake_cms.add("POST", log_path(5), REDIRECT, httpx.Response(200, json={}))
    settings = make_settings()

    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        runner = DeploymentJobRunner(settings, client, session)

        async def handler(job, reporter):
            await runner.run(job.deployment_id, reporter)

        await make_loop(client, session, authenticator, sleep, handler).run(QUEUE, max_jobs=1)

    authenticator.ensure_session.assert_awaited_once()
    assert len(fake_cms.calls("POST", "/_funcs/deployment_host/5/download")) == 1
    assert (target_dir / "index.html").read_bytes() == b"home"
    logs = sent_logs(fake_cms, 5)
    assert all(entry["logtype"] == "info" for entry in logs)
    assert logs[-1]["message"] == SUCCESS_MESSAGE


@pytest.mark.asyncio
async def test_rejected_renewal_mid_job_stops_before_next_poll(
    fake_cms, make_settings, session, authenticator, sleep, target_dir, tmp_path
):
    deployment_fixture(fake_cms, tmp_path, 5)
    fake_cms.add("POST", log_path(5), REDIRECT)
    settings = make_settings()

    async with ControlServerClient("https://cms.test", transport=fake_cms.transport) as client:
        runner = DeploymentJobRunner(settings, client, session)

        async def handler(job, reporter):
            await runner.run(job.deployment_id, reporter)

        with pytest.raises(AuthenticationError):
            await make_loop(client, session, authenticator, sleep, handler).run(QUEUE, max_jobs=2)

    assert len(fake_cms.calls("GET", POLL_PATH)) == 1
    assert fake_cms.calls("POST", "/_funcs/deployment_host/5/download") == []
