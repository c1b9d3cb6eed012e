"""
Pytest configuration and fixtures for deployment host tests.
"""

import json
import os
import stat
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import parse_qs, quote

import httpx
import pytest

from deploy_host.core.config import Settings
from deploy_host.core.models import Session


@pytest.fixture(autouse=True)
def clear_deploy_host_env(monkeypatch):
    """Keep DEPLOY_HOST_* variables from the developer shell out of tests."""
    for key in list(os.environ):
        if key.startswith("DEPLOY_HOST_"):
            monkeypatch.delenv(key)


def make_zip(path: Path, files: Dict[str, Union[bytes, str]]) -> Path:
    """Write a zip; names ending in / become directory entries."""
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in files.items():
            if name.endswith("/"):
                info = zipfile.ZipInfo(name)
                info.external_attr = (stat.S_IFDIR | 0o755) << 16
                zf.writestr(info, b"")
            else:
                zf.writestr(name, data)
    return path


def add_special_entry(path: Path, name: str, mode: int, data: bytes = b"") -> Path:
    with zipfile.ZipFile(path, "a") as zf:
        info = zipfile.ZipInfo(name)
        info.create_system = 3
        info.external_attr = mode << 16
        zf.writestr(info, data)
    return path


def account_cookie(password: str = "TOKEN", tstmp: str = "1700000000", name: str = "account_cms") -> str:
    payload = json.dumps({"username": "deployer", "password": password, "tstmp": tstmp})
    return f"{name}={quote('j:' + payload)}; Path=/; HttpOnly"


def form(request: httpx.Request) -> Dict[str, str]:
    body = request.read().decode()
    return {k: v[0] for k, v in parse_qs(body).items()}


class FakeCMS:
    """Route table for httpx.MockTransport that records every request."""

    def __init__(self):
        self.routes: Dict[tuple, List[Callable[[httpx.Request], httpx.Response]]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, *responders) -> None:
        """Queue responders for a route; the last one repeats."""
        self.routes.setdefault((method, path), []).extend(responders)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, text="not found")
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(responder, httpx.Response):
            # Fresh copy so a queued response can be served more than once
            return httpx.Response(
                responder.status_code,
                headers=responder.headers.multi_items(),
                content=responder.content,
            )
        if isinstance(responder, Exception):
            raise responder
        return responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
def fake_cms() -> FakeCMS:
    return FakeCMS()


@pytest.fixture
def target_dir(tmp_path: Path) -> Path:
    d = tmp_path / "site"
    d.mkdir()
    return d


@pytest.fixture
def make_settings(target_dir: Path):
    def _make(**overrides) -> Settings:
        values = dict(
            cms_url="https://cms.test",
            target_path=str(target_dir),
            host_id="TESTHOST",
            network_error_delay=0.0,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def session() -> Session:
    return Session(username="deployer", password="TOKEN", tstmp="1700000000", cookie_name="account_cms")


class RecordingSink:
    """JobSink that keeps everything it is told."""

    def __init__(self):
        self.logs: List[tuple] = []
        self.succeeded = False
        self.error: Optional[BaseException] = None

    async def log(self, logtype: str, message: str) -> None:
        self.logs.append((logtype, message))

    async def success(self) -> None:
        self.succeeded = True

    async def failure(self, error: BaseException) -> None:
        self.error = error


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
