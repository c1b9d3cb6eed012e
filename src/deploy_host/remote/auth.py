"""Login sub-flow and session cache for the control server."""

from __future__ import annotations

import asyncio
import getpass
import json
import os
from typing import Awaitable, Callable, Optional
from urllib.parse import unquote

import aiofiles
import httpx
import structlog

from deploy_host.core.exceptions import AuthenticationError, TransportError
from deploy_host.core.models import Session
from deploy_host.remote.client import ControlServerClient, is_redirect


logger = structlog.get_logger()

ACCOUNT_COOKIE_PREFIX = "account_"
MAX_LOGIN_FAILURES = 2

Prompt = Callable[[str], str]


def load_session_cache(path: str) -> Optional[Session]:
    """Read a cached session, or None when the file is missing or unreadable."""
    if not path or not os.path.exists(path):
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return Session.model_validate(json.load(f))
    except (OSError, ValueError) as e:
        logger.warning("Could not read login cache", path=path, error=str(e))
        return None


def parse_account_cookie(response: httpx.Response) -> Optional[tuple[str, dict]]:
    """Find the account cookie in Set-Cookie headers.

    The cookie name is not fixed; it is the first one starting with
    ``account_``. Its value is ``j:`` followed by JSON.
    """
    for header in response.headers.get_list("set-cookie"):
        pair = header.split(";", 1)[0]
        if "=" not in pair:
            continue
        name, value = pair.split("=", 1)
        name = name.strip()
        if not name.startswith(ACCOUNT_COOKIE_PREFIX):
            continue
        value = unquote(value.strip().strip('"'))
        if not value.startswith("j:"):
            continue
        try:
            account = json.loads(value[2:])
        except ValueError:
            continue
        if isinstance(account, dict):
            return name, account
    return None


class Authenticator:
    """Keeps the shared Session valid, logging in when the server rejects it."""

    def __init__(
        self,
        client: ControlServerClient,
        session: Session,
        *,
        password: Optional[str] = None,
        cache_file: Optional[str] = None,
        network_error_delay: float = 5.0,
        prompt: Optional[Prompt] = None,
        prompt_password: Optional[Prompt] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.session = session
        self.cache_file = cache_file
        self.network_error_delay = network_error_delay
        self._configured_password = password
        self._password: Optional[str] = password
        self._prompt = prompt or input
        self._prompt_password = prompt_password or getpass.getpass
        self._sleep = sleep

    async def probe(self) -> bool:
        """Check the session with an authenticated request; retries network errors."""
        while True:
            try:
                response = await self.client.request("GET", "/_token", self.session)
            except TransportError as e:
                logger.warning("Session probe failed", error=str(e), retry_in=self.network_error_delay)
                await self._sleep(self.network_error_delay)
                continue
            if is_redirect(response):
                self.session.invalidate()
                return False
            return True

    async def ensure_session(self) -> Session:
        """Return a valid session, logging in if needed.

        Raises:
            AuthenticationError: After two consecutive rejected logins
        """
        failures = 0
        while True:
            if await self.probe():
                return self.session
            username = await self._get_username()
            password = await self._get_password()
            if await self.login(username, password):
                logger.info("Logged in", user=username)
                return self.session
            failures += 1
            logger.error("Invalid login", user=username, attempt=failures)
            if failures >= MAX_LOGIN_FAILURES:
                raise AuthenticationError("Invalid username / password")
            if not self._configured_password:
                self._password = None

    async def login(self, username: str, password: str) -> bool:
        """Submit credentials; on success store the server-issued tokens."""
        data = {"username": username, "password": password, "remember": 0, "source": "/"}
        while True:
            try:
                response = await self.client.request("POST", "/login", data=data)
                break
            except TransportError as e:
                logger.warning("Login request failed", error=str(e), retry_in=self.network_error_delay)
                await self._sleep(self.network_error_delay)

        parsed = parse_account_cookie(response)
        if parsed is None:
            return False
        cookie_name, account = parsed
        self.session.username = username
        self.session.password = str(account.get("password") or "")
        self.session.tstmp = str(account.get("tstmp") or "")
        self.session.cookie_name = cookie_name
        await self._save_cache()
        return True

    async def _get_username(self) -> str:
        if self.session.username:
            logger.info("Using login", user=self.session.username)
            return self.session.username
        username = ""
        while not username:
            username = (await self._ask(self._prompt, "Please enter the CMS login username: ")).strip()
        self.session.username = username
        return username

    async def _get_password(self) -> str:
        while not self._password:
            self._password = await self._ask(self._prompt_password, "Please enter the CMS login password: ")
        return self._password

    async def _ask(self, prompt: Prompt, text: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, prompt, text)

    async def _save_cache(self) -> None:
        if not self.cache_file:
            return
        try:
            async with aiofiles.open(self.cache_file, "w", encoding="utf-8") as f:
                await f.write(self.session.model_dump_json())
        except OSError as e:
            logger.warning("Could not write login cache", path=self.cache_file, error=str(e))
