"""HTTP client for the CMS control server."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx
import structlog

from deploy_host.core.exceptions import RequestTimeout, TransportError
from deploy_host.core.models import Session


logger = structlog.get_logger()


class ControlServerClient:
    """Thin wrapper over httpx that attaches session cookies and maps errors.

    Redirects are not followed unless asked for: the server answers an
    expired session with a redirect to its login page.
    """

    def __init__(
        self,
        base_url: str,
        *,
        verify: bool = True,
        timeout: float = 60.0,
        max_redirects: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            verify=verify,
            timeout=httpx.Timeout(timeout),
            max_redirects=max_redirects,
            follow_redirects=False,
            transport=transport,
        )

    def url(self, path: str) -> str:
        return self.base_url + path

    async def request(
        self,
        method: str,
        path: str,
        session: Optional[Session] = None,
        *,
        data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        headers = session.cookie_header() if session else {}
        try:
            response = await self._client.request(
                method,
                path,
                data=data,
                headers=headers,
                timeout=httpx.Timeout(timeout or self.timeout),
            )
        except httpx.TimeoutException as e:
            raise RequestTimeout(f"Timeout: {method} {self.url(path)}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Error connecting to {self.url(path)} :: {e!r}") from e
        # Session state lives in Session, not in the client cookie jar
        self._client.cookies.clear()
        return response

    async def request_json(
        self,
        method: str,
        path: str,
        session: Optional[Session] = None,
        **kwargs: Any,
    ) -> Tuple[httpx.Response, Optional[Any]]:
        """Send a request and decode the body as JSON when possible."""
        response = await self.request(method, path, session, **kwargs)
        try:
            payload = json.loads(response.text) if response.text else None
        except ValueError:
            payload = None
        return response, payload

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        path: str,
        session: Optional[Session] = None,
        *,
        data: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[httpx.Response]:
        """Stream a response body, following a bounded number of redirects."""
        headers = session.cookie_header() if session else {}
        try:
            async with self._client.stream(
                method, path, data=data, headers=headers, follow_redirects=True
            ) as response:
                yield response
            self._client.cookies.clear()
        except httpx.TooManyRedirects as e:
            raise TransportError(f"Maximum number of redirects exceeded: {self.url(path)}") from e
        except httpx.TimeoutException as e:
            raise RequestTimeout(f"Timeout: {method} {self.url(path)}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Error connecting to {self.url(path)} :: {e!r}") from e

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ControlServerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


def is_redirect(response: httpx.Response) -> bool:
    return response.status_code in (301, 302, 303, 307, 308)
