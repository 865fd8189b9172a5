"""Request simulation for security probes.

Probes never talk to the production surface directly. They go through a
RequestSimulator, whose default implementation sends real HTTP requests to a
sandbox deployment and tags each one with the X-Security-Probe header so
the surface can route it away from real user data.

This module provides:
- SimulatedResponse: Status code and body of one simulated call
- SessionProbe: Session identifiers observed before and after a login
- RequestSimulator: Protocol consumed by the probe checks
- HttpxRequestSimulator: httpx implementation against a sandbox base URL
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

PROBE_HEADER = "X-Security-Probe"
CSRF_HEADER = "X-CSRF-Token"
SESSION_COOKIE = "session_id"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(frozen=True)
class SimulatedResponse:
    status_code: int
    text: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class SessionProbe:
    """Session identifiers seen around a login.

    regenerated is False only when a session existed before login and the
    same identifier is still in use afterwards.
    """

    before: str | None
    after: str | None

    @property
    def regenerated(self) -> bool:
        return self.before is None or self.before != self.after


@runtime_checkable
class RequestSimulator(Protocol):
    async def request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        *,
        authenticated: bool = True,
        csrf: bool = True,
        as_user: str | None = None,
    ) -> SimulatedResponse: ...

    async def session_ids_around_login(self) -> SessionProbe: ...


class HttpxRequestSimulator:
    """Sends probe traffic to a sandbox deployment with httpx.

    Args:
        base_url: Sandbox base URL
        timeout_seconds: Per-request timeout
        auth_token: Bearer token used for authenticated requests
        user_tokens: Bearer tokens per user id, used with as_user
        csrf_token: Anti-forgery token sent on state-changing requests unless
            a call opts out with csrf=False
        login_endpoint: Endpoint that establishes an authenticated session
        session_endpoint: Endpoint that issues an anonymous session cookie
        transport: Optional httpx transport (tests pass an ASGITransport)

    Example:
        >>> simulator = HttpxRequestSimulator("http://sandbox:8000", auth_token="t")
        >>> response = await simulator.request("GET", "/admin", authenticated=False)
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        auth_token: str | None = None,
        user_tokens: dict[str, str] | None = None,
        csrf_token: str | None = None,
        login_endpoint: str = "/api/login",
        session_endpoint: str = "/api/session",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._auth_token = auth_token
        self._user_tokens = user_tokens or {}
        self._csrf_token = csrf_token
        self.login_endpoint = login_endpoint
        self.session_endpoint = session_endpoint
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={PROBE_HEADER: "1"},
        )

    def _headers(
        self, method: str, authenticated: bool, csrf: bool, as_user: str | None
    ) -> dict[str, str]:
        headers: dict[str, str] = {}
        token = self._user_tokens.get(as_user) if as_user is not None else self._auth_token
        if authenticated and token:
            headers["Authorization"] = f"Bearer {token}"
        if csrf and self._csrf_token and method.upper() not in SAFE_METHODS:
            headers[CSRF_HEADER] = self._csrf_token
        return headers

    async def request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        *,
        authenticated: bool = True,
        csrf: bool = True,
        as_user: str | None = None,
    ) -> SimulatedResponse:
        """Send one probe request.

        GET requests carry data as query parameters, other methods as JSON.
        State-changing methods carry the configured anti-forgery token unless
        csrf is False.

        Raises:
            httpx.HTTPError: If the sandbox cannot be reached
        """
        headers = self._headers(method, authenticated, csrf, as_user)
        async with self._client() as client:
            if method.upper() == "GET":
                response = await client.request(method, endpoint, params=data, headers=headers)
            else:
                response = await client.request(method, endpoint, json=data, headers=headers)
        logger.debug("Probe %s %s -> %d", method, endpoint, response.status_code)
        return SimulatedResponse(
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
        )

    async def session_ids_around_login(self) -> SessionProbe:
        """Obtain an anonymous session, log in with it and compare identifiers."""
        async with self._client() as client:
            await client.get(self.session_endpoint)
            before = client.cookies.get(SESSION_COOKIE)
            await client.post(
                self.login_endpoint,
                headers=self._headers("POST", True, True, None),
            )
            after = client.cookies.get(SESSION_COOKIE)
        return SessionProbe(before=before, after=after)
