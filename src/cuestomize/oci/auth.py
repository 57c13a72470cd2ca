"""
Registry transport client with OCI distribution authentication.

An ``AuthClient`` is an immutable description of how to talk to registries
(credential, user agent, timeouts). Each transfer opens its own
``AuthSession``, which owns the aiohttp session and the bearer token cache.
The shared ``DEFAULT_CLIENT`` therefore never accumulates state.

Auth flow per request:
1. Send with a cached ``Authorization`` header for the scope, if any.
2. On 401, parse ``WWW-Authenticate``:
   - ``Basic``: answer with the credential's username/password.
   - ``Bearer``: fetch a token from the challenge realm and cache it.
3. Retry once. A second 401 is returned to the caller.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlsplit

import aiohttp
import orjson

from cuestomize.oci.errors import TransferError, UnauthorizedError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from contextlib import AbstractAsyncContextManager
    from types import TracebackType

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "cuestomize"

# Challenge parameters: key="quoted value" or key=token
_CHALLENGE_PARAM = re.compile(r'([A-Za-z][A-Za-z0-9_-]*)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]*))')


@dataclass(frozen=True)
class Credential:
    """Registry credential.

    Attributes:
        username: Basic auth username.
        password: Basic auth password.
        refresh_token: OAuth2 refresh token (identity token).
        access_token: Registry bearer token used as-is.
    """

    username: str = ""
    password: str = field(default="", repr=False)
    refresh_token: str = field(default="", repr=False)
    access_token: str = field(default="", repr=False)

    @property
    def is_empty(self) -> bool:
        """Check if no secret material is set."""
        return not (self.username or self.password or self.refresh_token or self.access_token)

    def basic_header(self) -> str:
        """Build a Basic ``Authorization`` header value."""
        raw = f"{self.username}:{self.password}".encode()
        return f"Basic {base64.b64encode(raw).decode()}"


EMPTY_CREDENTIAL = Credential()


@dataclass(frozen=True)
class Challenge:
    """Parsed ``WWW-Authenticate`` challenge."""

    scheme: str
    params: dict[str, str] = field(default_factory=dict)


def parse_challenge(header: str) -> Challenge:
    """Parse a ``WWW-Authenticate`` header value.

    Example:
        >>> parse_challenge('Bearer realm="https://auth.io/token",service="reg"').params["service"]
        'reg'
    """
    scheme, _, rest = header.strip().partition(" ")
    params: dict[str, str] = {}
    for match in _CHALLENGE_PARAM.finditer(rest):
        key, quoted, bare = match.groups()
        value = quoted if quoted is not None else bare
        params[key.lower()] = value.replace('\\"', '"')
    return Challenge(scheme=scheme.lower(), params=params)


def repository_scope(repository: str, *actions: str) -> str:
    """Build a ``repository:<name>:<actions>`` token scope."""
    return f"repository:{repository}:{','.join(actions)}"


@dataclass(frozen=True)
class RegistryResponse:
    """Fully read HTTP response."""

    status: int
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower())

    def json(self) -> Any:
        """Decode the body as JSON."""
        return orjson.loads(self.body)


class Transport(Protocol):
    """Session able to issue registry requests."""

    async def request(
        self,
        method: str,
        url: str,
        *,
        scopes: Sequence[str] = (),
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
    ) -> RegistryResponse: ...


class TransportClient(Protocol):
    """Factory for per-transfer transports."""

    def open(self) -> AbstractAsyncContextManager[Transport]: ...


@dataclass(frozen=True)
class AuthClient:
    """Immutable registry client configuration.

    Attributes:
        credential: Credential used for Basic and Bearer challenges.
        user_agent: ``User-Agent`` header value.
        connect_timeout_s: Connection timeout per request.
        read_timeout_s: Socket read timeout per request.
    """

    credential: Credential = EMPTY_CREDENTIAL
    user_agent: str = DEFAULT_USER_AGENT
    connect_timeout_s: float = 30.0
    read_timeout_s: float = 300.0

    def __post_init__(self) -> None:
        if self.connect_timeout_s <= 0:
            raise ValueError(f"connect_timeout_s must be > 0, got {self.connect_timeout_s}")
        if self.read_timeout_s <= 0:
            raise ValueError(f"read_timeout_s must be > 0, got {self.read_timeout_s}")

    def open(self) -> AuthSession:
        """Create a session; use it as an async context manager."""
        return AuthSession(self)


# Anonymous client used when no client is supplied. Never mutated.
DEFAULT_CLIENT = AuthClient()


class AuthSession:
    """One aiohttp session plus a token cache, bound to an ``AuthClient``."""

    def __init__(self, client: AuthClient) -> None:
        self._client = client
        self._session: aiohttp.ClientSession | None = None
        # (host, scopes) -> Authorization header value
        self._auth_cache: dict[tuple[str, tuple[str, ...]], str] = {}

    async def __aenter__(self) -> AuthSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=None,
                sock_connect=self._client.connect_timeout_s,
                sock_read=self._client.read_timeout_s,
            )
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self._client.user_agent},
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        data: bytes | dict[str, str] | None,
        params: list[tuple[str, str]] | None = None,
    ) -> RegistryResponse:
        session = self._get_session()
        try:
            async with session.request(
                method, url, headers=dict(headers), data=data, params=params
            ) as resp:
                body = await resp.read()
                return RegistryResponse(
                    status=resp.status,
                    url=str(resp.url),
                    headers={k.lower(): v for k, v in resp.headers.items()},
                    body=body,
                )
        except (aiohttp.ClientError, TimeoutError) as e:
            raise TransferError(f"{method} {url} failed: {str(e) or type(e).__name__}") from e

    async def request(
        self,
        method: str,
        url: str,
        *,
        scopes: Sequence[str] = (),
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
    ) -> RegistryResponse:
        """Send a request, answering one auth challenge if needed.

        Raises:
            TransferError: On connection errors and socket timeouts.
            UnauthorizedError: If a bearer token cannot be obtained.
        """
        host = urlsplit(url).netloc
        cache_key = (host, tuple(sorted(scopes)))
        request_headers = dict(headers or {})

        cached = self._auth_cache.get(cache_key)
        if cached:
            request_headers["Authorization"] = cached
        resp = await self._send(method, url, request_headers, data)
        if resp.status != 401:
            return resp

        challenge = parse_challenge(resp.header("www-authenticate") or "")
        credential = self._client.credential
        if challenge.scheme == "basic":
            if not credential.username:
                return resp
            authorization = credential.basic_header()
        elif challenge.scheme == "bearer":
            token = await self._fetch_token(challenge, scopes)
            authorization = f"Bearer {token}"
        else:
            return resp

        if authorization == cached:
            # Same answer already rejected
            return resp
        self._auth_cache[cache_key] = authorization
        request_headers["Authorization"] = authorization
        logger.debug(
            "Retrying request with credentials",
            extra={"method": method, "host": host, "scheme": challenge.scheme},
        )
        return await self._send(method, url, request_headers, data)

    async def _fetch_token(self, challenge: Challenge, scopes: Sequence[str]) -> str:
        """Obtain a bearer token for the challenge realm."""
        credential = self._client.credential
        if credential.access_token:
            return credential.access_token

        realm = challenge.params.get("realm", "")
        if not realm:
            raise UnauthorizedError("bearer challenge without realm", status=401)
        service = challenge.params.get("service", "")
        all_scopes = list(scopes)
        challenge_scope = challenge.params.get("scope", "")
        for scope in challenge_scope.split(" "):
            if scope and scope not in all_scopes:
                all_scopes.append(scope)

        if credential.refresh_token:
            form = {
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
                "service": service,
                "scope": " ".join(all_scopes),
                "client_id": self._client.user_agent,
            }
            resp = await self._send("POST", realm, {}, form)
        else:
            query = [("service", service)] if service else []
            query.extend(("scope", scope) for scope in all_scopes)
            token_headers = {}
            if credential.username:
                token_headers["Authorization"] = credential.basic_header()
            resp = await self._send("GET", realm, token_headers, None, params=query)

        if resp.status != 200:
            raise UnauthorizedError(
                f"failed to fetch bearer token from {realm}: HTTP {resp.status}",
                status=resp.status,
            )
        try:
            payload = resp.json()
        except orjson.JSONDecodeError as e:
            raise UnauthorizedError(f"invalid token response from {realm}: {e}") from e
        if not isinstance(payload, dict):
            raise UnauthorizedError(f"invalid token response from {realm}", status=resp.status)
        token = payload.get("access_token") or payload.get("token")
        if not token:
            raise UnauthorizedError(f"token response from {realm} carries no token")
        return str(token)

