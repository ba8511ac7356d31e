"""IamTokenProvider: exchange API keys for IAM bearer tokens, with a cache.

Tokens are cached per key name for ``token_ttl`` seconds (45 minutes by
default). A cached token that IAM reports as expiring within five minutes is
refreshed early.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

import httpx
from pydantic import BaseModel, ValidationError

from breakglass.config import Config
from breakglass.errors import BreakGlassError, ErrorCode

logger = logging.getLogger("breakglass.iam")

TOKEN_PATH = "/identity/token"
GRANT_TYPE = "urn:ibm:params:oauth:grant-type:apikey"
EXPIRY_MARGIN = 300

# IAM error codes that point at the caller's key or user, not at IAM itself
_USER_SIDE_ERRORS = {
    400: ("BXNIM0410E", "BXNIM0415E"),
    401: ("BXNIM0436E",),
}


class TokenResponse(BaseModel):
    access_token: str = ""
    expires_in: int = 0
    expiration: int = 0


@dataclass
class CachedToken:
    token: str
    refreshed: int
    expires: int


def potential_iam_problem(status: int, body: str) -> bool:
    """False when the failure is a documented user-side IAM error."""
    return not any(code in body for code in _USER_SIDE_ERRORS.get(status, ()))


class IamTokenProvider:
    def __init__(
        self,
        url: str = "https://iam.cloud.ibm.com",
        *,
        token_ttl: int = 2700,
        timeout: float = 30.0,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._token_ttl = token_ttl
        self._timeout = timeout
        self._max_size = max_size
        self._clock = clock
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        self._lock = threading.Lock()
        self._tokens: dict[str, CachedToken] = {}

    @classmethod
    def from_config(cls, config: Config, transport: httpx.AsyncBaseTransport | None = None) -> "IamTokenProvider":
        return cls(
            config.iam.url,
            token_ttl=config.iam.token_ttl,
            timeout=config.iam.timeout,
            max_size=config.policy.max_size,
            transport=transport,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def cached(self, key_name: str) -> str | None:
        """Cached bearer token for ``key_name``, or None if missing or stale."""
        now = int(self._clock())
        with self._lock:
            entry = self._tokens.get(key_name)
            if entry is None or not self._valid(entry, now):
                return None
            return entry.token

    def invalidate(self, key_name: str) -> None:
        with self._lock:
            self._tokens.pop(key_name, None)

    def sweep(self) -> int:
        now = int(self._clock())
        with self._lock:
            stale = [name for name, entry in self._tokens.items() if not self._valid(entry, now)]
            for name in stale:
                del self._tokens[name]
        return len(stale)

    def _valid(self, entry: CachedToken, now: int) -> bool:
        return now - entry.refreshed < self._token_ttl and now < entry.expires - EXPIRY_MARGIN

    async def get_token(self, key_name: str, api_key: str) -> str:
        """Return ``"Bearer <access token>"`` for ``api_key``.

        Raises BreakGlassError(IAM_ERROR); ``details["potential_iam_problem"]``
        tells whether IAM itself may be unhealthy.
        """
        token = self.cached(key_name)
        if token is not None:
            logger.debug("using cached IAM token for %s", key_name)
            return token

        response = await self._exchange(api_key)
        now = int(self._clock())
        if response.expiration:
            expires = response.expiration
        elif response.expires_in:
            expires = now + response.expires_in
        else:
            expires = now + self._token_ttl + EXPIRY_MARGIN
        token = f"Bearer {response.access_token}"

        with self._lock:
            if key_name in self._tokens or len(self._tokens) < self._max_size:
                self._tokens[key_name] = CachedToken(token=token, refreshed=now, expires=expires)
            else:
                logger.warning("IAM token cache is at the maximum size (%d), not caching", self._max_size)
        logger.info("obtained IAM token for %s", key_name)
        return token

    async def _exchange(self, api_key: str) -> TokenResponse:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._url, timeout=self._timeout, transport=self._transport,
            )
        url = self._url + TOKEN_PATH
        try:
            resp = await self._client.post(
                TOKEN_PATH,
                data={"grant_type": GRANT_TYPE, "apikey": api_key},
                auth=("bx", "bx"),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise BreakGlassError(
                ErrorCode.IAM_ERROR, f"request to URL {url} failed: {exc}",
                {"potential_iam_problem": True}, status_code=-1,
            ) from exc

        if resp.status_code != 200:
            problem = potential_iam_problem(resp.status_code, resp.text)
            raise BreakGlassError(
                ErrorCode.IAM_ERROR,
                f"request to URL {url} failed with status code {resp.status_code}. "
                f"Potential problem with IAM: {problem}",
                {"potential_iam_problem": problem},
                status_code=resp.status_code,
            )
        try:
            response = TokenResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise BreakGlassError(ErrorCode.IAM_ERROR, "could not decode IAM token response") from exc
        if not response.access_token:
            raise BreakGlassError(ErrorCode.IAM_ERROR, "empty access token from IAM")
        return response
