"""PolicyClient: ServiceNow user authorization with a decision cache in front.

Usage:
    client = PolicyClient.from_config(config)
    decisions = await client.authorize("user@example.com", [crn1, crn2])
    await client.aclose()
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from breakglass.config import Config
from breakglass.errors import BreakGlassError, ErrorCode
from breakglass.logging_setup import correlation_scope
from breakglass.policy.cache import ResourceAuthCache
from breakglass.policy.crn import is_public_crn, service_crn, service_from_crn
from breakglass.telemetry import span

logger = logging.getLogger("breakglass.policy")

AUTHORIZATION_PATH = "/api/ibmwc/v1/gaas/userAuthorization"


# --- Wire models ---


class Authorized(BaseModel):
    valid: bool = False
    message: str = ""


class AuthorizationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_name: str = ""
    crn: str = ""
    user_type: str = Field(default="", alias="userType")
    service_type: str = Field(default="", alias="serviceType")
    authorized: Authorized = Field(default_factory=Authorized)


class AuthorizationResponse(BaseModel):
    result: list[AuthorizationResult] = Field(default_factory=list)
    error: dict[str, Any] | None = None


class PolicyClient:
    """Batch resource authorization against ServiceNow."""

    def __init__(
        self,
        base_url: str,
        token: str,
        cache: ResourceAuthCache | None = None,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        bypass: bool = False,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url or not token:
            logger.warning("no ServiceNow URL or token provided")
        if bypass:
            logger.warning("bypass flag is active, no resource authorization is performed")
        self._base_url = base_url.rstrip("/")
        self._token = token if token.startswith("Bearer") else f"Bearer {token}"
        self.cache = cache if cache is not None else ResourceAuthCache()
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._bypass = bypass
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, config: Config, transport: httpx.AsyncBaseTransport | None = None) -> "PolicyClient":
        p = config.policy
        cache = ResourceAuthCache(
            max_size=p.max_size,
            positive_ttl=p.positive_ttl,
            negative_ttl=p.negative_ttl,
            user_type_ttl=p.user_type_ttl,
            service_type_ttl=p.service_type_ttl,
        )
        return cls(
            p.base_url, p.token, cache,
            timeout=p.timeout, max_retries=p.max_retries, bypass=p.bypass, transport=transport,
        )

    @property
    def bypass(self) -> bool:
        return self._bypass

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={
                    "Authorization": self._token,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        return self._client

    # ------------------------------------------------------------------ #
    #  Core API methods                                                   #
    # ------------------------------------------------------------------ #

    async def authorize(self, email: str, crns: list[str]) -> dict[str, bool]:
        """Map each CRN to whether ``email`` may access it.

        Cached decisions short-circuit; bypass and public CRNs are allowed
        locally; the rest go to ServiceNow in one request. Raises
        BreakGlassError(VALIDATION_ERROR) for missing input and
        BreakGlassError(POLICY_ERROR) when ServiceNow cannot be reached.
        """
        if not email:
            raise BreakGlassError(ErrorCode.VALIDATION_ERROR, "no email provided")
        if not crns:
            raise BreakGlassError(ErrorCode.VALIDATION_ERROR, "no crns provided")

        decisions: dict[str, bool] = {}
        batch: list[str] = []
        with span("breakglass-SNAuth", SNAuthTransaction=1) as rec:
            for crn in dict.fromkeys(crns):
                allowed, found = self.cache.lookup(email, crn)
                if found:
                    decisions[crn] = allowed
                elif self._bypass:
                    logger.warning("bypass flag is true, allowing %s without authorization", crn)
                    decisions[crn] = True
                    self.cache.add(email, crn, True)
                elif is_public_crn(crn):
                    logger.debug("public CRN %s, access allowed", crn)
                    decisions[crn] = True
                    self.cache.add(email, crn, True)
                else:
                    batch.append(crn)

            if not batch:
                return decisions

            with correlation_scope("snauth"):
                remote = await self._authorize_remote(email, batch)
            for crn, allowed in remote.items():
                decisions[crn] = allowed
                self.cache.add(email, crn, allowed)
                if not allowed:
                    rec.set_tags(SNAuthEmail=email, SNAuthAuthorized=False, SNAuthCRN=crn)
                    try:
                        rec.set_tag("SNAuthServiceName", service_from_crn(crn))
                    except BreakGlassError:
                        pass
        return decisions

    async def get_user_type(self, email: str, crns: list[str]) -> str:
        """User type from cache, else from a ServiceNow call. Empty string when unknown."""
        user_type = self.cache.get_user_type(email)
        if user_type:
            return user_type
        try:
            await self._authorize_remote(email, crns)
        except BreakGlassError as exc:
            logger.warning("could not look up user type: %s", exc.message)
            return ""
        return self.cache.get_user_type(email)

    async def get_service_type(self, service: str, email: str) -> str:
        service_type = self.cache.get_service_type(service)
        if service_type:
            return service_type
        try:
            await self._authorize_remote(email, [service_crn(service)])
        except BreakGlassError as exc:
            logger.warning("could not look up service type: %s", exc.message)
            return ""
        return self.cache.get_service_type(service)

    # ------------------------------------------------------------------ #
    #  Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    async def _authorize_remote(self, email: str, crns: list[str]) -> dict[str, bool]:
        """Call ServiceNow and learn user/service types from the response."""
        if not crns:
            return {}
        response = await self._call(email, crns)
        decisions = {}
        for result in response.result:
            decisions[result.crn] = result.authorized.valid
            if result.user_name and result.user_type:
                self.cache.add_user_type(result.user_name, result.user_type)
            if result.crn and result.service_type:
                self.cache.add_service_type(result.crn, result.service_type)
            if not result.authorized.valid and result.authorized.message:
                logger.info("ServiceNow denied %s: %s", result.crn, result.authorized.message)
        return decisions

    async def _call(self, email: str, crns: list[str]) -> AuthorizationResponse:
        body = [{"user_name": email, "crn": crn} for crn in crns]
        status = 0
        last_error = ""
        started = time.monotonic()
        for attempt in range(1, self._max_retries + 1):
            try:
                resp = await self._http().post(AUTHORIZATION_PATH, json=body)
            except httpx.HTTPError as exc:
                status, last_error = -1, str(exc)
                logger.warning("ServiceNow request failed (attempt %d/%d): %s", attempt, self._max_retries, exc)
            else:
                status = resp.status_code
                if status == 200:
                    logger.debug("ServiceNow answered in %.3fs", time.monotonic() - started)
                    return _decode(resp)
                last_error = resp.text
                logger.warning("ServiceNow returned status %d (attempt %d/%d)", status, attempt, self._max_retries)
                if status < 500:
                    break
            if attempt < self._max_retries and self._retry_delay > 0:
                await self._sleep(self._retry_delay * 2 ** (attempt - 1))

        raise BreakGlassError(
            ErrorCode.POLICY_ERROR,
            f"ServiceNow returned unexpected status. Status={status};",
            {"error": last_error[:200]},
            status_code=status,
        )


def _decode(resp: httpx.Response) -> AuthorizationResponse:
    try:
        return AuthorizationResponse.model_validate(resp.json())
    except (ValueError, ValidationError) as exc:
        raise BreakGlassError(
            ErrorCode.POLICY_ERROR, "failed to decode ServiceNow response", status_code=resp.status_code,
        ) from exc
