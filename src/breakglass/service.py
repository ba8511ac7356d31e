"""AuthorizationCore: builds every component from config and runs their background work.

Usage:
    core = AuthorizationCore(load_config())
    await core.start()          # bootstrap runs in the background
    grant = core.grants.get_authorization(api_key, resource, permission)
    decisions = await core.policy.authorize(email, crns)
    await core.stop()

Nothing here is global: each core owns its write gate, key ring, index
client and caches, so several cores can live side by side in tests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from breakglass.config import Config
from breakglass.crypto import KeyRing
from breakglass.errors import BreakGlassError, ErrorCode
from breakglass.grants import BootstrapLoader, BootstrapResult, GrantCache, WriteGate
from breakglass.iam import IamTokenProvider
from breakglass.index.base import SearchIndex
from breakglass.index.client import IndexClient
from breakglass.policy import PolicyClient
from breakglass.scheduler import Scheduler

logger = logging.getLogger("breakglass.service")


class AuthorizationCore:
    def __init__(
        self,
        config: Config,
        *,
        keyring: KeyRing | None = None,
        index: SearchIndex | None = None,
        policy: PolicyClient | None = None,
        iam: IamTokenProvider | None = None,
        gate: WriteGate | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.keyring = keyring if keyring is not None else KeyRing.from_env(config.encryption.master_key_env)
        self.gate = gate if gate is not None else WriteGate()
        self.policy = policy if policy is not None else PolicyClient.from_config(config)
        self.iam = iam if iam is not None else IamTokenProvider.from_config(config)

        self._index = index
        self._index_error: BreakGlassError | None = None
        self._owns_index = index is None

        self.grants = GrantCache(
            self.keyring,
            self.gate,
            self.index,
            index_name=config.grants.index_name,
            duration_limit=config.grants.duration_limit,
            clock=clock,
        )
        self.bootstrap = BootstrapLoader(
            self.grants,
            self.index,
            self.keyring,
            self.gate,
            index_name=config.grants.index_name,
            delay=config.grants.bootstrap_delay,
            sleep=sleep,
        )
        self.scheduler = Scheduler()
        self.scheduler.register("policy-sweep", self._sweep_policy, config.policy.sweep_interval)
        self.scheduler.register("iam-sweep", self._sweep_iam, config.policy.sweep_interval)
        self._bootstrap_task: asyncio.Task | None = None

    def index(self) -> SearchIndex:
        """The index client. Raises BreakGlassError when it could not be built."""
        if self._index is not None:
            return self._index
        if self._index_error is not None:
            raise self._index_error
        raise BreakGlassError(ErrorCode.INDEX_DISABLED, "index client is not started")

    async def start(self) -> None:
        if self._index is None and self._owns_index:
            try:
                client = IndexClient.from_config(self.config)
            except BreakGlassError as exc:
                self._index_error = exc
                logger.error("index client unavailable, grants will not be persisted: %s", exc.message)
            else:
                await client.start()
                self._index = client
        self.scheduler.start()
        self._bootstrap_task = asyncio.ensure_future(self.bootstrap.run())
        logger.info("authorization core started")

    async def wait_bootstrapped(self) -> BootstrapResult | None:
        if self._bootstrap_task is None:
            return None
        return await self._bootstrap_task

    async def stop(self) -> None:
        if self._bootstrap_task is not None and not self._bootstrap_task.done():
            self._bootstrap_task.cancel()
            try:
                await self._bootstrap_task
            except asyncio.CancelledError:
                pass
        self._bootstrap_task = None
        await self.scheduler.stop()
        if self._owns_index and isinstance(self._index, IndexClient):
            await self._index.aclose()
            self._index = None
        await self.policy.aclose()
        await self.iam.aclose()
        logger.info("authorization core stopped")

    async def _sweep_policy(self) -> dict[str, int]:
        return {"removed": self.policy.cache.sweep()}

    async def _sweep_iam(self) -> dict[str, int]:
        return {"removed": self.iam.sweep()}
