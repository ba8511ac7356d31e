"""Tests for AuthorizationCore wiring and lifecycle."""

from __future__ import annotations

import httpx
import pytest

from breakglass.config import Config, GrantsConfig
from breakglass.errors import BreakGlassError
from breakglass.iam import IamTokenProvider
from breakglass.policy import PolicyClient
from breakglass.service import AuthorizationCore


async def _no_sleep(_seconds):
    return None


def _policy():
    def handler(request):
        return httpx.Response(200, json={"result": []})
    return PolicyClient("https://snow.test", "t", transport=httpx.MockTransport(handler), retry_delay=0)


def _core(keyring, index=None, **kwargs) -> AuthorizationCore:
    config = Config(grants=GrantsConfig(bootstrap_delay=0))
    return AuthorizationCore(
        config, keyring=keyring, index=index, policy=_policy(), iam=IamTokenProvider(), sleep=_no_sleep, **kwargs,
    )


@pytest.mark.asyncio
async def test_start_bootstraps_and_opens_gate(keyring, fake_index, clock):
    core = _core(keyring, fake_index, clock=clock)
    assert core.gate.enabled is False

    await core.start()
    result = await core.wait_bootstrapped()
    assert result.completed is True
    assert core.gate.enabled is True

    clock.now = 1001
    core.grants.add_authorization("K", "I", "u", "s", "T", "R", "P", 1000)
    assert core.grants.get_authorization("K", "R", "P") is not None
    assert [doc_id for _doc, _index, doc_id in fake_index.bulk] == ["api+I"]

    await core.stop()
    assert not core.scheduler.running


@pytest.mark.asyncio
async def test_index_unavailable_is_soft(keyring, monkeypatch, clock):
    monkeypatch.delenv("SECRETCREDENTIALS_es_key", raising=False)
    core = _core(keyring, clock=clock)
    await core.start()
    result = await core.wait_bootstrapped()

    assert result.completed is False
    assert core.gate.enabled is False
    with pytest.raises(BreakGlassError):
        core.index()

    clock.now = 1001
    core.grants.add_authorization("K", "I", "u", "s", "T", "R", "P", 1000)
    assert core.grants.get_authorization("K", "R", "P") is not None
    await core.stop()


@pytest.mark.asyncio
async def test_sweeps_registered(keyring, fake_index):
    core = _core(keyring, fake_index)
    core.policy.cache.add("e", "R", False)
    await core.scheduler.tick(force=True)
    names = {s["name"]: s["run_count"] for s in core.scheduler.status()}
    assert names == {"policy-sweep": 1, "iam-sweep": 1}
    await core.stop()


@pytest.mark.asyncio
async def test_wait_before_start_returns_none(keyring, fake_index):
    core = _core(keyring, fake_index)
    assert await core.wait_bootstrapped() is None
    await core.stop()
