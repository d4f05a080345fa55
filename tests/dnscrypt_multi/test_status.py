from __future__ import annotations

import subprocess
import time
from typing import cast

import httpx
import pytest

from dnscrypt_multi.status import create_app
from dnscrypt_multi.types import Candidate, Endpoint, Instance, InstanceState, RunState

KEY = ":".join(["ABCD"] * 16)


class _StubProcess:
    def __init__(self, running: bool = True) -> None:
        self._running = running
        self.pid = 4242

    def poll(self) -> int | None:
        return None if self._running else 1


def _make_instance(index: int, *, running: bool = True) -> Instance:
    candidate = Candidate(
        resolver_address=f"10.0.0.{index}:443",
        provider_name="2.dnscrypt-cert.example.org",
        provider_key=KEY,
    )
    candidate.record_latency(0.01 * index)
    return Instance(
        endpoint=Endpoint(f"127.0.100.{index}", 53),
        candidate=candidate,
        process=cast(subprocess.Popen[bytes], _StubProcess(running)),
        started_at=time.time(),
        state=InstanceState.ACTIVE,
    )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_live_endpoint_reports_alive() -> None:
    app = create_app(RunState(1))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/live")

    assert response.status_code == 200
    assert response.json() == {"status": "alive"}


@pytest.mark.anyio
async def test_ready_endpoint_without_instances_is_unavailable() -> None:
    app = create_app(RunState(2))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/ready")

    assert response.status_code == 503
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["max_instances"] == 2


@pytest.mark.anyio
async def test_ready_endpoint_lists_alive_instances() -> None:
    state = RunState(2)
    state.register(_make_instance(1))
    state.register(_make_instance(2, running=False))
    app = create_app(state)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/ready")

    assert response.status_code == 200
    payload = response.json()
    assert payload["alive_instances"] == ["127.0.100.1:53"]
    assert payload["total_instances"] == 2
    assert payload["phase"] == "running"


@pytest.mark.anyio
async def test_instances_endpoint_describes_each_instance() -> None:
    state = RunState(1)
    state.register(_make_instance(1))
    app = create_app(state)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/instances")

    [entry] = response.json()
    assert entry["endpoint"] == "127.0.100.1:53"
    assert entry["resolver_address"] == "10.0.0.1:443"
    assert entry["pid"] == 4242
    assert entry["state"] == "active"
    assert entry["alive"] is True
