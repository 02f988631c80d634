from __future__ import annotations

import httpx
import pytest

from pacproxy.server import ConfigServer
from pacproxy.state import ConfigStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_endpoint_is_bound_at_construction() -> None:
    server = ConfigServer(ConfigStore(b""))
    try:
        endpoint = server.endpoint
        assert endpoint.host == "127.0.0.1"
        assert endpoint.port > 0
        assert str(endpoint) == f"127.0.0.1:{endpoint.port}"
        assert server.pac_url() == f"http://127.0.0.1:{endpoint.port}/pac"
    finally:
        await server.close()


@pytest.mark.anyio
async def test_fresh_url_carries_timestamp(monkeypatch: pytest.MonkeyPatch) -> None:
    server = ConfigServer(ConfigStore(b""))
    try:
        monkeypatch.setattr("pacproxy.server.time.time", lambda: 1700000000.5)
        assert server.pac_url(fresh=True) == f"{server.pac_url()}?ts=1700000000"
    finally:
        await server.close()


@pytest.mark.anyio
async def test_serves_store_over_loopback_and_closes() -> None:
    store = ConfigStore(b"before")
    server = ConfigServer(store)
    endpoint = server.endpoint
    await server.start()
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            first = await client.get(server.pac_url())
            store.replace(b"after")
            second = await client.get(server.pac_url(fresh=True))
            missing = await client.get(f"http://{endpoint}/nope")
    finally:
        await server.close()

    assert server.endpoint == endpoint
    assert first.status_code == 200
    assert first.content == b"before"
    assert second.content == b"after"
    assert missing.status_code == 404

    async with httpx.AsyncClient(timeout=2.0) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get(server.pac_url())


@pytest.mark.anyio
async def test_close_is_idempotent_and_safe_before_start() -> None:
    server = ConfigServer(ConfigStore(b""))
    await server.close()
    await server.close()
