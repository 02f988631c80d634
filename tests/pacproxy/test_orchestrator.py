from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List

import httpx
import pytest

from pacproxy.launcher import SupervisedProcess
from pacproxy.orchestrator import Orchestrator
from pacproxy.server import ConfigServer
from pacproxy.state import ConfigStore, ShutdownGate
from pacproxy.types import ClientExitError, SystemProxyError


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeServer:
    def __init__(self, events: List[str]) -> None:
        self.events = events

    def pac_url(self, *, fresh: bool = False) -> str:
        return "http://127.0.0.1:4321/pac" + ("?ts=1" if fresh else "")

    async def start(self) -> None:
        self.events.append("server-start")

    async def close(self) -> None:
        self.events.append("server-close")


class FakeProxy:
    def __init__(
        self,
        events: List[str],
        *,
        enable_error: str | None = None,
        enable_exception: Exception | None = None,
        disable_error: str | None = None,
    ) -> None:
        self.events = events
        self.enable_error = enable_error
        self.enable_exception = enable_exception
        self.disable_error = disable_error
        self.urls: List[str] = []

    def enable(self, url: str) -> None:
        self.events.append("enable")
        self.urls.append(url)
        if self.enable_exception is not None:
            raise self.enable_exception
        if self.enable_error:
            raise SystemProxyError(self.enable_error, output=self.enable_error)

    def disable(self) -> None:
        self.events.append("disable")
        if self.disable_error:
            raise SystemProxyError(self.disable_error, output=self.disable_error)


class FakeWatcher:
    def __init__(
        self,
        events: List[str],
        gate: ShutdownGate,
        *,
        start_error: Exception | None = None,
        stop_error: Exception | None = None,
    ) -> None:
        self.events = events
        self.gate = gate
        self.start_error = start_error
        self.stop_error = stop_error

    def start(self) -> None:
        self.events.append("watcher-start")
        if self.start_error is not None:
            raise self.start_error

    async def stop(self) -> None:
        self.events.append(f"watcher-stop(gate_closed={self.gate.closed})")
        if self.stop_error is not None:
            raise self.stop_error


class FakeClient:
    """Client that honours cancellation and can also fail on its own."""

    def __init__(self, events: List[str], *, output: str = "") -> None:
        self.events = events
        self._output = output
        self._exited: asyncio.Future[BaseException | None] | None = None
        self.started = asyncio.Event()

    @property
    def output(self) -> str:
        return self._output

    def start(self, stop_event: asyncio.Event) -> None:
        self.events.append("client-start")
        self._exited = asyncio.get_running_loop().create_future()
        self.started.set()

        async def honour_cancel() -> None:
            await stop_event.wait()
            self.exit(ClientExitError(-15, self._output))

        asyncio.ensure_future(honour_cancel())

    def exit(self, error: BaseException | None) -> None:
        assert self._exited is not None
        if not self._exited.done():
            self.events.append("client-exited")
            self._exited.set_result(error)

    async def wait(self) -> BaseException | None:
        assert self._exited is not None
        return await asyncio.shield(self._exited)


def build(
    *,
    enable_error: str | None = None,
    enable_exception: Exception | None = None,
    disable_error: str | None = None,
    watcher_error: Exception | None = None,
    watcher_stop_error: Exception | None = None,
    client_output: str = "",
) -> tuple[Orchestrator, List[str], FakeProxy, FakeClient, ShutdownGate, asyncio.Event]:
    events: List[str] = []
    gate = ShutdownGate()
    stop_event = asyncio.Event()
    proxy = FakeProxy(
        events,
        enable_error=enable_error,
        enable_exception=enable_exception,
        disable_error=disable_error,
    )
    client = FakeClient(events, output=client_output)
    orchestrator = Orchestrator(
        server=FakeServer(events),
        system_proxy=proxy,
        watcher=FakeWatcher(
            events, gate, start_error=watcher_error, stop_error=watcher_stop_error
        ),
        client=client,
        gate=gate,
        stop_event=stop_event,
        signals=(),
    )
    return orchestrator, events, proxy, client, gate, stop_event


@pytest.mark.anyio
async def test_signal_waits_for_client_before_disabling_proxy() -> None:
    orchestrator, events, proxy, client, gate, stop_event = build()
    run = asyncio.ensure_future(orchestrator.run())
    await asyncio.wait_for(client.started.wait(), timeout=5)

    orchestrator.request_shutdown(signal.SIGTERM)
    exit_code = await asyncio.wait_for(run, timeout=5)

    assert exit_code == 0
    assert stop_event.is_set()
    assert gate.closed
    assert proxy.urls == ["http://127.0.0.1:4321/pac"]
    assert events == [
        "server-start",
        "enable",
        "watcher-start",
        "client-start",
        "client-exited",
        "watcher-stop(gate_closed=True)",
        "server-close",
        "disable",
    ]


@pytest.mark.anyio
async def test_client_failure_triggers_single_teardown(
    caplog: pytest.LogCaptureFixture,
) -> None:
    orchestrator, events, _, client, gate, stop_event = build(
        client_output="dial tcp 1.2.3.4:9999: connection refused"
    )
    run = asyncio.ensure_future(orchestrator.run())
    await asyncio.wait_for(client.started.wait(), timeout=5)

    with caplog.at_level(logging.ERROR, logger="PacProxy"):
        client.exit(ClientExitError(1, client.output))
        exit_code = await asyncio.wait_for(run, timeout=5)

    assert exit_code == 1
    assert stop_event.is_set()
    assert gate.closed
    assert events.count("disable") == 1
    assert events.count("client-exited") == 1
    assert "connection refused" in caplog.text


@pytest.mark.anyio
async def test_enable_output_aborts_startup() -> None:
    orchestrator, events, _, _, gate, _ = build(enable_error="systemproxy: need root")

    with pytest.raises(SystemProxyError, match="need root"):
        await orchestrator.run()

    assert events == ["server-start", "enable", "server-close"]
    assert not gate.closed


@pytest.mark.anyio
async def test_watch_failure_restores_system_proxy() -> None:
    orchestrator, events, _, _, gate, _ = build(
        watcher_error=OSError("inotify watch limit reached")
    )

    with pytest.raises(OSError):
        await orchestrator.run()

    assert "client-start" not in events
    assert gate.closed
    assert events[-1] == "disable"
    assert events.count("disable") == 1


@pytest.mark.anyio
async def test_disable_failure_sets_exit_code_but_keeps_teardown() -> None:
    orchestrator, events, _, client, gate, _ = build(disable_error="still enabled")
    run = asyncio.ensure_future(orchestrator.run())
    await asyncio.wait_for(client.started.wait(), timeout=5)

    orchestrator.request_shutdown()
    exit_code = await asyncio.wait_for(run, timeout=5)

    assert exit_code == 1
    assert gate.closed
    assert "server-close" in events
    assert events[-1] == "disable"


@pytest.mark.anyio
async def test_watcher_stop_failure_still_restores_system_proxy(
    caplog: pytest.LogCaptureFixture,
) -> None:
    orchestrator, events, _, client, gate, _ = build(
        watcher_stop_error=UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
    )
    run = asyncio.ensure_future(orchestrator.run())
    await asyncio.wait_for(client.started.wait(), timeout=5)

    with caplog.at_level(logging.ERROR, logger="PacProxy"):
        orchestrator.request_shutdown(signal.SIGTERM)
        exit_code = await asyncio.wait_for(run, timeout=5)

    assert exit_code == 1
    assert gate.closed
    assert events[-3:] == [
        "watcher-stop(gate_closed=True)",
        "server-close",
        "disable",
    ]
    assert "Stopping PAC watcher failed" in caplog.text
    assert await orchestrator.shutdown(0) == 1


@pytest.mark.anyio
async def test_unexpected_enable_error_closes_server() -> None:
    orchestrator, events, _, _, _, _ = build(enable_exception=RuntimeError("boom"))

    with pytest.raises(RuntimeError, match="boom"):
        await orchestrator.run()

    assert events == ["server-start", "enable", "server-close"]


@pytest.mark.anyio
async def test_shutdown_is_idempotent() -> None:
    orchestrator, events, _, client, _, _ = build()
    run = asyncio.ensure_future(orchestrator.run())
    await asyncio.wait_for(client.started.wait(), timeout=5)

    orchestrator.request_shutdown()
    orchestrator.request_shutdown()
    first = await asyncio.wait_for(run, timeout=5)
    second = await orchestrator.shutdown(1)

    assert first == second == 0
    assert events.count("disable") == 1
    assert events.count("server-close") == 1


@pytest.mark.anyio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
async def test_installed_signal_handler_requests_shutdown() -> None:
    events: List[str] = []
    gate = ShutdownGate()
    client = FakeClient(events)
    orchestrator = Orchestrator(
        server=FakeServer(events),
        system_proxy=FakeProxy(events),
        watcher=FakeWatcher(events, gate),
        client=client,
        gate=gate,
        stop_event=asyncio.Event(),
        signals=(signal.SIGUSR1,),
    )
    run = asyncio.ensure_future(orchestrator.run())
    await asyncio.wait_for(client.started.wait(), timeout=5)

    os.kill(os.getpid(), signal.SIGUSR1)
    exit_code = await asyncio.wait_for(run, timeout=5)

    assert exit_code == 0
    assert events.count("disable") == 1


@pytest.mark.anyio
async def test_end_to_end_with_real_server_and_client(tmp_path: Path) -> None:
    events: List[str] = []
    gate = ShutdownGate()
    stop_event = asyncio.Event()
    store = ConfigStore(b"function FindProxyForURL() { return 'DIRECT'; }")
    server = ConfigServer(store)
    proxy = FakeProxy(events)
    client = SupervisedProcess(
        [sys.executable, "-u", "-c", "import time; print('client up'); time.sleep(60)"],
        log_dir=None,
    )
    orchestrator = Orchestrator(
        server=server,
        system_proxy=proxy,
        watcher=FakeWatcher(events, gate),
        client=client,
        gate=gate,
        stop_event=stop_event,
        signals=(),
    )
    run = asyncio.ensure_future(orchestrator.run())

    for _ in range(500):
        if "client up" in client.output:
            break
        await asyncio.sleep(0.02)
    async with httpx.AsyncClient(timeout=5.0) as http:
        response = await http.get(proxy.urls[0])
    assert response.status_code == 200
    assert response.content == store.snapshot()

    orchestrator.request_shutdown(signal.SIGINT)
    exit_code = await asyncio.wait_for(run, timeout=15)

    assert exit_code == 0
    assert client.returncode is not None
    assert events.count("disable") == 1
