from __future__ import annotations

import asyncio
import logging
import signal
from typing import Protocol, Sequence

from .state import ShutdownGate
from .types import SystemProxyError

LOGGER = logging.getLogger("PacProxy")

SHUTDOWN_SIGNALS: tuple[int, ...] = tuple(
    getattr(signal, name)
    for name in ("SIGHUP", "SIGINT", "SIGTERM", "SIGQUIT")
    if hasattr(signal, name)
)


class PacServer(Protocol):
    def pac_url(self, *, fresh: bool = False) -> str: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...


class ProxyToggle(Protocol):
    def enable(self, url: str) -> None: ...

    def disable(self) -> None: ...


class Watcher(Protocol):
    def start(self) -> None: ...

    async def stop(self) -> None: ...


class Client(Protocol):
    @property
    def output(self) -> str: ...

    def start(self, stop_event: asyncio.Event) -> None: ...

    async def wait(self) -> BaseException | None: ...


class Orchestrator:
    """Run the supervisor's workers and own the single shutdown path.

    The orchestrator wakes on either an operator signal or the client's own
    exit, cancels the shared stop event and converges on :meth:`shutdown`,
    which closes the gate before touching the system proxy so a late file
    write cannot re-enable it.
    """

    def __init__(
        self,
        *,
        server: PacServer,
        system_proxy: ProxyToggle,
        watcher: Watcher,
        client: Client,
        gate: ShutdownGate,
        stop_event: asyncio.Event,
        signals: Sequence[int] = SHUTDOWN_SIGNALS,
    ) -> None:
        self._server = server
        self._system_proxy = system_proxy
        self._watcher = watcher
        self._client = client
        self._gate = gate
        self._stop_event = stop_event
        self._signals = tuple(signals)
        self._terminate_requested = asyncio.Event()
        self._received_signal: int | None = None
        self._installed_signals: list[int] = []
        self._shutdown_lock = asyncio.Lock()
        self._exit_code: int | None = None

    def request_shutdown(self, signum: int | None = None) -> None:
        """Ask the supervisor to stop; this is what the signal handlers call."""

        if self._received_signal is None:
            self._received_signal = signum
        self._terminate_requested.set()

    async def run(self) -> int:
        await self._server.start()

        LOGGER.info("Enable system proxy ...")
        try:
            await asyncio.to_thread(self._system_proxy.enable, self._server.pac_url())
        except Exception:
            await self._server.close()
            raise

        try:
            self._watcher.start()
        except Exception:
            LOGGER.error("Can't watch pac file; restoring system proxy.")
            await self.shutdown(1)
            raise

        self._install_signal_handlers()
        self._client.start(self._stop_event)
        return await self._supervise()

    async def _supervise(self) -> int:
        terminate_wait = asyncio.ensure_future(self._terminate_requested.wait())
        client_exit = asyncio.ensure_future(self._client.wait())
        await asyncio.wait(
            {terminate_wait, client_exit}, return_when=asyncio.FIRST_COMPLETED
        )

        if client_exit.done():
            terminate_wait.cancel()
            error = client_exit.result()
            if error is None:
                LOGGER.warning("Proxy client exited unexpectedly.")
                exit_code = 0
            else:
                LOGGER.error(
                    "Proxy client failed: %s (%s)", error, self._client.output
                )
                exit_code = 1
            self._stop_event.set()
        else:
            LOGGER.info("Received %s, shutting down ...", self._signal_label())
            self._stop_event.set()
            error = await client_exit
            LOGGER.info("Proxy client stopped: %s", error or "clean exit")
            exit_code = 0

        return await self.shutdown(exit_code)

    async def shutdown(self, exit_code: int = 0) -> int:
        """Tear everything down once; later calls return the first result."""

        async with self._shutdown_lock:
            if self._exit_code is not None:
                return self._exit_code

            self._stop_event.set()
            try:
                await asyncio.to_thread(self._gate.close)
                try:
                    await self._watcher.stop()
                except Exception as exc:
                    LOGGER.error("Stopping PAC watcher failed: %s", exc)
                    exit_code = 1
                try:
                    await self._server.close()
                except Exception as exc:
                    LOGGER.error("Closing PAC server failed: %s", exc)
                    exit_code = 1
            finally:
                LOGGER.info("Disable system proxy ...")
                try:
                    await asyncio.to_thread(self._system_proxy.disable)
                except SystemProxyError as exc:
                    LOGGER.error("Disable system proxy error: %s", exc)
                    exit_code = 1
                else:
                    LOGGER.info("Bye ...")

                self._remove_signal_handlers()
                self._exit_code = exit_code
            return exit_code

    def _signal_label(self) -> str:
        if self._received_signal is None:
            return "shutdown request"
        try:
            return signal.Signals(self._received_signal).name
        except ValueError:
            return f"signal {self._received_signal}"

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in self._signals:
            try:
                loop.add_signal_handler(signum, self.request_shutdown, signum)
            except NotImplementedError:
                # Windows event loops lack add_signal_handler.
                signal.signal(
                    signum,
                    lambda received, _frame: loop.call_soon_threadsafe(
                        self.request_shutdown, received
                    ),
                )
            self._installed_signals.append(signum)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in self._installed_signals:
            try:
                loop.remove_signal_handler(signum)
            except NotImplementedError:
                signal.signal(signum, signal.SIG_DFL)
        self._installed_signals.clear()
