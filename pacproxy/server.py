from __future__ import annotations

import asyncio
import logging
import socket
import time

import uvicorn

from .api import create_app
from .config import DEFAULT_PAC_HOST
from .state import ConfigStore
from .types import Endpoint

LOGGER = logging.getLogger("PacProxy.Server")

_LISTEN_BACKLOG = 100
_GRACEFUL_SHUTDOWN_TIMEOUT = 2


class ConfigServer:
    """Serve the PAC blob on a loopback port chosen by the OS.

    The listening socket is bound at construction so the endpoint is known
    before any worker starts, and it never changes afterwards.
    """

    def __init__(self, store: ConfigStore, *, host: str = DEFAULT_PAC_HOST) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((host, 0))
            sock.listen(_LISTEN_BACKLOG)
        except OSError:
            sock.close()
            raise
        sock.setblocking(False)
        self._socket = sock
        bound_host, bound_port = sock.getsockname()[:2]
        self._endpoint = Endpoint(host=bound_host, port=bound_port)

        config = uvicorn.Config(
            create_app(store),
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=_GRACEFUL_SHUTDOWN_TIMEOUT,
        )
        self._server = uvicorn.Server(config)
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    def pac_url(self, *, fresh: bool = False) -> str:
        """URL of the PAC file; ``fresh`` adds a timestamp to defeat caches."""

        url = f"http://{self._endpoint}/pac"
        if fresh:
            url += f"?ts={int(time.time())}"
        return url

    async def start(self) -> None:
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        # _serve skips uvicorn's own signal capture; signals belong to the
        # orchestrator.
        self._task = loop.create_task(self._server._serve(sockets=[self._socket]))
        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise RuntimeError("PAC server stopped during startup.")
            await asyncio.sleep(0.01)
        LOGGER.info("PAC server listening on %s", self._endpoint)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._server.should_exit = True
        if self._task is not None:
            try:
                await self._task
            except Exception as exc:
                LOGGER.warning("PAC server stopped with error: %s", exc)
        self._socket.close()
        LOGGER.info("PAC server on %s closed.", self._endpoint)
