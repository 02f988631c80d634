from __future__ import annotations

import asyncio
import logging
import subprocess
from collections import deque
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Sequence

from .config import (
    DEFAULT_CLIENT_IP,
    DEFAULT_KILL_TIMEOUT,
    DEFAULT_LOG_DIR,
    DEFAULT_TOGGLE_TIMEOUT,
    SupervisorConfig,
)
from .types import ClientExitError, ProcessState, SystemProxyError

LOGGER = logging.getLogger("PacProxy.Launcher")

_LOG_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 5
_OUTPUT_LINES = 200

ToggleRunner = Callable[[Sequence[str]], None]


def run_toggle(command: Sequence[str], *, timeout: float = DEFAULT_TOGGLE_TIMEOUT) -> None:
    """Run a short-lived toggle command and fail on any output it prints.

    The toggle tools report failures as diagnostics on stdout/stderr rather
    than through their exit status, so output is the failure signal. A
    command still running after ``timeout`` seconds is killed and reported
    as a failure.
    """

    try:
        completed = subprocess.run(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise SystemProxyError(
            f"{command[0]} did not finish within {timeout:.1f}s"
        ) from exc
    except OSError as exc:
        raise SystemProxyError(f"Failed to start {command[0]}: {exc}") from exc

    # Localized diagnostics need not match the locale encoding.
    output = (completed.stdout or b"").decode("utf-8", errors="replace").strip()
    if output:
        raise SystemProxyError(output, output=output)
    if completed.returncode != 0:
        LOGGER.warning(
            "Command %s exited with code %s without output.",
            command[0],
            completed.returncode,
        )


class SystemProxy:
    """Enable or disable the OS proxy settings through the client binary."""

    def __init__(self, binary: Path, *, runner: ToggleRunner = run_toggle) -> None:
        self._binary = binary
        self._run = runner

    def enable(self, url: str) -> None:
        LOGGER.debug("Pointing system proxy at %s", url)
        self._run([str(self._binary), "systemproxy", "--url", url])

    def disable(self) -> None:
        self._run([str(self._binary), "systemproxy", "-r"])


def client_command(binary: Path, config: SupervisorConfig) -> list[str]:
    return [
        str(binary),
        "client",
        "--ip",
        DEFAULT_CLIENT_IP,
        "--listen",
        config.listen,
        "--server",
        config.server,
        "--password",
        config.password,
    ]


def _configure_logger(name: str, log_dir: Path | None) -> logging.Logger:
    logger = logging.getLogger(f"PacProxyClient.{name}")
    logger.setLevel(logging.INFO)
    if log_dir is None:
        return logger

    logger.propagate = False
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = (log_dir / f"{name}.log").resolve()
    if not any(
        isinstance(handler, RotatingFileHandler) and handler.baseFilename == str(log_path)
        for handler in logger.handlers
    ):
        handler = RotatingFileHandler(
            log_path, maxBytes=_LOG_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8"
        )
        formatter = logging.Formatter(
            "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


class SupervisedProcess:
    """One invocation of the long-running proxy client.

    The exit notification is created no later than :meth:`start`, before the
    process is spawned, so a caller awaiting :meth:`wait` can never miss it.
    It is resolved exactly once: ``None`` for a clean exit, otherwise
    the start error or a :class:`ClientExitError`. A new process needs a new
    instance.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        name: str = "client",
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        log_dir: Path | None = DEFAULT_LOG_DIR,
    ) -> None:
        if not command:
            raise ValueError("Command must not be empty.")
        self._command = list(command)
        self._name = name
        self._kill_timeout = kill_timeout
        self._log_dir = log_dir
        self._output: deque[str] = deque(maxlen=_OUTPUT_LINES)
        self._exited: asyncio.Future[BaseException | None] | None = None
        self._task: asyncio.Task[None] | None = None
        self.state = ProcessState.NOT_STARTED
        self.pid: int | None = None
        self.returncode: int | None = None

    @property
    def output(self) -> str:
        return "\n".join(self._output)

    def start(self, stop_event: asyncio.Event) -> None:
        if self.state is not ProcessState.NOT_STARTED:
            raise RuntimeError(f"Process '{self._name}' was already started.")
        loop = asyncio.get_running_loop()
        self._ensure_future()
        self.state = ProcessState.STARTING
        self._task = loop.create_task(self._run(stop_event))

    async def wait(self) -> BaseException | None:
        """Wait for the process to exit and return its error, if any."""

        return await asyncio.shield(self._ensure_future())

    def _ensure_future(self) -> asyncio.Future[BaseException | None]:
        if self._exited is None:
            self._exited = asyncio.get_running_loop().create_future()
        return self._exited

    async def _run(self, stop_event: asyncio.Event) -> None:
        error: BaseException | None = None
        try:
            error = await self._spawn_and_wait(stop_event)
        except Exception as exc:
            LOGGER.exception("Supervising '%s' failed: %s", self._name, exc)
            error = exc
        finally:
            self.state = ProcessState.EXITED
            exited = self._ensure_future()
            if not exited.done():
                exited.set_result(error)

    async def _spawn_and_wait(self, stop_event: asyncio.Event) -> BaseException | None:
        logger = _configure_logger(self._name, self._log_dir)
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            LOGGER.error("Failed to start '%s': %s", self._name, exc)
            return exc

        self.pid = process.pid
        self.state = ProcessState.RUNNING
        LOGGER.info("Launched '%s' (pid=%s).", self._name, process.pid)

        pump = asyncio.ensure_future(self._pump_stream(process.stdout, logger))
        exit_wait = asyncio.ensure_future(process.wait())
        stop_wait = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({exit_wait, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not exit_wait.done():
                await self._terminate(process, exit_wait)
        finally:
            stop_wait.cancel()
        returncode = await exit_wait
        await pump

        self.returncode = returncode
        LOGGER.info("'%s' exited with code %s.", self._name, returncode)
        if returncode == 0:
            return None
        return ClientExitError(returncode, self.output)

    async def _terminate(
        self, process: asyncio.subprocess.Process, exit_wait: asyncio.Future[int]
    ) -> None:
        LOGGER.info("Terminating '%s' (pid=%s)...", self._name, process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(asyncio.shield(exit_wait), timeout=self._kill_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "'%s' did not exit within %.1fs; forcing kill.",
                self._name,
                self._kill_timeout,
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _pump_stream(
        self, stream: asyncio.StreamReader | None, logger: logging.Logger
    ) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            self._output.append(text)
            logger.info("%s", text)
