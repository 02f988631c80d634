from __future__ import annotations

import enum
from dataclasses import dataclass


@dataclass(frozen=True)
class Endpoint:
    """Bound address of the local PAC server."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class ProcessState(str, enum.Enum):
    """Lifecycle of a supervised process."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


class SystemProxyError(RuntimeError):
    """Raised when a system proxy toggle command fails to start or reports output."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class ClientExitError(RuntimeError):
    """Raised (or reported) when the proxy client exits with a non-zero status."""

    def __init__(self, returncode: int | None, output: str = "") -> None:
        super().__init__(f"Proxy client exited with code {returncode}")
        self.returncode = returncode
        self.output = output
