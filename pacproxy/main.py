from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from .config import (
    DEFAULT_CLIENT_LISTEN,
    DEFAULT_DEBOUNCE_INTERVAL,
    DEFAULT_KILL_TIMEOUT,
    DEFAULT_LOG_DIR,
    DEFAULT_PAC_PATH,
    DEFAULT_PAC_URL,
    SupervisorConfig,
)
from .discovery import BinaryNotFoundError, resolve_binary
from .launcher import SupervisedProcess, SystemProxy, client_command
from .orchestrator import Orchestrator
from .pac import PacDownloadError, ensure_pac_file
from .server import ConfigServer
from .state import ConfigStore, ShutdownGate
from .types import SystemProxyError
from .watcher import FileWatcher

LOGGER = logging.getLogger("PacProxy")


def parse_args(argv: Sequence[str] | None = None) -> SupervisorConfig:
    parser = argparse.ArgumentParser(
        description="Run the proxy client with a hot-reloaded PAC system proxy."
    )
    env_bin = os.environ.get("PACPROXY_BIN")
    parser.add_argument(
        "--bin",
        type=Path,
        default=Path(env_bin) if env_bin else None,
        help="Client executable file path. Searched next to this program when omitted.",
    )
    parser.add_argument(
        "--pac",
        default=os.environ.get("PACPROXY_PAC_URL", DEFAULT_PAC_URL),
        help="PAC file URL to download into the local cache.",
    )
    parser.add_argument(
        "--server",
        default=os.environ.get("PACPROXY_SERVER"),
        help="Proxy server address. Defaults to PACPROXY_SERVER.",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("PACPROXY_PASSWORD"),
        help="Proxy server password. Defaults to PACPROXY_PASSWORD.",
    )
    parser.add_argument(
        "--update",
        action="store_true",
        help="Force to update the local pac file.",
    )
    parser.add_argument(
        "--pac-path",
        type=Path,
        default=DEFAULT_PAC_PATH,
        help="Local cache path of the PAC file; edits are hot-reloaded.",
    )
    parser.add_argument(
        "--listen",
        default=DEFAULT_CLIENT_LISTEN,
        help="Local address the proxy client listens on.",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=DEFAULT_LOG_DIR,
        help="Directory for the proxy client's log file.",
    )
    parser.add_argument(
        "--debounce",
        type=float,
        default=DEFAULT_DEBOUNCE_INTERVAL,
        help="Seconds to wait for a burst of PAC file writes to settle.",
    )
    parser.add_argument(
        "--kill-timeout",
        type=float,
        default=DEFAULT_KILL_TIMEOUT,
        help="Seconds to wait for the client to stop before killing it.",
    )

    args = parser.parse_args(argv)
    if not args.server or not args.password:
        parser.error("--server and --password are required")
    if args.debounce < 0 or args.kill_timeout < 0:
        parser.error("--debounce and --kill-timeout must be non-negative")

    return SupervisorConfig(
        server=args.server,
        password=args.password,
        bin_path=args.bin,
        pac_url=args.pac,
        pac_path=args.pac_path.expanduser().resolve(),
        update=args.update,
        listen=args.listen,
        log_dir=args.log_dir.expanduser().resolve(),
        debounce_interval=args.debounce,
        kill_timeout=args.kill_timeout,
    )


def build_orchestrator(
    config: SupervisorConfig,
    binary: Path,
    store: ConfigStore,
    server: ConfigServer,
) -> Orchestrator:
    gate = ShutdownGate()
    stop_event = asyncio.Event()
    system_proxy = SystemProxy(binary)

    def reapply() -> None:
        system_proxy.enable(server.pac_url(fresh=True))

    watcher = FileWatcher(
        config.pac_path,
        store,
        gate,
        reapply,
        stop_event=stop_event,
        debounce_interval=config.debounce_interval,
    )
    client = SupervisedProcess(
        client_command(binary, config),
        kill_timeout=config.kill_timeout,
        log_dir=config.log_dir,
    )
    return Orchestrator(
        server=server,
        system_proxy=system_proxy,
        watcher=watcher,
        client=client,
        gate=gate,
        stop_event=stop_event,
    )


async def _run(
    config: SupervisorConfig, binary: Path, store: ConfigStore, server: ConfigServer
) -> int:
    orchestrator = build_orchestrator(config, binary, store, server)
    return await orchestrator.run()


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    config = parse_args(argv)

    try:
        binary = resolve_binary(config.bin_path)
    except BinaryNotFoundError as exc:
        LOGGER.error("Can't find client binary file: %s", exc)
        return 1

    try:
        ensure_pac_file(config.pac_url, config.pac_path, force=config.update)
    except PacDownloadError as exc:
        LOGGER.error(str(exc))
        return 1

    try:
        store = ConfigStore(config.pac_path.read_bytes())
    except OSError as exc:
        LOGGER.error("Failed to load pac file %s: %s", config.pac_path, exc)
        return 1

    try:
        server = ConfigServer(store)
    except OSError as exc:
        LOGGER.error("Serve http error: %s", exc)
        return 1

    try:
        return asyncio.run(_run(config, binary, store, server))
    except SystemProxyError as exc:
        LOGGER.error("Enable system proxy error: %s", exc)
        return 1
    except OSError as exc:
        LOGGER.error("Supervisor failed: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
