from __future__ import annotations

"""
Local cache of the PAC file served to the operating system.

The PAC file is downloaded once into a local cache path and re-used on later
runs; ``--update`` forces a fresh download. Editing the cached file while the
supervisor runs is picked up by the watcher and reapplied.

Run ``python -m pacproxy.pac --update`` to refresh the cache without starting
the supervisor.
"""

import argparse
import logging
import os
from pathlib import Path
from typing import Sequence

import httpx
from pydantic import BaseModel, ConfigDict

from .config import DEFAULT_PAC_PATH, DEFAULT_PAC_URL

LOGGER = logging.getLogger("PacProxy.PAC")

_DOWNLOAD_TIMEOUT = 30.0


class PacDownloadError(RuntimeError):
    """Raised when the PAC file cannot be downloaded or saved."""


class PacFetchResult(BaseModel):
    """Return type describing the local PAC cache."""

    model_config = ConfigDict(frozen=True)

    path: Path
    source: str
    downloaded: bool
    size: int


def download_pac(url: str, *, client: httpx.Client | None = None) -> bytes:
    owns_client = client is None
    http = client or httpx.Client(timeout=_DOWNLOAD_TIMEOUT, follow_redirects=True)
    try:
        response = http.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise PacDownloadError(f"Can't download pac file: {exc}") from exc
    finally:
        if owns_client:
            http.close()

    data = response.content
    if not data:
        raise PacDownloadError(f"Downloaded pac file from {url} is empty")
    return data


def ensure_pac_file(
    url: str,
    path: Path,
    *,
    force: bool = False,
    client: httpx.Client | None = None,
) -> PacFetchResult:
    """Download the PAC file into ``path`` if it is missing or ``force`` is set."""

    if path.exists() and not force:
        LOGGER.info(
            "Using the cached pac file %s, run with --update to force update the pac file",
            path,
        )
        return PacFetchResult(
            path=path, source=url, downloaded=False, size=path.stat().st_size
        )

    LOGGER.info("Downloading pac file from %s ...", url)
    data = download_pac(url, client=client)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as exc:
        raise PacDownloadError(f"Save pac file error: {exc}") from exc
    LOGGER.info("Saved %s bytes of PAC data to %s", len(data), path)
    return PacFetchResult(path=path, source=url, downloaded=True, size=len(data))


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Download the PAC file cache.")
    parser.add_argument(
        "--pac",
        default=os.environ.get("PACPROXY_PAC_URL", DEFAULT_PAC_URL),
        help="PAC file URL (defaults to PACPROXY_PAC_URL or the built-in list).",
    )
    parser.add_argument("--pac-path", type=Path, default=DEFAULT_PAC_PATH)
    parser.add_argument(
        "--update", action="store_true", help="Replace an existing cached file."
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> PacFetchResult:
    args = _parse_cli_args(argv)
    result = ensure_pac_file(args.pac, args.pac_path, force=args.update)
    print(result.model_dump_json())
    return result


if __name__ == "__main__":
    main()
