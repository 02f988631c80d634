from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Iterable

from .config import BINARY_NAME

LOGGER = logging.getLogger("PacProxy.Discovery")


class BinaryNotFoundError(FileNotFoundError):
    """Raised when the proxy client binary cannot be located."""


def search_executable(directory: Path, name: str = BINARY_NAME) -> Path | None:
    """Depth-first search of ``directory`` for a file called ``name``.

    Entries are visited in name order and subdirectories are descended as they
    are encountered, so the first match in that walk wins.
    """

    for entry in sorted(directory.iterdir(), key=lambda item: item.name):
        if entry.is_dir():
            found = search_executable(entry, name)
            if found is not None:
                return found
            continue
        if entry.name == name:
            return entry
    return None


def default_search_roots() -> list[Path]:
    roots = [Path(sys.argv[0]).resolve().parent, Path.cwd().resolve()]
    unique: list[Path] = []
    for root in roots:
        if root not in unique:
            unique.append(root)
    return unique


def resolve_binary(
    explicit: Path | None,
    *,
    roots: Iterable[Path] | None = None,
    name: str = BINARY_NAME,
) -> Path:
    """Return the client binary, honouring an explicit path when given."""

    if explicit is not None:
        path = explicit.expanduser().resolve()
        if not path.is_file():
            raise BinaryNotFoundError(f"{name} binary not found at {path}")
        return path

    for root in roots if roots is not None else default_search_roots():
        try:
            found = search_executable(root, name)
        except OSError as exc:
            raise BinaryNotFoundError(f"Can't search {root} for {name}: {exc}") from exc
        if found is not None:
            LOGGER.info("Found %s binary at %s", name, found)
            return found.resolve()
    raise BinaryNotFoundError(f"{name} binary file not found")
