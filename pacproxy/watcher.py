from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable

from watchdog.events import (
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .config import DEFAULT_DEBOUNCE_INTERVAL
from .state import ConfigStore, ShutdownGate
from .types import SystemProxyError

LOGGER = logging.getLogger("PacProxy.Watcher")

ReapplyFunc = Callable[[], None]
SleepFunc = Callable[[float], Awaitable[Any]]
WatchItem = FileSystemEvent | Exception


def _normalize(path: Any) -> str:
    # Resolve the directory only; the file itself may be replaced by a rename.
    candidate = Path(os.fsdecode(path))
    return os.path.normcase(str(candidate.parent.resolve() / candidate.name))


class PacFileEventHandler(FileSystemEventHandler):
    """Forward write-type events for a single file to a callback.

    Editors often save through a temporary file that is renamed over the
    target, so creations and moves onto the target count as writes.
    """

    def __init__(self, path: Path, forward: Callable[[WatchItem], None]) -> None:
        super().__init__()
        self._target = _normalize(path)
        self._forward = forward

    def dispatch(self, event: FileSystemEvent) -> None:
        try:
            super().dispatch(event)
        except Exception as exc:
            self._forward(exc)

    def on_modified(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileModifiedEvent) and self._matches(event.src_path):
            self._forward(event)

    def on_created(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileCreatedEvent) and self._matches(event.src_path):
            self._forward(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileMovedEvent) and self._matches(event.dest_path):
            self._forward(event)

    def _matches(self, path: Any) -> bool:
        return _normalize(path) == self._target


class FileWatcher:
    """Hot-reload the PAC file into the store and reapply the system proxy.

    Bursts of writes are collapsed: after the first write event the watcher
    waits ``debounce_interval`` seconds, discards everything queued in the
    meantime and reloads once. Reloads hold the shutdown gate, so nothing is
    reapplied once teardown has closed it.
    """

    def __init__(
        self,
        path: Path,
        store: ConfigStore,
        gate: ShutdownGate,
        reapply: ReapplyFunc,
        *,
        stop_event: asyncio.Event,
        debounce_interval: float = DEFAULT_DEBOUNCE_INTERVAL,
        sleep: SleepFunc = asyncio.sleep,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self._path = path
        self._store = store
        self._gate = gate
        self._reapply = reapply
        self._stop_event = stop_event
        self._debounce_interval = debounce_interval
        self._sleep = sleep
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue[WatchItem] | None = None
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()

        handler = PacFileEventHandler(self._path, self.notify)
        observer = self._observer_factory()
        watch_dir = self._path.parent.resolve()
        observer.schedule(handler, str(watch_dir), recursive=False)
        observer.start()
        self._observer = observer
        self._task = self._loop.create_task(self._watch())
        LOGGER.info("Watching PAC file %s for changes.", self._path)

    def notify(self, item: WatchItem) -> None:
        """Queue an event or watch error; safe to call from any thread."""

        if self._loop is None or self._events is None:
            raise RuntimeError("Watcher has not been started.")
        self._loop.call_soon_threadsafe(self._events.put_nowait, item)

    async def stop(self) -> None:
        self._stop_event.set()
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join)
        task, self._task = self._task, None
        if task is not None:
            try:
                await task
            except Exception as exc:
                LOGGER.error("PAC watch loop failed: %s", exc)

    def reload(self) -> bool:
        """Reload the PAC file and reapply it unless the gate is closed.

        Returns True when the store was updated. Read and reapply failures are
        logged and only affect this cycle.
        """

        with self._gate:
            if self._gate.closed:
                LOGGER.info("Shutdown in progress; skipping PAC reload.")
                return False
            try:
                data = self._path.read_bytes()
            except OSError as exc:
                LOGGER.error("Failed to reload PAC file %s: %s", self._path, exc)
                return False
            self._store.replace(data)
            try:
                self._reapply()
            except SystemProxyError as exc:
                LOGGER.error("Failed to update PAC config: %s", exc)
            else:
                LOGGER.info("PAC update successful (%s bytes).", len(data))
            return True

    async def _watch(self) -> None:
        assert self._events is not None
        stop_wait = asyncio.ensure_future(self._stop_event.wait())
        try:
            while True:
                next_item = asyncio.ensure_future(self._events.get())
                await asyncio.wait(
                    {next_item, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop_wait.done():
                    next_item.cancel()
                    break

                item = next_item.result()
                if isinstance(item, Exception):
                    LOGGER.error("Watch PAC file error: %s", item)
                    continue

                coalesced = await self._debounce()
                if self._stop_event.is_set():
                    break
                LOGGER.info(
                    "PAC file has changed (%s, %s coalesced); updating PAC config.",
                    item.event_type,
                    coalesced,
                )
                try:
                    await asyncio.to_thread(self.reload)
                except Exception:
                    LOGGER.exception("Unexpected error while reloading PAC file.")
                if self._gate.closed:
                    break
        finally:
            stop_wait.cancel()
        LOGGER.debug("PAC watch loop stopped.")

    async def _debounce(self) -> int:
        """Wait out the quiescence window, then drop what arrived during it."""

        await self._sleep(self._debounce_interval)
        assert self._events is not None
        drained = 0
        while True:
            try:
                item = self._events.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(item, Exception):
                LOGGER.error("Watch PAC file error: %s", item)
            else:
                drained += 1
        return drained
