"""
Filesystem watching for tracked repositories.

The watcher is a rate-limited signal source. Any mutation under the working
tree or the git metadata directory (re)starts a per-repository debounce
timer; when the timer runs out with no further events, one trigger is
emitted. Event content is never inspected beyond dropping pure access
notifications (open / close-without-write), which our own git reads produce,
and writes to the tracker's own store files when they live inside the tree.

When the OS refuses watches (e.g. inotify limits), either at start or later
when the observer's threads die, the repository falls back to a periodic
poll trigger.
"""

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from config.settings import WatcherSettings
from shared.events import TriggerSource

logger = logging.getLogger(__name__)

_ACCESS_ONLY_EVENTS = frozenset({"opened", "closed_no_write"})


class Debouncer:
    """Trailing-edge timer: fires once after ``delay`` seconds without a touch."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[], None],
        max_wait: Optional[float] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.delay = delay
        self.callback = callback
        self.max_wait = max_wait
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._burst_started_at: Optional[float] = None
        self.touches = 0
        self.fired = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def touch(self) -> None:
        """Record an event. Must be called on the event loop thread."""
        loop = self._loop or asyncio.get_running_loop()
        now = loop.time()
        self.touches += 1
        if self._burst_started_at is None:
            self._burst_started_at = now
        if self._handle is not None:
            self._handle.cancel()
        fire_at = now + self.delay
        if self.max_wait is not None:
            fire_at = min(fire_at, self._burst_started_at + self.max_wait)
        self._handle = loop.call_at(fire_at, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._burst_started_at = None

    def _fire(self) -> None:
        self._handle = None
        self._burst_started_at = None
        self.fired += 1
        self.callback()


class _MutationHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the debouncer."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        debouncer: Debouncer,
        ignored_paths: Iterable[Path] = (),
    ):
        super().__init__()
        self._loop = loop
        self._debouncer = debouncer
        self._ignored = frozenset(str(p) for p in ignored_paths)

    def is_ignored(self, event) -> bool:
        if event.event_type in _ACCESS_ONLY_EVENTS:
            return True
        paths = [os.fsdecode(p) for p in (event.src_path, getattr(event, "dest_path", "")) if p]
        return bool(paths) and all(p in self._ignored for p in paths)

    def on_any_event(self, event):
        if self.is_ignored(event):
            return
        try:
            self._loop.call_soon_threadsafe(self._debouncer.touch)
        except RuntimeError:
            logger.debug("Event loop closed, dropping filesystem event")


def observer_healthy(observer) -> bool:
    """False once the observer or any of its emitter threads has died."""
    if not observer.is_alive():
        return False
    for emitter in getattr(observer, "emitters", ()):
        if not emitter.is_alive():
            return False
        # inotify emitters read from a separate buffer thread that can die on ENOSPC
        buffer = getattr(emitter, "_inotify", None)
        if isinstance(buffer, threading.Thread) and not buffer.is_alive():
            return False
    return True


class RepositoryWatcher:
    """Watches one repository and emits debounced reconciliation triggers."""

    def __init__(
        self,
        repo_id: str,
        paths: Iterable[Path],
        on_trigger: Callable[[TriggerSource], None],
        watcher_settings: Optional[WatcherSettings] = None,
        observer_factory: Callable[[], object] = Observer,
        ignored_paths: Iterable[Path] = (),
    ):
        self.repo_id = repo_id
        self.paths: List[Path] = [Path(p) for p in paths]
        self.ignored_paths: List[Path] = [Path(p) for p in ignored_paths]
        self.on_trigger = on_trigger
        self.settings = watcher_settings or WatcherSettings()
        self.observer_factory = observer_factory
        self.mode = "stopped"
        self.debouncer: Optional[Debouncer] = None
        self._observer = None
        self._poll_task: Optional[asyncio.Task] = None
        self._supervisor_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Start watching. Must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        self.debouncer = Debouncer(
            self.settings.debounce_seconds,
            lambda: self.on_trigger(TriggerSource.FILESYSTEM),
            max_wait=self.settings.max_wait_seconds,
            loop=loop,
        )
        observer = self.observer_factory()
        try:
            handler = _MutationHandler(loop, self.debouncer, self.ignored_paths)
            for path in self.paths:
                observer.schedule(handler, str(path), recursive=True)
            observer.start()
        except OSError as e:
            logger.warning(
                f"{self.repo_id}: filesystem watch unavailable ({e}); "
                f"polling every {self.settings.fallback_poll_seconds:.0f}s"
            )
            observer.stop()
            self._start_polling()
            return
        self._observer = observer
        self.mode = "events"
        self._supervisor_task = asyncio.create_task(
            self._supervise(), name=f"supervise:{self.repo_id}"
        )
        logger.info(f"{self.repo_id}: watching {', '.join(str(p) for p in self.paths)}")

    def _start_polling(self) -> None:
        self.mode = "polling"
        self._poll_task = asyncio.create_task(self._poll(), name=f"poll:{self.repo_id}")

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.settings.fallback_poll_seconds)
            self.on_trigger(TriggerSource.POLL)

    async def _supervise(self) -> None:
        """Switch to polling if the observer dies after a successful start."""
        while True:
            await asyncio.sleep(self.settings.fallback_poll_seconds)
            if observer_healthy(self._observer):
                continue
            logger.warning(
                f"{self.repo_id}: filesystem watch stopped delivering events; "
                f"polling every {self.settings.fallback_poll_seconds:.0f}s"
            )
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.to_thread(observer.join)
            self._start_polling()
            # Changes may have been missed while the observer was dead
            self.on_trigger(TriggerSource.POLL)
            return

    async def stop(self) -> None:
        """Stop watching and drop any pending debounce timer."""
        if self.debouncer is not None:
            self.debouncer.cancel()
        for task in (self._supervisor_task, self._poll_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._supervisor_task = None
        self._poll_task = None
        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join)
            self._observer = None
        self.mode = "stopped"
