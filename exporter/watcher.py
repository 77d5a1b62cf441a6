"""
Plugin directory watcher.

Turns filesystem change notifications for the plugin directory into loader
calls. Built on watchfiles.awatch, so the task sleeps until the OS reports a
change; nothing polls unless force_polling is requested.

Event handling:
    created / modified / renamed -> loader.reload(path)
    removed                      -> loader.remove(path) (policy decides)

Errors never end the watch. A failed plugin load is logged by the loader; a
directory that disappears or cannot be watched is logged and the watch is
re-established after retry_delay seconds. Files that appeared while the
directory was not watched are picked up by a rescan when the watch resumes.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Set, Tuple

from loguru import logger
from watchfiles import Change, awatch

from .errors import DirectoryAccessError
from .plugins.loader import PluginLoader


class ChangeKind(str, Enum):
    """Kinds of plugin directory changes."""
    CREATED = "created"
    MODIFIED = "modified"
    RENAMED = "renamed"
    REMOVED = "removed"


_CHANGE_KINDS = {
    Change.added: ChangeKind.CREATED,
    Change.modified: ChangeKind.MODIFIED,
    Change.deleted: ChangeKind.REMOVED,
}


@dataclass(frozen=True)
class WatchEvent:
    """One change of one file in the plugin directory."""
    path: str
    kind: ChangeKind

    @classmethod
    def from_change(cls, change: Change, path: str) -> "WatchEvent":
        return cls(path=path, kind=_CHANGE_KINDS[change])


class DirectoryWatcher:
    """
    Long-lived watcher of the plugin directory.

    Runs as one asyncio task for the whole process lifetime. stop() ends the
    underlying awatch iteration.
    """

    def __init__(
        self,
        directory,
        loader: PluginLoader,
        debounce_ms: int = 1600,
        force_polling: bool = False,
        poll_delay_ms: int = 300,
        retry_delay: float = 5.0,
    ):
        """
        Initialize the watcher.

        Args:
            directory: Plugin directory to watch (non-recursive)
            loader: Loader receiving the events
            debounce_ms: watchfiles debounce window for grouping changes
            force_polling: Poll instead of using native notifications
            poll_delay_ms: Poll period when polling
            retry_delay: Seconds to wait before re-watching after an error
        """
        self.directory = Path(directory)
        self.loader = loader
        self.debounce_ms = debounce_ms
        self.force_polling = force_polling
        self.poll_delay_ms = poll_delay_ms
        self.retry_delay = retry_delay

        self.is_running = False
        self.events_handled = 0
        self._rescan = False
        self._stop_event = asyncio.Event()

    async def run(self):
        """Watch until stop() is called."""
        log = logger.bind(context="DirectoryWatcher.run")
        log.info(f"Watching plugin directory {self.directory}")
        self.is_running = True
        self._stop_event.clear()

        try:
            while not self._stop_event.is_set():
                try:
                    await self._watch_once()
                except (DirectoryAccessError, OSError, RuntimeError) as e:
                    self._rescan = True
                    error = e if isinstance(e, DirectoryAccessError) else DirectoryAccessError(
                        str(self.directory), str(e)
                    )
                    log.error(f"{error}; retrying in {self.retry_delay:g}s")
                    await self._wait_for_retry()
        except asyncio.CancelledError:
            log.info("Directory watcher cancelled")
            raise
        finally:
            self.is_running = False
            log.info("Directory watcher stopped")

    def stop(self):
        """Ask the watch loop to end."""
        self._stop_event.set()

    async def _watch_once(self):
        if not self.directory.is_dir():
            raise FileNotFoundError(f"{self.directory} is not a directory")

        if self._rescan:
            logger.bind(context="DirectoryWatcher._watch_once").info(
                f"Plugin directory {self.directory} is available again, rescanning"
            )
            await self.loader.load_directory(self.directory)
            self._rescan = False

        async for changes in awatch(
            self.directory,
            recursive=False,
            stop_event=self._stop_event,
            debounce=self.debounce_ms,
            force_polling=self.force_polling,
            poll_delay_ms=self.poll_delay_ms,
        ):
            await self.handle_changes(changes)

    async def _wait_for_retry(self):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.retry_delay)
        except asyncio.TimeoutError:
            pass

    async def handle_changes(self, changes: Iterable[Tuple[Change, str]]):
        """
        Dispatch one batch of watchfiles changes.

        A file reported with several changes in one batch is handled once:
        as a modification if it still exists, as a removal otherwise.
        """
        grouped: Dict[str, Set[Change]] = {}
        for change, path in changes:
            grouped.setdefault(path, set()).add(change)

        for path in sorted(grouped):
            kinds = grouped[path]
            if len(kinds) == 1:
                event = WatchEvent.from_change(next(iter(kinds)), path)
            elif Path(path).exists():
                event = WatchEvent(path=path, kind=ChangeKind.MODIFIED)
            else:
                event = WatchEvent(path=path, kind=ChangeKind.REMOVED)
            await self.handle_event(event)

    async def handle_event(self, event: WatchEvent):
        """Route a single event to the loader."""
        log = logger.bind(context="DirectoryWatcher.handle_event")
        if not self.loader.is_eligible(event.path):
            return

        log.debug(f"Plugin file {event.kind.value}: {event.path}")
        self.events_handled += 1
        if event.kind is ChangeKind.REMOVED:
            self.loader.remove(event.path)
        else:
            await self.loader.reload(event.path)
