"""Change-notification monitoring of autoscan roots built on watchdog."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Literal, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from contentsync.store.models import INVALID_OBJECT_ID

from .models import INVALID_SCAN_ID, AutoscanDirectory

if TYPE_CHECKING:
    from contentsync.content.manager import ContentManager

LOGGER = logging.getLogger(__name__)

EventKind = Literal["created", "modified", "deleted", "moved_from", "moved_to"]


@dataclass(frozen=True)
class ChangeEvent:
    """Normalized filesystem event.

    Attributes:
        path: Path the event refers to.
        kind: What happened to ``path``.
        is_directory: Whether ``path`` is a directory.
    """

    path: Path
    kind: EventKind
    is_directory: bool


def translate_event(event: FileSystemEvent) -> List[ChangeEvent]:
    """Convert a watchdog event into zero or more :class:`ChangeEvent` values."""
    src = Path(os.fsdecode(event.src_path))
    is_directory = bool(event.is_directory)
    if event.event_type == "moved":
        dest = Path(os.fsdecode(event.dest_path))
        return [
            ChangeEvent(src, "moved_from", is_directory),
            ChangeEvent(dest, "moved_to", is_directory),
        ]
    kind = {
        "created": "created",
        "deleted": "deleted",
        "modified": "modified",
        "closed": "modified",
    }.get(event.event_type)
    if kind is None:
        return []
    return [ChangeEvent(src, kind, is_directory)]  # type: ignore[arg-type]


class ChangeMonitor:
    """Watch inotify autoscan roots and turn events into rescan requests.

    Events are delivered on the watchdog observer thread; handling them only
    looks up stored containers and queues tasks through the content manager.
    """

    def __init__(self, content: "ContentManager", *, verify_delay: float = 60) -> None:
        self._content = content
        self._verify_delay = verify_delay
        self._lock = threading.Lock()
        self._observer: Optional[Observer] = None
        self._watches: Dict[Path, ObservedWatch] = {}

    def start(self) -> None:
        with self._lock:
            if self._observer is not None:
                return
            self._observer = Observer()
            self._observer.start()

    def stop(self) -> None:
        with self._lock:
            observer = self._observer
            self._observer = None
            self._watches.clear()
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

    def monitor(self, adir: AutoscanDirectory) -> None:
        """Watch ``adir``; a missing root is watched through its parent."""
        self.unmonitor(adir)
        with self._lock:
            if self._observer is None:
                return
            target, recursive = adir.location, adir.recursive
            if not target.is_dir():
                target, recursive = adir.location.parent, False
                if not target.is_dir():
                    LOGGER.warning("Cannot watch %s: no existing parent directory", adir.location)
                    return
            handler = _AutoscanEventHandler(self, adir)
            try:
                watch = self._observer.schedule(handler, str(target), recursive=recursive)
            except OSError as exc:
                LOGGER.warning("Cannot watch %s: %s", target, exc)
                return
            self._watches[adir.location] = watch
            LOGGER.debug("Watching %s for %s", target, adir.location)

    def unmonitor(self, adir: AutoscanDirectory) -> None:
        with self._lock:
            watch = self._watches.pop(adir.location, None)
            if watch is not None and self._observer is not None:
                try:
                    self._observer.unschedule(watch)
                except KeyError:
                    pass

    def arm_verification(self, adir: AutoscanDirectory) -> None:
        """Schedule a one-shot rescan to catch events missed so far."""
        if self._verify_delay <= 0 or adir.scan_id == INVALID_SCAN_ID:
            return
        timer = self._content.timer
        parameter = adir.timer_parameter
        if not timer.has_subscriber(self._content, parameter):
            timer.add_subscriber(self._content, self._verify_delay, parameter, once=True)

    def handle_event(self, adir: AutoscanDirectory, event: ChangeEvent) -> None:
        """Translate ``event`` for ``adir`` into persistent-root handling or a rescan."""
        if adir.scan_id == INVALID_SCAN_ID:
            return
        root = adir.location
        content = self._content

        if event.path == root:
            if event.kind in ("deleted", "moved_from"):
                content.handle_persistent_autoscan_remove(adir)
                return
            if event.kind in ("created", "moved_to"):
                content.handle_persistent_autoscan_recreate(adir)
                self._request_rescan(adir, adir.object_id)
                return
            self._request_rescan(adir, adir.object_id)
            return

        if not event.path.is_relative_to(root) or adir.object_id == INVALID_OBJECT_ID:
            return
        if event.kind in ("deleted", "moved_from") and not event.is_directory:
            if content.remove_path(adir, event.path):
                return
        if event.is_directory and event.kind == "modified":
            directory = event.path
        else:
            directory = event.path.parent
        self._request_rescan(adir, self._nearest_container(root, directory))

    def _nearest_container(self, root: Path, directory: Path) -> int:
        store = self._content.store
        while True:
            object_id = store.find_object_id_by_path(directory)
            if object_id != INVALID_OBJECT_ID or directory == root or directory == directory.parent:
                return object_id
            directory = directory.parent

    def _request_rescan(self, adir: AutoscanDirectory, object_id: int) -> None:
        if not self._content.trigger_autoscan(adir, object_id):
            self.arm_verification(adir)


class _AutoscanEventHandler(FileSystemEventHandler):
    """Forward watchdog events of one autoscan root to the monitor."""

    def __init__(self, monitor: ChangeMonitor, adir: AutoscanDirectory) -> None:
        self._monitor = monitor
        self._adir = adir

    def on_any_event(self, event: FileSystemEvent) -> None:
        for change in translate_event(event):
            try:
                self._monitor.handle_event(self._adir, change)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to handle %s event for %s", change.kind, change.path)


__all__ = ["ChangeEvent", "ChangeMonitor", "translate_event"]
