"""Autoscan registry: monitored directories grouped by scan mode."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from contentsync.store import ObjectStore
from contentsync.store.errors import OverlappingAutoscanError
from contentsync.store.models import INVALID_OBJECT_ID
from contentsync.timer import TimerSubscriber

from .models import INVALID_SCAN_ID, AutoscanDirectory, ScanMode

LOGGER = logging.getLogger(__name__)


class AutoscanList:
    """Ordered registry of the autoscan directories of one scan mode.

    Mutations are serialized by the list's own lock; callers never run scans
    while holding it.
    """

    def __init__(
        self,
        store: ObjectStore,
        mode: ScanMode,
        on_remove: Optional[Callable[[AutoscanDirectory], None]] = None,
    ) -> None:
        self.mode = mode
        self._store = store
        self._on_remove = on_remove
        self._lock = threading.RLock()
        self._entries: Dict[int, AutoscanDirectory] = {}
        self._next_scan_id = 0

    def add(self, adir: AutoscanDirectory) -> int:
        """Register ``adir`` and assign its scan ID.

        Raises:
            OverlappingAutoscanError: If the location is already registered.
        """
        with self._lock:
            if self._find_location(adir.location) is not None:
                raise OverlappingAutoscanError(f"{adir.location} is already an autoscan directory")
            scan_id = self._next_scan_id
            self._next_scan_id += 1
            adir.scan_id = scan_id
            self._entries[scan_id] = adir
            LOGGER.debug("Registered %s autoscan %s as %d", self.mode.value, adir.location, scan_id)
            return scan_id

    def remove(self, scan_id: int) -> Optional[AutoscanDirectory]:
        """Retire the entry with ``scan_id`` and return it."""
        with self._lock:
            adir = self._entries.pop(scan_id, None)
        if adir is not None:
            if self._on_remove is not None:
                self._on_remove(adir)
            adir.retire()
            LOGGER.debug("Removed %s autoscan %s", self.mode.value, adir.location)
        return adir

    def remove_if_subdir(
        self, path: str | os.PathLike[str], persistent: bool = False
    ) -> List[AutoscanDirectory]:
        """Retire every entry located at or below ``path``.

        Args:
            path: Directory being removed.
            persistent: Also retire entries flagged persistent.

        Returns:
            List[AutoscanDirectory]: Retired entries.
        """
        root = Path(os.path.normpath(os.fspath(path)))
        with self._lock:
            doomed = [
                scan_id
                for scan_id, adir in self._entries.items()
                if adir.location.is_relative_to(root) and (persistent or not adir.persistent)
            ]
        return [adir for adir in (self.remove(scan_id) for scan_id in doomed) if adir is not None]

    def get(self, scan_id: int) -> Optional[AutoscanDirectory]:
        if scan_id == INVALID_SCAN_ID:
            return None
        with self._lock:
            return self._entries.get(scan_id)

    def get_by_location(self, location: str | os.PathLike[str]) -> Optional[AutoscanDirectory]:
        with self._lock:
            return self._find_location(Path(os.path.normpath(os.fspath(location))))

    def get_by_object_id(self, object_id: int) -> Optional[AutoscanDirectory]:
        if object_id == INVALID_OBJECT_ID:
            return None
        with self._lock:
            for adir in self._entries.values():
                if adir.object_id == object_id:
                    return adir
            return None

    def notify_all(self, subscriber: TimerSubscriber) -> None:
        """Fire the timer callback of every entry once."""
        for adir in self.snapshot():
            subscriber.timer_notify(adir.timer_parameter)

    def update_lm_in_store(self) -> None:
        """Persist the committed watermarks of every entry."""
        for adir in self.snapshot():
            adir.update_lmt(force=True)
            adir.database_id = self._store.update_autoscan_directory(adir.to_record())

    def snapshot(self) -> List[AutoscanDirectory]:
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[AutoscanDirectory]:
        return iter(self.snapshot())

    def _find_location(self, location: Path) -> Optional[AutoscanDirectory]:
        for adir in self._entries.values():
            if adir.location == location:
                return adir
        return None


__all__ = ["INVALID_SCAN_ID", "AutoscanDirectory", "AutoscanList", "ScanMode"]
