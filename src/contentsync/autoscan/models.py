"""Monitored directory state."""

from __future__ import annotations

import os
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from contentsync.store.models import INVALID_OBJECT_ID, AutoscanRecord, CdsObject
from contentsync.timer import TimerParameter, TimerParameterKind

INVALID_SCAN_ID = -1


class ScanMode(str, Enum):
    """How an autoscan directory is kept up to date."""

    TIMED = "timed"
    INOTIFY = "inotify"


class AutoscanDirectory:
    """A monitored root with its scan policy and watermarks.

    Watermarks are tracked per scanned location. A scan starts by setting the
    current watermark of its location to ``0`` and ends by setting the highest
    modification time it observed; :meth:`update_lmt` promotes the current
    values once no scan or queued task for this root is outstanding.

    Attributes:
        location: Monitored directory.
        mode: Scan mode.
        recursive: Whether subdirectories are scanned.
        hidden: Whether dotfiles are imported.
        interval: Rescan interval in seconds (timed mode).
        persistent: Keep the entry when the directory disappears.
        scan_id: Slot in the owning registry list.
        object_id: Container representing ``location``.
        database_id: Identifier of the persisted record.
        from_config: Whether the entry was declared in the configuration file.
    """

    def __init__(
        self,
        location: str | os.PathLike[str],
        mode: ScanMode = ScanMode.TIMED,
        recursive: bool = True,
        hidden: bool = False,
        interval: int = 0,
        persistent: bool = False,
        *,
        object_id: int = INVALID_OBJECT_ID,
        database_id: int = -1,
        from_config: bool = False,
    ) -> None:
        self.location = Path(os.path.normpath(os.fspath(location)))
        self.mode = ScanMode(mode)
        self.recursive = recursive
        self.hidden = hidden
        self.interval = interval
        self.persistent = persistent
        self.scan_id = INVALID_SCAN_ID
        self.object_id = object_id
        self.database_id = database_id
        self.from_config = from_config
        self._lock = threading.Lock()
        self._task_count = 0
        self._active_scan_count = 0
        self._previous_lmt: Dict[str, int] = {}
        self._current_lmt: Dict[str, int] = {}

    def __repr__(self) -> str:
        return (
            f"AutoscanDirectory(location={str(self.location)!r}, mode={self.mode.value!r}, "
            f"scan_id={self.scan_id})"
        )

    # Watermarks -------------------------------------------------------

    def get_previous_lmt(self, location: str | os.PathLike[str], parent: Optional[CdsObject] = None) -> int:
        """Return the committed watermark of ``location``.

        Falls back to the persisted ``mtime`` of ``parent`` when the location
        has never been committed, and to ``0`` otherwise.
        """
        key = os.fspath(location)
        with self._lock:
            value = self._previous_lmt.get(key, 0)
        if value > 0:
            return value
        if parent is not None:
            return parent.mtime
        return 0

    def set_current_lmt(self, location: str | os.PathLike[str], lmt: int) -> None:
        """Start (``lmt == 0``) or finish (``lmt > 0``) the scan of ``location``."""
        key = os.fspath(location)
        with self._lock:
            if lmt == 0:
                self._active_scan_count += 1
                self._current_lmt[key] = 0
            else:
                if self._active_scan_count > 0:
                    self._active_scan_count -= 1
                self._current_lmt[key] = max(self._current_lmt.get(key, 0), lmt)

    def update_lmt(self, force: bool = False) -> bool:
        """Commit finished watermarks.

        Args:
            force: Commit even when scans or tasks are outstanding.

        Returns:
            bool: Whether any committed watermark advanced.
        """
        with self._lock:
            if not force and (self._task_count > 0 or self._active_scan_count > 0):
                return False
            changed = False
            for key, value in self._current_lmt.items():
                if value > self._previous_lmt.get(key, 0):
                    self._previous_lmt[key] = value
                    changed = True
            return changed

    def reset_lmt(self) -> None:
        with self._lock:
            self._previous_lmt.clear()
            self._current_lmt.clear()

    # Concurrency guards -----------------------------------------------

    def inc_task_count(self) -> None:
        with self._lock:
            if self._task_count >= 0:
                self._task_count += 1

    def dec_task_count(self) -> None:
        with self._lock:
            if self._task_count > 0:
                self._task_count -= 1

    def retire(self) -> None:
        """Mark the entry as removed from its registry."""
        with self._lock:
            self.scan_id = INVALID_SCAN_ID
            self._task_count = -1

    @property
    def task_count(self) -> int:
        with self._lock:
            return self._task_count

    @property
    def active_scan_count(self) -> int:
        with self._lock:
            return self._active_scan_count

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._task_count > 0 or self._active_scan_count > 0

    # Conversion -------------------------------------------------------

    @property
    def timer_parameter(self) -> TimerParameter:
        return TimerParameter(TimerParameterKind.AUTOSCAN, self.scan_id, self.mode.value)

    def to_record(self) -> AutoscanRecord:
        with self._lock:
            last_modified = dict(self._previous_lmt)
        return AutoscanRecord(
            database_id=self.database_id,
            location=str(self.location),
            mode=self.mode.value,
            recursive=self.recursive,
            hidden=self.hidden,
            interval=self.interval,
            persistent=self.persistent,
            object_id=self.object_id,
            last_modified=last_modified,
            from_config=self.from_config,
        )

    @classmethod
    def from_record(cls, record: AutoscanRecord) -> "AutoscanDirectory":
        adir = cls(
            record.location,
            ScanMode(record.mode),
            record.recursive,
            record.hidden,
            record.interval,
            record.persistent,
            object_id=record.object_id,
            database_id=record.database_id,
            from_config=record.from_config,
        )
        adir._previous_lmt.update(record.last_modified)
        return adir

    def copy(self) -> "AutoscanDirectory":
        """Return a detached copy with the same policy and committed watermarks."""
        clone = AutoscanDirectory.from_record(self.to_record())
        clone.scan_id = self.scan_id
        return clone


__all__ = ["INVALID_SCAN_ID", "AutoscanDirectory", "ScanMode"]
