"""Incremental recursive directory scanning."""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Set

from contentsync.autoscan import INVALID_SCAN_ID, AutoscanDirectory
from contentsync.store.errors import ObjectNotFoundError, StoreError
from contentsync.store.models import INVALID_OBJECT_ID, CdsObject

from .errors import ContentError
from .settings import AutoScanSetting
from .tasks import GenericTask

if TYPE_CHECKING:
    from .manager import ContentManager

LOGGER = logging.getLogger(__name__)


class ScanEngine:
    """Walk directories and reconcile them with the object store.

    The engine runs on the scheduler thread (or inline for synchronous
    imports). It reads each directory once, compares file modification times
    against the watermark committed by the previous scan and queues follow-up
    work for subdirectories.
    """

    def __init__(self, content: "ContentManager") -> None:
        self._content = content

    @property
    def _store(self):
        return self._content.store

    # ------------------------------------------------------------------ #
    # Single imports                                                     #
    # ------------------------------------------------------------------ #

    def add_file(
        self,
        path: Path,
        root_path: Optional[Path],
        settings: AutoScanSetting,
        task: Optional[GenericTask] = None,
    ) -> Optional[CdsObject]:
        """Import ``path``; directories are imported recursively when enabled.

        Returns:
            Optional[CdsObject]: The stored object, or ``None`` when skipped.
        """
        if not settings.hidden and path.name.startswith("."):
            return None
        if self._content.is_config_file(path):
            return None
        if path.is_symlink() and not settings.follow_symlinks:
            return None

        if path.is_dir():
            container_id = self._content.ensure_path_existence(path)
            if settings.recursive:
                self.add_recursive(
                    settings.adir,
                    path,
                    settings.follow_symlinks,
                    settings.hidden,
                    task,
                    root_path=root_path,
                )
            return self._store.load_object(container_id)

        existing = self._store.find_object_by_path(path)
        if existing is not None:
            return existing
        return self._import(path, root_path, settings.follow_symlinks)

    def add_recursive(
        self,
        adir: Optional[AutoscanDirectory],
        directory: Path,
        follow_symlinks: bool,
        hidden: bool,
        task: Optional[GenericTask] = None,
        *,
        root_path: Optional[Path] = None,
    ) -> None:
        """Import every entry below ``directory``, descending synchronously."""
        if root_path is None:
            root_path = adir.location if adir is not None else directory
        container_id = self._content.ensure_path_existence(directory)
        parent = self._load(container_id)
        location = str(directory)
        if adir is not None:
            adir.set_current_lmt(location, 0)

        max_mtime = 0
        try:
            for entry in self._list(directory):
                if not hidden and entry.name.startswith("."):
                    continue
                if self._aborted(task):
                    break
                path = Path(entry.path)
                if self._content.is_config_file(path):
                    continue
                try:
                    if entry.is_symlink():
                        if not follow_symlinks or _is_loop(directory, path):
                            continue
                    info = entry.stat(follow_symlinks=True)
                    if stat.S_ISDIR(info.st_mode):
                        max_mtime = max(max_mtime, int(info.st_mtime))
                        self.add_recursive(
                            adir, path, follow_symlinks, hidden, task, root_path=root_path
                        )
                    elif stat.S_ISREG(info.st_mode):
                        if self._store.find_object_id_by_path(path) == INVALID_OBJECT_ID:
                            self._import(path, root_path, follow_symlinks, info)
                        max_mtime = max(max_mtime, int(info.st_mtime))
                except (OSError, StoreError, ContentError) as exc:
                    LOGGER.warning("Skipping %s: %s", path, exc)
        finally:
            self.finish_scan(adir, location, parent, max_mtime)

    # ------------------------------------------------------------------ #
    # Incremental rescans                                                #
    # ------------------------------------------------------------------ #

    def rescan_directory(
        self,
        adir: AutoscanDirectory,
        container_id: int,
        task: Optional[GenericTask] = None,
    ) -> None:
        """Reconcile one directory of ``adir`` with the store.

        New files are imported, files newer than the previous watermark are
        re-imported, subdirectories get follow-up tasks and stored objects
        that vanished from disk are removed.

        Args:
            adir: Autoscan the directory belongs to.
            container_id: Container of the directory, or ``INVALID_OBJECT_ID``
                to resolve the autoscan root.
            task: Task running the scan, checked for cancellation.
        """
        content = self._content
        if adir.scan_id == INVALID_SCAN_ID:
            LOGGER.debug("Skipping rescan of retired autoscan %s", adir.location)
            return
        if container_id != INVALID_OBJECT_ID:
            try:
                location = Path(self._store.load_object(container_id).location)
            except ObjectNotFoundError:
                LOGGER.debug("Container %d vanished before its rescan", container_id)
                return
        else:
            location = adir.location

        try:
            entries = self._list(location)
        except OSError as exc:
            LOGGER.info("Cannot read %s: %s", location, exc)
            self._handle_missing(adir, location, container_id)
            return

        if container_id == INVALID_OBJECT_ID:
            container_id = content.ensure_path_existence(location)
            if location == adir.location:
                with content.scheduler.lock:
                    if adir.scan_id == INVALID_SCAN_ID:
                        return
                    adir.object_id = container_id
                    content.persist_autoscan(adir)

        parent = self._load(container_id)
        previous_lmt = adir.get_previous_lmt(location, parent)
        adir.set_current_lmt(str(location), 0)

        settings = AutoScanSetting.from_config(content.config.scan, adir)
        settings.merge_options(content.config.scan, location)
        candidates: Set[int] = self._store.get_objects(container_id, items_only=not settings.recursive)
        max_mtime = 0
        complete = False
        cancellable = task.cancellable if task is not None else True
        try:
            for entry in entries:
                if not settings.hidden and entry.name.startswith("."):
                    continue
                if self._aborted(task):
                    return
                if adir.scan_id == INVALID_SCAN_ID:
                    LOGGER.info("Autoscan %s was removed during its scan", adir.location)
                    return
                path = Path(entry.path)
                if content.is_config_file(path):
                    continue
                try:
                    if entry.is_symlink() and not settings.follow_symlinks:
                        object_id = self._store.find_object_id_by_path(path)
                        if object_id != INVALID_OBJECT_ID:
                            candidates.discard(object_id)
                            content.remove_object(adir, object_id, asynchronous=False)
                        continue
                    info = entry.stat(follow_symlinks=True)
                    mtime = int(info.st_mtime)
                    if stat.S_ISREG(info.st_mode):
                        object_id = self._store.find_object_id_by_path(path)
                        if object_id == INVALID_OBJECT_ID:
                            self._import(path, adir.location, settings.follow_symlinks, info)
                            max_mtime = max(max_mtime, mtime)
                            continue
                        candidates.discard(object_id)
                        if mtime > previous_lmt:
                            LOGGER.debug("Re-importing modified %s", path)
                            content.remove_object(adir, object_id, asynchronous=False)
                            self._import(path, adir.location, settings.follow_symlinks, info)
                            max_mtime = max(max_mtime, mtime)
                    elif stat.S_ISDIR(info.st_mode) and settings.recursive:
                        object_id = self._store.find_object_id_by_path(path)
                        if object_id == INVALID_OBJECT_ID and entry.is_symlink() and _is_loop(location, path):
                            continue
                        max_mtime = max(max_mtime, mtime)
                        if object_id != INVALID_OBJECT_ID:
                            candidates.discard(object_id)
                            content.rescan_directory(adir, object_id, path, cancellable)
                            continue
                        with content.scheduler.lock:
                            if adir.scan_id == INVALID_SCAN_ID:
                                return
                            sub_settings = AutoScanSetting.from_config(content.config.scan, adir)
                            sub_settings.merge_options(content.config.scan, path)
                            content.add_file(
                                path,
                                sub_settings,
                                asynchronous=True,
                                low_priority=True,
                                cancellable=cancellable,
                                root_path=adir.location,
                                parent_task_id=task.id if task is not None else None,
                            )
                except (OSError, StoreError, ContentError) as exc:
                    LOGGER.warning("Skipping %s: %s", path, exc)
            complete = True
        finally:
            self.finish_scan(adir, str(location), parent, max_mtime)

        if complete and candidates:
            LOGGER.debug("Removing %d vanished object(s) below %s", len(candidates), location)
            content.remove_objects(candidates)

    def finish_scan(
        self,
        adir: Optional[AutoscanDirectory],
        location: str,
        parent: Optional[CdsObject],
        lmt: int,
    ) -> None:
        """Commit the watermark of ``location`` and advance the container mtime."""
        if adir is not None:
            adir.set_current_lmt(location, max(lmt, 1))
        if parent is not None and lmt > parent.mtime:
            updated = parent.clone()
            updated.mtime = lmt
            self._content.update_object(updated, send_updates=False)

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _import(
        self,
        path: Path,
        root_path: Optional[Path],
        follow_symlinks: bool,
        info: Optional[os.stat_result] = None,
    ) -> Optional[CdsObject]:
        obj = self._content.create_object_from_file(path, follow_symlinks, stat_result=info)
        if obj is None or not obj.is_item:
            return None
        self._content.add_object(obj)
        self._content.run_layout(obj, root_path)
        return obj

    def _handle_missing(self, adir: AutoscanDirectory, location: Path, container_id: int) -> None:
        content = self._content
        if location == adir.location:
            content.handle_persistent_autoscan_remove(adir)
        elif container_id != INVALID_OBJECT_ID:
            content.remove_object(adir, container_id, asynchronous=False)

    def _aborted(self, task: Optional[GenericTask]) -> bool:
        if self._content.is_shutting_down:
            return True
        return task is not None and not task.valid

    def _load(self, object_id: int) -> Optional[CdsObject]:
        try:
            return self._store.load_object(object_id)
        except ObjectNotFoundError:
            return None

    @staticmethod
    def _list(directory: Path) -> List[os.DirEntry[str]]:
        with os.scandir(directory) as iterator:
            return list(iterator)


def _is_loop(directory: Path, link: Path) -> bool:
    try:
        return directory.resolve().is_relative_to(link.resolve())
    except OSError:
        return True


__all__ = ["ScanEngine"]
