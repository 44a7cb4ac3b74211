"""Content facade orchestrating scans, autoscans and store mutations."""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple, Union

from contentsync.autoscan import INVALID_SCAN_ID, AutoscanDirectory, AutoscanList, ScanMode
from contentsync.autoscan.monitor import ChangeMonitor
from contentsync.config.models import ContentSyncConfig
from contentsync.layout import BuiltinLayout, Layout
from contentsync.metadata import MetadataExtractor, MimeResolver
from contentsync.store import ObjectStore
from contentsync.store.errors import ObjectNotFoundError
from contentsync.store.models import (
    FS_ROOT_DIRECTORY,
    FS_ROOT_ID,
    INVALID_OBJECT_ID,
    M_DESCRIPTION,
    M_TITLE,
    ONLINE_SERVICE_LAST_UPDATE,
    PURPOSE_CONTENT,
    R_PROTOCOLINFO,
    ROOT_ID,
    UPNP_CLASS_CONTAINER,
    UPNP_CLASS_STORAGE_FOLDER,
    AutoscanRecord,
    CdsContainer,
    CdsItem,
    CdsObject,
    ChangedContainers,
    is_forbidden_id,
)
from contentsync.timer import Timer, TimerParameter, TimerParameterKind
from contentsync.update import UpdateManager

from .containers import ContainerCache
from .errors import ContentError
from .playhook import PlayHook
from .scanner import ScanEngine
from .scheduler import Executor, TaskScheduler
from .settings import AutoScanSetting
from .tasks import (
    AddFileTask,
    FetchOnlineContentTask,
    GenericTask,
    OnlineService,
    RemoveObjectTask,
    RescanDirectoryTask,
    TaskOwner,
)

LOGGER = logging.getLogger(__name__)


class ContainerNotifier(Protocol):
    """Receiver of container change sets (viewers, UI sessions)."""

    def containers_changed(self, container_ids: Iterable[int]) -> None: ...


class ContentManager:
    """Public surface of the content synchronization engine.

    Structural mutations go through the object store and report the changed
    container IDs to ``update_manager`` and, when given, ``ui_notifier``.
    Background work is queued on a :class:`TaskScheduler` whose single worker
    thread runs every scan.

    Attributes:
        config: Loaded configuration.
        store: Object store holding the content tree.
        scheduler: Task scheduler running queued work.
        timer: Timer delivering periodic autoscan callbacks.
        update_manager: Persistence-side change channel.
        ui_notifier: Optional viewer change channel.
        containers: Container chain cache.
        scanner: Directory scan engine.
        monitor: Change monitor for inotify autoscans, when enabled.
    """

    def __init__(
        self,
        config: ContentSyncConfig,
        store: Optional[ObjectStore] = None,
        *,
        timer: Optional[Timer] = None,
        update_manager: Optional[UpdateManager] = None,
        ui_notifier: Optional[ContainerNotifier] = None,
        layout: Optional[Layout] = None,
        mime_resolver: Optional[MimeResolver] = None,
        metadata_extractor: Optional[MetadataExtractor] = None,
    ) -> None:
        self.config = config
        self.store = store or ObjectStore()
        self.timer = timer or Timer()
        self.update_manager = update_manager or UpdateManager()
        self.ui_notifier = ui_notifier
        self.mime = mime_resolver or MimeResolver(config.scan)
        self.extractor = metadata_extractor or MetadataExtractor(config.scan)
        self.scheduler = TaskScheduler(self)
        self.containers = ContainerCache(self.store, config.scan, self.extractor, self._notify)
        self.scanner = ScanEngine(self)
        self.play_hook = PlayHook(self, config.server)
        if layout is None and config.scan.layout == "builtin":
            layout = BuiltinLayout(self)
        self.layout: Optional[Layout] = layout
        self.monitor: Optional[ChangeMonitor] = (
            ChangeMonitor(self, verify_delay=config.scan.autoscan.inotify_verify_delay)
            if config.scan.autoscan.use_inotify
            else None
        )
        self._autoscans: Dict[ScanMode, AutoscanList] = {
            mode: AutoscanList(self.store, mode, on_remove=self._forget_autoscan)
            for mode in ScanMode
        }
        self._online_services: List[OnlineService] = []
        self._shutdown = threading.Event()
        self._config_file = (
            Path(os.path.abspath(os.path.expanduser(config.server.config_file)))
            if config.server.config_file
            else None
        )

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    def run(self) -> None:
        """Start background processing and every configured autoscan."""
        self.scheduler.start()
        self.timer.run()
        self.load_autoscans()
        if self.monitor is not None:
            self.monitor.start()
            for adir in self._autoscans[ScanMode.INOTIFY]:
                self.monitor.monitor(adir)
                self.monitor.arm_verification(adir)
        for adir in self._autoscans[ScanMode.TIMED]:
            self._subscribe_timed(adir)
        for autoscans in self._autoscans.values():
            autoscans.notify_all(self)
        for service in self._online_services:
            self.schedule_online_refresh(service)
        LOGGER.info(
            "Content manager started with %d timed and %d inotify autoscan(s)",
            len(self._autoscans[ScanMode.TIMED]),
            len(self._autoscans[ScanMode.INOTIFY]),
        )

    def shutdown(self) -> None:
        """Persist watermarks and stop every background thread."""
        self._shutdown.set()
        for adir in self._autoscans[ScanMode.INOTIFY]:
            try:
                mtime = int(adir.location.stat().st_mtime)
            except OSError:
                continue
            adir.set_current_lmt(str(adir.location), 0)
            adir.set_current_lmt(str(adir.location), mtime)
        for autoscans in self._autoscans.values():
            autoscans.update_lm_in_store()
        if self.monitor is not None:
            self.monitor.stop()
        self.timer.shutdown()
        self.scheduler.shutdown()
        self.layout = None
        LOGGER.info("Content manager stopped")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set() or self.scheduler.is_shutdown

    def is_config_file(self, path: Path) -> bool:
        return self._config_file is not None and Path(os.path.abspath(path)) == self._config_file

    # ------------------------------------------------------------------ #
    # Files                                                              #
    # ------------------------------------------------------------------ #

    def default_settings(
        self, path: Path, adir: Optional[AutoscanDirectory] = None
    ) -> AutoScanSetting:
        settings = AutoScanSetting.from_config(self.config.scan, adir)
        settings.merge_options(self.config.scan, path)
        return settings

    def add_file(
        self,
        path: Union[str, os.PathLike[str]],
        settings: Optional[AutoScanSetting] = None,
        *,
        asynchronous: bool = True,
        low_priority: bool = False,
        cancellable: bool = True,
        root_path: Optional[Path] = None,
        parent_task_id: Optional[int] = None,
    ) -> int:
        """Import a file or directory.

        Args:
            path: File or directory to import.
            settings: Scan options; derived from the configuration when omitted.
            asynchronous: Queue the import instead of running it inline.
            low_priority: Queue on the low priority tier.
            cancellable: Whether the queued task may be invalidated.
            root_path: Root handed to the layout for directory placement.
            parent_task_id: Task that spawned this import.

        Returns:
            int: ID of the stored object for inline imports, otherwise
            ``INVALID_OBJECT_ID``.
        """
        target = Path(os.path.abspath(os.path.expanduser(os.fspath(path))))
        if settings is None:
            settings = self.default_settings(target)
        if root_path is None:
            if settings.adir is not None:
                root_path = settings.adir.location
            else:
                root_path = target if target.is_dir() else target.parent

        if asynchronous:
            task = AddFileTask(
                target,
                root_path,
                settings,
                cancellable=cancellable,
                parent_id=parent_task_id,
            )
            self.scheduler.add_task(task, low_priority)
            return INVALID_OBJECT_ID

        obj = self.scanner.add_file(target, root_path, settings)
        if settings.adir is not None and settings.adir.update_lmt():
            self.persist_autoscan(settings.adir)
        return obj.id if obj is not None else INVALID_OBJECT_ID

    def add_virtual_item(self, obj: CdsObject, allow_fifo: bool = False) -> int:
        """Add a virtual item referring to the file at ``obj.location``.

        The physical item is imported first when it is not stored yet.

        Raises:
            ContentError: If the location is missing or cannot be imported.
        """
        obj.validate_object()
        if not obj.location:
            raise ContentError(f"Virtual item {obj.title!r} has no location")
        physical = self.store.find_object_by_path(obj.location)
        if physical is None:
            physical = self.create_object_from_file(Path(obj.location), True, allow_fifo=allow_fifo)
            if physical is None or not physical.is_item:
                raise ContentError(f"Cannot import {obj.location}")
            self.add_object(physical)
        obj.ref_id = physical.id
        obj.virtual = True
        self.add_object(obj)
        return obj.id

    def create_object_from_file(
        self,
        path: Path,
        follow_symlinks: bool = True,
        *,
        allow_fifo: bool = False,
        stat_result: Optional[os.stat_result] = None,
    ) -> Optional[CdsObject]:
        """Build an unsaved item or container prototype for ``path``."""
        try:
            info = stat_result or (os.stat(path) if follow_symlinks else os.lstat(path))
        except OSError as exc:
            LOGGER.warning("Cannot stat %s: %s", path, exc)
            return None
        if stat.S_ISREG(info.st_mode) or (allow_fifo and stat.S_ISFIFO(info.st_mode)):
            return self.create_single_item(path, info)
        if stat.S_ISDIR(info.st_mode):
            return CdsContainer(
                title=path.name or FS_ROOT_DIRECTORY,
                location=str(path),
                mtime=int(info.st_mtime),
                upnp_class=UPNP_CLASS_STORAGE_FOLDER,
            )
        return None

    def create_single_item(self, path: Path, stat_result: Optional[os.stat_result] = None) -> CdsItem:
        mime_type, upnp_class = self.mime.classify(path)
        title = path.name
        if self.config.scan.readable_names:
            title = path.stem.replace("_", " ") or path.name
        item = CdsItem(
            title=title,
            location=str(path),
            mime_type=mime_type,
            upnp_class=upnp_class,
            metadata={M_TITLE: title},
        )
        self.extractor.extract_metadata(item, stat_result)
        return item

    def run_layout(self, obj: CdsObject, root_path: Optional[Path]) -> None:
        layout = self.layout
        if layout is None:
            return
        try:
            layout.process_object(obj, root_path)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Layout failed for %s", obj.location)

    # ------------------------------------------------------------------ #
    # Objects                                                            #
    # ------------------------------------------------------------------ #

    def add_object(self, obj: CdsObject, first_child: bool = False) -> None:
        """Validate and store ``obj``; its ID is assigned in place."""
        obj.validate_object()
        changed = self.store.add_object(obj)
        ids = {changed}
        if first_child:
            try:
                ids.add(self.store.load_object(obj.parent_id).parent_id)
            except ObjectNotFoundError:
                pass
        self._notify(ids)

    def update_object(self, obj: CdsObject, send_updates: bool = True) -> None:
        obj.validate_object()
        changed = self.store.update_object(obj)
        if send_updates:
            self._notify({changed})

    def update_object_fields(self, object_id: int, parameters: Mapping[str, str]) -> bool:
        """Edit selected fields of a stored object.

        Recognized keys are ``title``, ``upnp_class``, ``location``,
        ``mime_type``, ``protocol``, ``description`` and ``bookmark_pos``.
        Empty values leave the field unchanged; nothing is written when the
        edit does not change the object.

        Returns:
            bool: Whether the object was written.
        """
        original = self.store.load_object(object_id)
        updated = original.clone()

        title = parameters.get("title", "")
        upnp_class = parameters.get("upnp_class", "")
        description = parameters.get("description", "")
        if title:
            updated.title = title
            updated.set_metadata(M_TITLE, title)
        if upnp_class:
            updated.upnp_class = upnp_class
        if description:
            updated.set_metadata(M_DESCRIPTION, description)

        if isinstance(updated, CdsItem):
            location = parameters.get("location", "")
            mime_type = parameters.get("mime_type", "")
            protocol = parameters.get("protocol", "")
            bookmark = parameters.get("bookmark_pos", "")
            if location:
                updated.location = location
            if mime_type:
                updated.mime_type = mime_type
            if protocol:
                found = updated.find_resource(PURPOSE_CONTENT)
                if found is not None:
                    found[1].attributes[R_PROTOCOLINFO] = protocol
            if bookmark:
                updated.bookmark_pos = int(bookmark)

        if updated.equals(original):
            return False
        self.update_object(updated)
        return True

    def remove_path(self, adir: AutoscanDirectory, path: Path) -> bool:
        """Queue removal of the file stored for ``path``.

        Resources of the removed item are rescanned when the scan settings of
        its directory ask for it.

        Returns:
            bool: Whether an object was stored for ``path``.
        """
        object_id = self.store.find_object_id_by_path(path)
        if object_id == INVALID_OBJECT_ID:
            return False
        settings = AutoScanSetting.from_config(self.config.scan, adir)
        settings.merge_options(self.config.scan, path.parent)
        self.remove_object(adir, object_id, rescan_resource=settings.rescan_resource)
        return True

    def remove_object(
        self,
        adir: Optional[AutoscanDirectory],
        object_id: int,
        rescan_resource: bool = False,
        asynchronous: bool = True,
        all_refs: bool = False,
    ) -> None:
        """Remove an object and its subtree.

        Asynchronous removal of a directory container retires the autoscans
        below it and invalidates queued imports of its files before the
        removal task is queued.

        Raises:
            ContentError: For the root containers and illegal IDs.
        """
        self._check_removable(object_id)
        if not asynchronous:
            self._remove_object(adir, object_id, rescan_resource, all_refs)
            return

        try:
            obj = self.store.load_object(object_id)
        except ObjectNotFoundError:
            LOGGER.debug("Object %d already removed", object_id)
            return
        path = None if obj.virtual else obj.location
        task = RemoveObjectTask(
            adir, object_id, path, rescan_resource=rescan_resource, all_refs=all_refs
        )
        if path and obj.is_container:
            root = Path(path)
            with self.scheduler.lock:
                for autoscans in self._autoscans.values():
                    for retired in autoscans.remove_if_subdir(root):
                        if retired.database_id >= 0:
                            self.store.remove_autoscan_directory(retired.database_id)
                self.scheduler.invalidate_where(
                    lambda queued: isinstance(queued, AddFileTask)
                    and queued.path.is_relative_to(root)
                )
        self.scheduler.add_task(task)

    def remove_objects(self, object_ids: Iterable[int]) -> ChangedContainers:
        """Remove several objects in one store call."""
        changed = self.store.remove_objects(object_ids)
        self.containers.clear()
        self._notify_changed(changed)
        return changed

    def add_container(self, parent_id: int, title: str, upnp_class: str = UPNP_CLASS_CONTAINER) -> int:
        """Create a virtual container named ``title`` below ``parent_id``."""
        try:
            parent = self.store.load_object(parent_id)
        except ObjectNotFoundError as exc:
            raise ContentError(f"Parent container {parent_id} not found") from exc
        if not parent.is_container or not parent.virtual:
            raise ContentError(f"Object {parent_id} cannot hold virtual containers")
        chain = self.store.build_container_path(parent_id, title)
        container_id, _ = self.containers.add_container_chain(chain, upnp_class)
        return container_id

    def add_container_chain(
        self,
        chain: str,
        last_class: str = UPNP_CLASS_CONTAINER,
        last_ref_id: int = INVALID_OBJECT_ID,
        orig_obj: Optional[CdsObject] = None,
    ) -> Tuple[int, bool]:
        return self.containers.add_container_chain(chain, last_class, last_ref_id, orig_obj)

    def ensure_path_existence(self, path: Union[str, os.PathLike[str]]) -> int:
        """Return the container of directory ``path``, creating its chain."""
        container_id, update_id = self.store.ensure_path_existence(path)
        if update_id != INVALID_OBJECT_ID:
            self._notify({update_id})
        return container_id

    # ------------------------------------------------------------------ #
    # Scanning                                                           #
    # ------------------------------------------------------------------ #

    def rescan_directory(
        self,
        adir: AutoscanDirectory,
        object_id: int,
        desc_path: Optional[Union[str, os.PathLike[str]]] = None,
        cancellable: bool = True,
    ) -> int:
        """Queue a low priority rescan of ``object_id`` within ``adir``."""
        task = RescanDirectoryTask(
            adir,
            object_id,
            f"Scan: {desc_path or adir.location}",
            cancellable=cancellable,
        )
        return self.scheduler.add_task(task, low_priority=True)

    def trigger_autoscan(self, adir: AutoscanDirectory, object_id: Optional[int] = None) -> bool:
        """Queue a rescan unless one is already outstanding for ``adir``.

        Returns:
            bool: Whether a rescan was queued.
        """
        with self.scheduler.lock:
            if adir.scan_id == INVALID_SCAN_ID or self.is_shutting_down:
                return False
            if adir.is_busy:
                LOGGER.debug("Autoscan %s is busy; skipping this round", adir.location)
                return False
            target = adir.object_id if object_id is None else object_id
            self.rescan_directory(adir, target)
            return True

    def timer_notify(self, parameter: TimerParameter) -> None:
        if parameter.kind == TimerParameterKind.AUTOSCAN:
            autoscans = self._autoscans[ScanMode(parameter.mode or ScanMode.TIMED.value)]
            adir = autoscans.get(parameter.id)
            if adir is not None:
                self.trigger_autoscan(adir)
        elif parameter.kind == TimerParameterKind.ONLINE_CONTENT:
            if 0 <= parameter.id < len(self._online_services):
                self.fetch_online_content(self._online_services[parameter.id])

    # ------------------------------------------------------------------ #
    # Autoscans                                                          #
    # ------------------------------------------------------------------ #

    def get_autoscan_directory(
        self, scan_id: int, mode: ScanMode = ScanMode.TIMED
    ) -> Optional[AutoscanDirectory]:
        return self._autoscans[ScanMode(mode)].get(scan_id)

    def get_autoscan_directory_by_object_id(self, object_id: int) -> Optional[AutoscanDirectory]:
        for autoscans in self._autoscans.values():
            adir = autoscans.get_by_object_id(object_id)
            if adir is not None:
                return adir
        return None

    def get_autoscan_directory_by_location(
        self, location: Union[str, os.PathLike[str]]
    ) -> Optional[AutoscanDirectory]:
        for autoscans in self._autoscans.values():
            adir = autoscans.get_by_location(location)
            if adir is not None:
                return adir
        return None

    def get_autoscan_directories(self) -> List[AutoscanDirectory]:
        return [adir for autoscans in self._autoscans.values() for adir in autoscans]

    def set_autoscan_directory(self, adir: AutoscanDirectory) -> AutoscanDirectory:
        """Register a new autoscan or update the policy of an existing one.

        New entries are resolved from ``adir.object_id`` when set, otherwise
        from ``adir.location``. Updating an entry switches its timer or watch
        subscription when the scan mode changes.

        Returns:
            AutoscanDirectory: The registered entry.

        Raises:
            ContentError: For illegal targets or a disabled scan mode.
            OverlappingAutoscanError: If the root overlaps another autoscan.
        """
        if adir.mode == ScanMode.INOTIFY and self.monitor is None:
            raise ContentError("Change notification autoscans are disabled")

        original = self.get_autoscan_directory_by_object_id(adir.object_id)
        if original is None:
            original = self.get_autoscan_directory_by_location(adir.location)
        if original is None:
            return self._add_autoscan(adir)

        adir.database_id = original.database_id
        record = adir.to_record()
        record.location = str(original.location)
        self.store.check_overlapping_autoscans(record)
        with self.scheduler.lock:
            updated = original.copy()
            updated.hidden = adir.hidden
            updated.recursive = adir.recursive
            updated.interval = adir.interval
            updated.persistent = adir.persistent
            updated.mode = adir.mode
            self._autoscans[original.mode].remove(original.scan_id)
            self._register_autoscan(updated)
            self.persist_autoscan(updated)
        if original.mode != updated.mode or updated.mode == ScanMode.INOTIFY:
            self.trigger_autoscan(updated)
        return updated

    def remove_autoscan_directory(self, adir: AutoscanDirectory) -> None:
        """Unregister ``adir`` and delete its persisted record."""
        with self.scheduler.lock:
            self._autoscans[adir.mode].remove(adir.scan_id)
            adir.retire()
        if adir.database_id >= 0:
            self.store.remove_autoscan_directory(adir.database_id)
        self._notify({adir.object_id})

    def handle_persistent_autoscan_remove(self, adir: AutoscanDirectory) -> None:
        """React to the autoscan root disappearing from disk.

        Persistent entries stay registered without a container; others are
        removed. Stored objects below the root are removed either way.
        """
        object_id = adir.object_id
        if adir.persistent:
            LOGGER.info("Persistent autoscan %s is gone; waiting for it to return", adir.location)
            adir.object_id = INVALID_OBJECT_ID
            adir.reset_lmt()
            self.persist_autoscan(adir)
            if self.monitor is not None and adir.mode == ScanMode.INOTIFY:
                self.monitor.monitor(adir)
        else:
            LOGGER.info("Autoscan %s is gone; removing it", adir.location)
            self.remove_autoscan_directory(adir)
        if object_id not in (INVALID_OBJECT_ID, ROOT_ID, FS_ROOT_ID):
            self.remove_object(adir, object_id, asynchronous=True)

    def handle_persistent_autoscan_recreate(self, adir: AutoscanDirectory) -> None:
        """Re-attach a persistent autoscan whose root reappeared."""
        adir.object_id = self.ensure_path_existence(adir.location)
        self.persist_autoscan(adir)
        if self.monitor is not None and adir.mode == ScanMode.INOTIFY:
            self.monitor.monitor(adir)
        LOGGER.info("Autoscan %s is back as container %d", adir.location, adir.object_id)

    def persist_autoscan(self, adir: AutoscanDirectory) -> None:
        adir.database_id = self.store.update_autoscan_directory(adir.to_record())

    # ------------------------------------------------------------------ #
    # Tasks                                                              #
    # ------------------------------------------------------------------ #

    @property
    def current_task(self) -> Optional[GenericTask]:
        return self.scheduler.current_task

    def task_list(self) -> List[GenericTask]:
        return self.scheduler.task_list()

    def invalidate_task(self, task_id: int, owner: TaskOwner = TaskOwner.CONTENT_MANAGER) -> None:
        self.scheduler.invalidate_task(task_id, owner)

    def register_executor(self, executor: Executor) -> None:
        self.scheduler.register_executor(executor)

    def unregister_executor(self, executor: Executor) -> None:
        self.scheduler.unregister_executor(executor)

    # ------------------------------------------------------------------ #
    # Online content                                                     #
    # ------------------------------------------------------------------ #

    def register_online_service(self, service: OnlineService) -> int:
        self._online_services.append(service)
        return len(self._online_services) - 1

    def fetch_online_content(
        self,
        service: OnlineService,
        low_priority: bool = True,
        cancellable: bool = True,
        unscheduled_refresh: bool = False,
    ) -> int:
        task = FetchOnlineContentTask(
            service, cancellable=cancellable, unscheduled_refresh=unscheduled_refresh
        )
        return self.scheduler.add_task(task, low_priority)

    def schedule_online_refresh(self, service: OnlineService) -> None:
        if service.refresh_interval <= 0 or service not in self._online_services:
            return
        parameter = TimerParameter(
            TimerParameterKind.ONLINE_CONTENT, self._online_services.index(service)
        )
        if not self.timer.has_subscriber(self, parameter):
            self.timer.add_subscriber(self, service.refresh_interval, parameter, once=True)

    def cleanup_online_service_objects(self, service: OnlineService) -> None:
        """Remove objects of ``service`` not refreshed within its purge interval."""
        if service.purge_interval <= 0:
            return
        now = int(time.time())
        stale: Set[int] = set()
        for object_id in self.store.get_service_object_ids(service.service_prefix):
            try:
                obj = self.store.load_object(object_id)
            except ObjectNotFoundError:
                continue
            last_update = int(obj.aux_data.get(ONLINE_SERVICE_LAST_UPDATE, "0") or 0)
            if last_update > 0 and now - last_update > service.purge_interval:
                stale.add(object_id)
        if stale:
            LOGGER.info("Purging %d stale object(s) of %s", len(stale), service.name)
            self.remove_objects(stale)

    # ------------------------------------------------------------------ #
    # Playback                                                           #
    # ------------------------------------------------------------------ #

    def trigger_play_hook(self, obj: CdsObject) -> None:
        self.play_hook.trigger(obj)

    @property
    def last_played(self) -> List[int]:
        return self.play_hook.last_played

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _notify(self, container_ids: Iterable[int]) -> None:
        ids = {container_id for container_id in container_ids if container_id >= 0}
        if not ids:
            return
        self.update_manager.containers_changed(ids)
        if self.ui_notifier is not None:
            self.ui_notifier.containers_changed(ids)

    def _notify_changed(self, changed: ChangedContainers) -> None:
        if changed.upnp:
            self.update_manager.containers_changed(set(changed.upnp))
        if changed.ui and self.ui_notifier is not None:
            self.ui_notifier.containers_changed(set(changed.ui))

    def _check_removable(self, object_id: int) -> None:
        if object_id in (ROOT_ID, FS_ROOT_ID):
            raise ContentError("Cannot remove the root containers")
        if is_forbidden_id(object_id):
            raise ContentError(f"Illegal object ID {object_id}")

    def _remove_object(
        self,
        adir: Optional[AutoscanDirectory],
        object_id: int,
        rescan_resource: bool,
        all_refs: bool,
    ) -> None:
        try:
            obj = self.store.load_object(object_id)
        except ObjectNotFoundError:
            LOGGER.debug("Object %d already removed", object_id)
            return
        changed = self.store.remove_object(object_id, all_refs)
        self.containers.clear()
        self._notify_changed(changed)

        if rescan_resource and adir is not None and obj.is_item and not obj.virtual:
            parent_id = self.store.find_object_id_by_path(Path(obj.location).parent)
            if parent_id != INVALID_OBJECT_ID:
                self.rescan_directory(adir, parent_id)

    def _add_autoscan(self, adir: AutoscanDirectory) -> AutoscanDirectory:
        if adir.object_id == FS_ROOT_ID:
            adir.location = Path(FS_ROOT_DIRECTORY)
        elif adir.object_id != INVALID_OBJECT_ID:
            try:
                obj = self.store.load_object(adir.object_id)
            except ObjectNotFoundError as exc:
                raise ContentError(f"Object {adir.object_id} not found") from exc
            if not obj.is_container or obj.virtual or not obj.location:
                raise ContentError(
                    f"Object {adir.object_id} cannot be an autoscan directory"
                )
            adir.location = Path(obj.location)
        if not adir.location.is_dir():
            raise ContentError(f"{adir.location} is not a directory")

        self.store.check_overlapping_autoscans(adir.to_record())
        if adir.object_id == INVALID_OBJECT_ID:
            adir.object_id = self.ensure_path_existence(adir.location)
        with self.scheduler.lock:
            adir.database_id = self.store.add_autoscan_directory(adir.to_record())
            self._register_autoscan(adir)
        self._notify({adir.object_id})
        self.trigger_autoscan(adir)
        return adir

    def _register_autoscan(self, adir: AutoscanDirectory) -> None:
        self._autoscans[adir.mode].add(adir)
        if adir.mode == ScanMode.TIMED:
            self._subscribe_timed(adir)
        elif self.monitor is not None:
            self.monitor.monitor(adir)
            self.monitor.arm_verification(adir)

    def _subscribe_timed(self, adir: AutoscanDirectory) -> None:
        if adir.interval > 0 and not self.timer.has_subscriber(self, adir.timer_parameter):
            self.timer.add_subscriber(self, adir.interval, adir.timer_parameter)

    def _forget_autoscan(self, adir: AutoscanDirectory) -> None:
        self.timer.remove_subscriber(self, adir.timer_parameter, dont_fail=True)
        if adir.mode == ScanMode.INOTIFY and self.monitor is not None:
            self.monitor.unmonitor(adir)

    def load_autoscans(self) -> None:
        """Register configured and persisted autoscans without scanning them."""
        autoscan_settings = self.config.scan.autoscan
        for mode in ScanMode:
            records = [
                AutoscanRecord(
                    location=os.path.abspath(os.path.expanduser(entry.location)),
                    mode=entry.mode,
                    recursive=entry.recursive,
                    hidden=entry.hidden_files,
                    interval=entry.interval,
                    persistent=entry.persistent,
                    from_config=True,
                )
                for entry in autoscan_settings.directories
                if entry.mode == mode.value
            ]
            self.store.update_autoscan_list(mode.value, records)

        for mode in ScanMode:
            if mode == ScanMode.INOTIFY and self.monitor is None:
                continue
            for record in self.store.get_autoscan_list(mode.value):
                adir = AutoscanDirectory.from_record(record)
                if self._autoscans[mode].get_by_location(adir.location) is not None:
                    continue
                if adir.location.is_dir():
                    found = self.store.find_object_id_by_path(adir.location)
                    adir.object_id = (
                        found if found != INVALID_OBJECT_ID else self.ensure_path_existence(adir.location)
                    )
                elif not adir.persistent:
                    LOGGER.warning("Autoscan directory %s does not exist; skipping", adir.location)
                    continue
                else:
                    adir.object_id = INVALID_OBJECT_ID
                self.persist_autoscan(adir)
                self._autoscans[mode].add(adir)


__all__ = ["ContainerNotifier", "ContentManager"]
