"""Units of queued content work."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Optional, Protocol

from contentsync.autoscan import INVALID_SCAN_ID, AutoscanDirectory

from .settings import AutoScanSetting

if TYPE_CHECKING:
    from .manager import ContentManager

LOGGER = logging.getLogger(__name__)


class TaskType(str, Enum):
    INVALID = "invalid"
    ADD_FILE = "add_file"
    REMOVE_OBJECT = "remove_object"
    RESCAN_DIRECTORY = "rescan_directory"
    FETCH_ONLINE_CONTENT = "fetch_online_content"


class TaskOwner(str, Enum):
    CONTENT_MANAGER = "content_manager"
    TASK_PROCESSOR = "task_processor"


class OnlineService(Protocol):
    """Remote content provider refreshed through the task queue.

    Attributes:
        name: Human readable service name.
        service_prefix: Prefix of the ``service_id`` of objects it creates.
        refresh_interval: Seconds between scheduled refreshes, ``0`` disables them.
        purge_interval: Age in seconds after which objects are purged.
    """

    name: str
    service_prefix: str
    refresh_interval: int
    purge_interval: int

    def refresh_service_objects(self, content: "ContentManager") -> bool:
        """Import a batch of objects; return whether more batches remain."""
        ...


class GenericTask:
    """Base class of every queued task.

    The scheduler assigns ``id`` when the task is enqueued. ``parent_id``
    groups follow-up tasks so that invalidating the parent cancels them too.
    """

    task_type: ClassVar[TaskType] = TaskType.INVALID

    def __init__(
        self,
        description: str = "",
        *,
        cancellable: bool = True,
        owner: TaskOwner = TaskOwner.CONTENT_MANAGER,
        parent_id: Optional[int] = None,
    ) -> None:
        self.id = 0
        self.parent_id = parent_id
        self.description = description
        self.cancellable = cancellable
        self.owner = owner
        self._valid = True

    @property
    def valid(self) -> bool:
        return self._valid

    def invalidate(self) -> None:
        self._valid = False

    def run(self, content: "ContentManager") -> None:
        raise NotImplementedError

    def discard(self, content: "ContentManager") -> None:
        """Release bookkeeping of a task dropped without running."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id}, description={self.description!r})"


class _AutoscanTask(GenericTask):
    """Task counted against its autoscan directory while queued or running."""

    def __init__(self, adir: Optional[AutoscanDirectory], description: str, **kwargs) -> None:
        super().__init__(description, **kwargs)
        self.adir = adir
        if adir is not None:
            adir.inc_task_count()

    def discard(self, content: "ContentManager") -> None:
        self._release(content)

    def _release(self, content: "ContentManager") -> None:
        if self.adir is None:
            return
        self.adir.dec_task_count()
        if self.adir.scan_id != INVALID_SCAN_ID and self.adir.update_lmt():
            content.persist_autoscan(self.adir)


class AddFileTask(_AutoscanTask):
    """Import a file, or a directory tree, into the store."""

    task_type = TaskType.ADD_FILE

    def __init__(
        self,
        path: Path,
        root_path: Path,
        settings: AutoScanSetting,
        *,
        cancellable: bool = True,
        parent_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            settings.adir,
            f"Importing: {path}",
            cancellable=cancellable,
            parent_id=parent_id,
        )
        self.path = path
        self.root_path = root_path
        self.settings = settings

    def run(self, content: "ContentManager") -> None:
        try:
            content.scanner.add_file(self.path, self.root_path, self.settings, task=self)
        finally:
            self._release(content)


class RemoveObjectTask(_AutoscanTask):
    task_type = TaskType.REMOVE_OBJECT

    def __init__(
        self,
        adir: Optional[AutoscanDirectory],
        object_id: int,
        path: Optional[str],
        *,
        rescan_resource: bool = False,
        all_refs: bool = False,
    ) -> None:
        super().__init__(adir, f"Removing: {path or object_id}", cancellable=False)
        self.object_id = object_id
        self.path = path
        self.rescan_resource = rescan_resource
        self.all_refs = all_refs

    def run(self, content: "ContentManager") -> None:
        try:
            content.remove_object(
                self.adir,
                self.object_id,
                rescan_resource=self.rescan_resource,
                asynchronous=False,
                all_refs=self.all_refs,
            )
        finally:
            self._release(content)


class RescanDirectoryTask(_AutoscanTask):
    task_type = TaskType.RESCAN_DIRECTORY

    def __init__(
        self,
        adir: AutoscanDirectory,
        container_id: int,
        description: str,
        *,
        cancellable: bool = True,
    ) -> None:
        super().__init__(adir, description, cancellable=cancellable)
        self.container_id = container_id

    def run(self, content: "ContentManager") -> None:
        assert self.adir is not None
        try:
            content.scanner.rescan_directory(self.adir, self.container_id, task=self)
        finally:
            self._release(content)


class FetchOnlineContentTask(GenericTask):
    """Refresh one online service and re-arm its timer."""

    task_type = TaskType.FETCH_ONLINE_CONTENT

    def __init__(
        self,
        service: OnlineService,
        *,
        cancellable: bool = True,
        unscheduled_refresh: bool = False,
    ) -> None:
        super().__init__(f"Updating content from {service.name}", cancellable=cancellable)
        self.service = service
        self.unscheduled_refresh = unscheduled_refresh

    def run(self, content: "ContentManager") -> None:
        more = self.service.refresh_service_objects(content)
        if more and self.valid:
            content.fetch_online_content(
                self.service,
                low_priority=True,
                cancellable=self.cancellable,
                unscheduled_refresh=self.unscheduled_refresh,
            )
            return
        content.cleanup_online_service_objects(self.service)
        if not self.unscheduled_refresh:
            content.schedule_online_refresh(self.service)


__all__ = [
    "AddFileTask",
    "FetchOnlineContentTask",
    "GenericTask",
    "OnlineService",
    "RemoveObjectTask",
    "RescanDirectoryTask",
    "TaskOwner",
    "TaskType",
]
