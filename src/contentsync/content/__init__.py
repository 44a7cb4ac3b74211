"""Content synchronization engine: scheduling, scanning and the content facade."""

from .containers import ContainerCache
from .errors import ContentError, ServerShutdownError
from .manager import ContainerNotifier, ContentManager
from .scanner import ScanEngine
from .scheduler import TaskScheduler
from .settings import AutoScanSetting
from .tasks import (
    AddFileTask,
    FetchOnlineContentTask,
    GenericTask,
    OnlineService,
    RemoveObjectTask,
    RescanDirectoryTask,
    TaskOwner,
    TaskType,
)

__all__ = [
    "AddFileTask",
    "AutoScanSetting",
    "ContainerCache",
    "ContainerNotifier",
    "ContentError",
    "ContentManager",
    "FetchOnlineContentTask",
    "GenericTask",
    "OnlineService",
    "RemoveObjectTask",
    "RescanDirectoryTask",
    "ScanEngine",
    "ServerShutdownError",
    "TaskOwner",
    "TaskScheduler",
    "TaskType",
]
