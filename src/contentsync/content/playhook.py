"""Playback side effects: played flag and last-played containers."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, List

from contentsync.config.models import ServerSettings
from contentsync.store.models import OBJECT_FLAG_PLAYED, CdsItem, CdsObject

if TYPE_CHECKING:
    from .manager import ContentManager

LOGGER = logging.getLogger(__name__)


class PlayHook:
    """React to an item being streamed.

    Items whose MIME type matches ``server.mark_played.content`` get the
    played flag. The parent container moves to the front of the last-played
    list, which is capped at ``server.last_played_limit`` entries.
    """

    def __init__(self, content: "ContentManager", settings: ServerSettings) -> None:
        self._content = content
        self._settings = settings
        self._lock = threading.Lock()
        self._last_played: List[int] = []

    @property
    def last_played(self) -> List[int]:
        with self._lock:
            return list(self._last_played)

    def trigger(self, obj: CdsObject) -> None:
        LOGGER.debug("Play hook for %s", obj.location or obj.id)
        self._mark_played(obj)
        self._remember(obj.parent_id)

    def _mark_played(self, obj: CdsObject) -> None:
        policy = self._settings.mark_played
        if not policy.enabled or not isinstance(obj, CdsItem) or obj.get_flag(OBJECT_FLAG_PLAYED):
            return
        if not any(obj.mime_type.startswith(prefix) for prefix in policy.content):
            return
        updated = obj.clone()
        updated.set_flag(OBJECT_FLAG_PLAYED)
        self._content.update_object(updated, send_updates=not policy.suppress_updates)

    def _remember(self, container_id: int) -> None:
        limit = max(0, self._settings.last_played_limit)
        with self._lock:
            if container_id in self._last_played:
                self._last_played.remove(container_id)
            self._last_played.insert(0, container_id)
            del self._last_played[limit:]


__all__ = ["PlayHook"]
