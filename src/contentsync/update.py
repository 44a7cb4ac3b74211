"""Container change notifications for viewers."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Iterable, List, Set

LOGGER = logging.getLogger(__name__)

ChangeListener = Callable[[Set[int]], None]


class UpdateManager:
    """Track per-container update IDs and fan changes out to listeners.

    Every reported container gets its update ID bumped; the system update ID
    counts the notification batches.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._update_ids: Dict[int, int] = {}
        self._system_update_id = 0
        self._listeners: List[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def container_changed(self, container_id: int) -> None:
        self.containers_changed({container_id})

    def containers_changed(self, container_ids: Iterable[int]) -> None:
        """Record a change of ``container_ids`` and notify listeners."""
        changed = {container_id for container_id in container_ids if container_id >= 0}
        if not changed:
            return
        with self._lock:
            for container_id in changed:
                self._update_ids[container_id] = self._update_ids.get(container_id, 0) + 1
            self._system_update_id += 1
            listeners = list(self._listeners)
        LOGGER.debug("Containers changed: %s", sorted(changed))
        for listener in listeners:
            try:
                listener(set(changed))
            except Exception:  # noqa: BLE001
                LOGGER.exception("Change listener failed")

    def get_update_id(self, container_id: int) -> int:
        with self._lock:
            return self._update_ids.get(container_id, 0)

    @property
    def system_update_id(self) -> int:
        with self._lock:
            return self._system_update_id


__all__ = ["ChangeListener", "UpdateManager"]
