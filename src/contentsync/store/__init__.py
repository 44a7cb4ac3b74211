"""In-memory object store with JSON snapshot persistence."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Iterable, Mapping

from pydantic import ValidationError

from .errors import InvalidObjectError, ObjectNotFoundError, OverlappingAutoscanError, StoreError
from .models import (
    FS_ROOT_DIRECTORY,
    FS_ROOT_ID,
    INVALID_OBJECT_ID,
    M_TITLE,
    ROOT_ID,
    UPNP_CLASS_CONTAINER,
    UPNP_CLASS_STORAGE_FOLDER,
    VIRTUAL_CONTAINER_ESCAPE,
    VIRTUAL_CONTAINER_SEPARATOR,
    AutoscanRecord,
    CdsContainer,
    CdsItem,
    CdsObject,
    CdsResource,
    ChangedContainers,
    StoreSnapshot,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_NAME = "store.json"


def escape_segment(title: str) -> str:
    """Escape a container title so it can be embedded in a virtual path."""
    return title.replace(VIRTUAL_CONTAINER_ESCAPE, VIRTUAL_CONTAINER_ESCAPE * 2).replace(
        VIRTUAL_CONTAINER_SEPARATOR, VIRTUAL_CONTAINER_ESCAPE + VIRTUAL_CONTAINER_SEPARATOR
    )


def split_virtual_path(path: str) -> list[str]:
    """Split an escaped virtual path into unescaped segments, dropping empty ones."""
    segments: list[str] = []
    current: list[str] = []
    escaped = False
    for char in path:
        if escaped:
            current.append(char)
            escaped = False
        elif char == VIRTUAL_CONTAINER_ESCAPE:
            escaped = True
        elif char == VIRTUAL_CONTAINER_SEPARATOR:
            if current:
                segments.append("".join(current))
            current = []
        else:
            current.append(char)
    if current:
        segments.append("".join(current))
    return segments


def join_virtual_path(segments: Iterable[str]) -> str:
    return "".join(VIRTUAL_CONTAINER_SEPARATOR + escape_segment(segment) for segment in segments)


def _location_key(path: str | os.PathLike[str]) -> str:
    return os.path.normpath(os.fspath(path))


def _stat_mtime(path: Path) -> int:
    try:
        return int(path.stat().st_mtime)
    except OSError:
        return 0


class ObjectStore:
    """Persist objects and containers of the virtual content tree.

    All public methods are thread-safe; returned objects are deep copies so
    callers follow the clone-modify-commit discipline.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: dict[int, CdsObject] = {}
        self._children: dict[int, list[int]] = {}
        self._by_location: dict[str, int] = {}
        self._by_virtual_path: dict[str, int] = {}
        self._refs: dict[int, set[int]] = {}
        self._autoscans: dict[int, AutoscanRecord] = {}
        self._next_id = FS_ROOT_ID + 1
        self._next_autoscan_id = 0
        self._bootstrap()

    # ------------------------------------------------------------------ #
    # Lookup                                                             #
    # ------------------------------------------------------------------ #

    def load_object(self, object_id: int) -> CdsObject:
        """Return a copy of the object with ``object_id``.

        Raises:
            ObjectNotFoundError: If no such object exists.
        """
        with self._lock:
            obj = self._objects.get(object_id)
            if obj is None:
                raise ObjectNotFoundError(f"Object {object_id} not found")
            return obj.clone()

    def find_object_by_path(self, path: str | os.PathLike[str]) -> CdsObject | None:
        """Return the non-virtual object stored for ``path``, if any."""
        with self._lock:
            object_id = self._by_location.get(_location_key(path))
            return None if object_id is None else self._objects[object_id].clone()

    def find_object_id_by_path(self, path: str | os.PathLike[str]) -> int:
        with self._lock:
            return self._by_location.get(_location_key(path), INVALID_OBJECT_ID)

    def get_objects(self, container_id: int, items_only: bool = False) -> set[int]:
        """Return the IDs of the direct children of ``container_id``."""
        with self._lock:
            children = self._children.get(container_id, [])
            if not items_only:
                return set(children)
            return {child for child in children if self._objects[child].is_item}

    def get_children(self, container_id: int) -> list[CdsObject]:
        with self._lock:
            return [self._objects[child].clone() for child in self._children.get(container_id, [])]

    def get_child_count(self, container_id: int) -> int:
        with self._lock:
            return len(self._children.get(container_id, []))

    def get_service_object_ids(self, prefix: str) -> set[int]:
        with self._lock:
            return {
                object_id
                for object_id, obj in self._objects.items()
                if obj.service_id is not None and obj.service_id.startswith(prefix)
            }

    def build_container_path(self, parent_id: int, title: str) -> str:
        """Return the virtual path of a container named ``title`` below ``parent_id``."""
        with self._lock:
            parent = self._objects.get(parent_id)
            if parent is None:
                raise ObjectNotFoundError(f"Container {parent_id} not found")
            prefix = "" if parent_id == ROOT_ID or not parent.virtual else parent.location
            return prefix + VIRTUAL_CONTAINER_SEPARATOR + escape_segment(title)

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    # ------------------------------------------------------------------ #
    # Mutation                                                           #
    # ------------------------------------------------------------------ #

    def add_object(self, obj: CdsObject) -> int:
        """Insert ``obj`` and assign its ID in place.

        Non-virtual objects without a parent are attached below the container
        of their location's directory, which is created on demand.

        Returns:
            int: ID of the highest container whose child list changed.
        """
        with self._lock:
            changed = INVALID_OBJECT_ID
            if obj.parent_id == INVALID_OBJECT_ID and not obj.virtual and obj.location:
                obj.parent_id, changed = self._ensure_path(Path(obj.location).parent)
            parent = self._objects.get(obj.parent_id)
            if parent is None or not parent.is_container:
                raise InvalidObjectError(
                    f"Cannot add {obj.title!r}: parent {obj.parent_id} is not a container"
                )
            if not obj.virtual and obj.location:
                key = _location_key(obj.location)
                if key in self._by_location:
                    raise InvalidObjectError(f"{obj.location} is already stored")
            obj.id = self._allocate_id()
            self._insert(obj.clone())
            return changed if changed != INVALID_OBJECT_ID else obj.parent_id

    def update_object(self, obj: CdsObject) -> int:
        """Replace the stored state of ``obj``.

        Returns:
            int: ID of the container whose listing changed (the parent).
        """
        with self._lock:
            current = self._objects.get(obj.id)
            if current is None:
                raise ObjectNotFoundError(f"Object {obj.id} not found")
            if type(current) is not type(obj):
                raise InvalidObjectError(f"Object {obj.id} cannot change its type")
            stored = obj.clone()
            stored.parent_id = current.parent_id
            if isinstance(stored, CdsContainer) and isinstance(current, CdsContainer):
                stored.child_count = current.child_count
            if not current.virtual and current.location:
                self._by_location.pop(_location_key(current.location), None)
            if not stored.virtual and stored.location:
                self._by_location[_location_key(stored.location)] = stored.id
            if current.ref_id != stored.ref_id:
                self._refs.get(current.ref_id, set()).discard(stored.id)
                if stored.ref_id != INVALID_OBJECT_ID:
                    self._refs.setdefault(stored.ref_id, set()).add(stored.id)
            self._objects[stored.id] = stored
            return stored.parent_id

    def remove_object(self, object_id: int, all_refs: bool = False) -> ChangedContainers:
        """Remove an object, its subtree and every virtual reference to it.

        Virtual containers left empty by the removal are pruned as well.

        Args:
            object_id: Object to remove.
            all_refs: When removing a virtual reference, also remove the
                original object it points to.

        Raises:
            ObjectNotFoundError: If ``object_id`` is unknown.
        """
        with self._lock:
            if object_id not in self._objects:
                raise ObjectNotFoundError(f"Object {object_id} not found")
            return self._remove_many([object_id], all_refs)

    def remove_objects(self, object_ids: Iterable[int], all_refs: bool = False) -> ChangedContainers:
        """Remove several objects at once; unknown IDs are ignored."""
        with self._lock:
            return self._remove_many(
                [object_id for object_id in object_ids if object_id in self._objects], all_refs
            )

    def add_container_chain(
        self,
        path: str,
        upnp_class: str = UPNP_CLASS_CONTAINER,
        ref_id: int = INVALID_OBJECT_ID,
        metadata: Mapping[str, str] | None = None,
    ) -> tuple[int, list[int]]:
        """Materialize every missing container of the virtual ``path``.

        Returns:
            tuple[int, list[int]]: ID of the deepest container and the IDs of
            the containers created by this call, shallowest first.
        """
        segments = split_virtual_path(path)
        if not segments:
            raise InvalidObjectError(f"Invalid container chain {path!r}")

        with self._lock:
            parent_id = ROOT_ID
            created: list[int] = []
            current = ""
            for index, segment in enumerate(segments):
                current += VIRTUAL_CONTAINER_SEPARATOR + escape_segment(segment)
                existing = self._by_virtual_path.get(current)
                if existing is not None:
                    parent_id = existing
                    continue
                last = index == len(segments) - 1
                container = CdsContainer(
                    parent_id=parent_id,
                    title=segment,
                    location=current,
                    virtual=True,
                    upnp_class=upnp_class if last else UPNP_CLASS_CONTAINER,
                    ref_id=ref_id if last else INVALID_OBJECT_ID,
                    metadata=dict(metadata or {}) if last else {M_TITLE: segment},
                )
                container.id = self._allocate_id()
                self._insert(container)
                created.append(container.id)
                parent_id = container.id
            return parent_id, created

    def ensure_path_existence(self, path: str | os.PathLike[str]) -> tuple[int, int]:
        """Create the filesystem container chain for ``path``.

        Returns:
            tuple[int, int]: ID of the container for ``path`` and the ID of the
            container that gained a child, or ``INVALID_OBJECT_ID`` if nothing
            was created.
        """
        with self._lock:
            return self._ensure_path(Path(path))

    # ------------------------------------------------------------------ #
    # Autoscan persistence                                               #
    # ------------------------------------------------------------------ #

    def add_autoscan_directory(self, record: AutoscanRecord) -> int:
        with self._lock:
            stored = record.model_copy(deep=True)
            stored.database_id = self._next_autoscan_id
            self._next_autoscan_id += 1
            self._autoscans[stored.database_id] = stored
            self._mark_autoscan_container(stored)
            return stored.database_id

    def update_autoscan_directory(self, record: AutoscanRecord) -> int:
        """Persist ``record``, inserting it when it is not known yet."""
        with self._lock:
            existing = self._autoscans.get(record.database_id)
            if existing is None:
                existing = self._autoscan_by_location(record.location)
            if existing is None:
                return self.add_autoscan_directory(record)
            stored = record.model_copy(deep=True)
            stored.database_id = existing.database_id
            if existing.object_id != stored.object_id:
                self._unmark_autoscan_container(existing.object_id)
            self._autoscans[stored.database_id] = stored
            self._mark_autoscan_container(stored)
            return stored.database_id

    def remove_autoscan_directory(self, database_id: int) -> None:
        with self._lock:
            record = self._autoscans.pop(database_id, None)
            if record is not None:
                self._unmark_autoscan_container(record.object_id)

    def get_autoscan_directory(self, object_id: int) -> AutoscanRecord | None:
        with self._lock:
            for record in self._autoscans.values():
                if record.object_id == object_id and object_id != INVALID_OBJECT_ID:
                    return record.model_copy(deep=True)
            return None

    def get_autoscan_list(self, mode: str) -> list[AutoscanRecord]:
        with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._autoscans.values()
                if record.mode == mode
            ]

    def update_autoscan_list(self, mode: str, records: Iterable[AutoscanRecord]) -> None:
        """Synchronize configuration-declared autoscans of ``mode``.

        Known locations keep their database ID and watermarks; configuration
        entries that disappeared are dropped, UI-created entries are kept.
        """
        with self._lock:
            wanted: set[str] = set()
            for record in records:
                key = _location_key(record.location)
                wanted.add(key)
                existing = self._autoscan_by_location(key)
                merged = record.model_copy(deep=True)
                merged.from_config = True
                if existing is not None:
                    merged.database_id = existing.database_id
                    merged.last_modified = dict(existing.last_modified)
                    if merged.object_id == INVALID_OBJECT_ID:
                        merged.object_id = existing.object_id
                    self.update_autoscan_directory(merged)
                else:
                    self.add_autoscan_directory(merged)
            for record in list(self._autoscans.values()):
                if (
                    record.mode == mode
                    and record.from_config
                    and _location_key(record.location) not in wanted
                ):
                    self.remove_autoscan_directory(record.database_id)

    def check_overlapping_autoscans(self, record: AutoscanRecord) -> None:
        """Reject ``record`` if it nests inside, or contains, another autoscan.

        Raises:
            OverlappingAutoscanError: If an overlap is found.
        """
        location = Path(_location_key(record.location))
        with self._lock:
            for other in self._autoscans.values():
                if other.database_id == record.database_id and record.database_id >= 0:
                    continue
                other_location = Path(_location_key(other.location))
                if other_location == location:
                    if other.object_id == record.object_id and record.object_id != INVALID_OBJECT_ID:
                        continue
                    raise OverlappingAutoscanError(f"{location} is already an autoscan directory")
                if other.recursive and location.is_relative_to(other_location):
                    raise OverlappingAutoscanError(
                        f"{location} is inside the recursive autoscan {other_location}"
                    )
                if record.recursive and other_location.is_relative_to(location):
                    raise OverlappingAutoscanError(
                        f"{location} would contain the autoscan {other_location}"
                    )

    # ------------------------------------------------------------------ #
    # Snapshot persistence                                               #
    # ------------------------------------------------------------------ #

    def save(self, path: Path) -> None:
        """Write a JSON snapshot of the store to ``path``."""
        with self._lock:
            snapshot = StoreSnapshot(
                next_id=self._next_id,
                next_autoscan_id=self._next_autoscan_id,
                objects=[obj.clone() for obj in self._objects.values()],  # type: ignore[misc]
                autoscans=[record.model_copy(deep=True) for record in self._autoscans.values()],
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        staging = path.with_suffix(path.suffix + ".tmp")
        staging.write_text(
            json.dumps(snapshot.model_dump(mode="json"), indent=2), encoding="utf-8"
        )
        os.replace(staging, path)

    @classmethod
    def load(cls, path: Path) -> "ObjectStore":
        """Return a store restored from the snapshot at ``path``.

        A missing snapshot yields an empty store.

        Raises:
            StoreError: If the snapshot cannot be parsed.
        """
        store = cls()
        if not path.exists():
            return store
        try:
            snapshot = StoreSnapshot.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise StoreError(f"Invalid store snapshot {path}: {exc}") from exc

        with store._lock:
            store._objects.clear()
            store._children.clear()
            store._by_location.clear()
            store._by_virtual_path.clear()
            store._refs.clear()
            pending = sorted(snapshot.objects, key=lambda obj: obj.id)
            for obj in pending:
                store._objects[obj.id] = obj
                if obj.is_container:
                    store._children.setdefault(obj.id, [])
            for obj in pending:
                if obj.parent_id in store._objects:
                    store._children.setdefault(obj.parent_id, []).append(obj.id)
                store._index(obj)
            store._next_id = max(snapshot.next_id, store._next_id)
            store._autoscans = {record.database_id: record for record in snapshot.autoscans}
            store._next_autoscan_id = snapshot.next_autoscan_id
        LOGGER.debug("Loaded %d objects from %s", len(store._objects), path)
        return store

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _bootstrap(self) -> None:
        self._insert(
            CdsContainer(id=ROOT_ID, parent_id=-1, title="Root", virtual=True, location="")
        )
        self._insert(
            CdsContainer(
                id=FS_ROOT_ID,
                parent_id=ROOT_ID,
                title="PC Directory",
                location=FS_ROOT_DIRECTORY,
                upnp_class=UPNP_CLASS_STORAGE_FOLDER,
            )
        )

    def _allocate_id(self) -> int:
        object_id = self._next_id
        self._next_id += 1
        return object_id

    def _insert(self, obj: CdsObject) -> None:
        self._objects[obj.id] = obj
        if obj.is_container:
            self._children.setdefault(obj.id, [])
        parent = self._objects.get(obj.parent_id)
        if parent is not None and obj.id != obj.parent_id:
            self._children.setdefault(parent.id, []).append(obj.id)
            if isinstance(parent, CdsContainer):
                parent.child_count += 1
        self._index(obj)

    def _index(self, obj: CdsObject) -> None:
        if obj.virtual:
            if obj.is_container and obj.location:
                self._by_virtual_path[obj.location] = obj.id
        elif obj.location:
            self._by_location[_location_key(obj.location)] = obj.id
        if obj.ref_id != INVALID_OBJECT_ID:
            self._refs.setdefault(obj.ref_id, set()).add(obj.id)

    def _ensure_path(self, path: Path) -> tuple[int, int]:
        path = Path(_location_key(path.absolute()))
        existing = self._by_location.get(str(path))
        if existing is not None:
            return existing, INVALID_OBJECT_ID

        parent_id = FS_ROOT_ID
        update_id = INVALID_OBJECT_ID
        for directory in [*reversed(path.parents), path][1:]:
            found = self._by_location.get(str(directory))
            if found is not None:
                parent_id = found
                continue
            if update_id == INVALID_OBJECT_ID:
                update_id = parent_id
            container = CdsContainer(
                id=self._allocate_id(),
                parent_id=parent_id,
                title=directory.name,
                location=str(directory),
                upnp_class=UPNP_CLASS_STORAGE_FOLDER,
                mtime=_stat_mtime(directory),
            )
            self._insert(container)
            parent_id = container.id
        return parent_id, update_id

    def _collect(self, object_id: int, doomed: set[int], all_refs: bool) -> None:
        stack = [object_id]
        while stack:
            current = stack.pop()
            if current in doomed or current not in self._objects:
                continue
            doomed.add(current)
            obj = self._objects[current]
            stack.extend(self._children.get(current, []))
            stack.extend(self._refs.get(current, ()))
            if all_refs and obj.virtual and obj.ref_id != INVALID_OBJECT_ID:
                stack.append(obj.ref_id)

    def _remove_many(self, object_ids: list[int], all_refs: bool) -> ChangedContainers:
        doomed: set[int] = set()
        for object_id in object_ids:
            self._collect(object_id, doomed, all_refs)

        changed = ChangedContainers()
        for object_id in doomed:
            obj = self._objects[object_id]
            if obj.parent_id not in doomed:
                changed.add(obj.parent_id)
        for object_id in doomed:
            self._drop(object_id)

        self._purge_empty_virtual(changed)
        changed.ui &= self._objects.keys()
        changed.upnp &= self._objects.keys()
        LOGGER.debug("Removed %d objects, %d containers changed", len(doomed), len(changed.upnp))
        return changed

    def _drop(self, object_id: int) -> None:
        obj = self._objects.pop(object_id)
        parent = self._objects.get(obj.parent_id)
        if parent is not None:
            siblings = self._children.get(parent.id, [])
            if object_id in siblings:
                siblings.remove(object_id)
            if isinstance(parent, CdsContainer):
                parent.child_count = max(0, parent.child_count - 1)
        self._children.pop(object_id, None)
        self._refs.pop(object_id, None)
        if obj.ref_id != INVALID_OBJECT_ID:
            self._refs.get(obj.ref_id, set()).discard(object_id)
        if obj.virtual:
            if self._by_virtual_path.get(obj.location) == object_id:
                del self._by_virtual_path[obj.location]
        elif obj.location and self._by_location.get(_location_key(obj.location)) == object_id:
            del self._by_location[_location_key(obj.location)]

    def _purge_empty_virtual(self, changed: ChangedContainers) -> None:
        pending = list(changed.upnp)
        while pending:
            container_id = pending.pop()
            obj = self._objects.get(container_id)
            if (
                obj is None
                or not obj.virtual
                or not obj.is_container
                or container_id == ROOT_ID
                or self._children.get(container_id)
            ):
                continue
            parent_id = obj.parent_id
            self._drop(container_id)
            changed.ui.discard(container_id)
            changed.upnp.discard(container_id)
            changed.add(parent_id)
            pending.append(parent_id)

    def _autoscan_by_location(self, location: str) -> AutoscanRecord | None:
        key = _location_key(location)
        for record in self._autoscans.values():
            if _location_key(record.location) == key:
                return record
        return None

    def _mark_autoscan_container(self, record: AutoscanRecord) -> None:
        container = self._objects.get(record.object_id)
        if isinstance(container, CdsContainer):
            container.autoscan_type = "config" if record.from_config else "ui"

    def _unmark_autoscan_container(self, object_id: int) -> None:
        container = self._objects.get(object_id)
        if isinstance(container, CdsContainer):
            container.autoscan_type = "none"


__all__ = [
    "DEFAULT_SNAPSHOT_NAME",
    "AutoscanRecord",
    "CdsContainer",
    "CdsItem",
    "CdsObject",
    "CdsResource",
    "ChangedContainers",
    "InvalidObjectError",
    "ObjectNotFoundError",
    "ObjectStore",
    "OverlappingAutoscanError",
    "StoreError",
    "escape_segment",
    "join_virtual_path",
    "split_virtual_path",
]
