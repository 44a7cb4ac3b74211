"""Container chain builder with an in-memory path cache."""

from __future__ import annotations

import logging
import re
import threading
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from contentsync.config.models import ScanSettings
from contentsync.metadata import MetadataExtractor
from contentsync.store import ObjectStore, escape_segment, join_virtual_path, split_virtual_path
from contentsync.store.errors import ObjectNotFoundError
from contentsync.store.models import (
    HANDLER_CONTAINERART,
    HANDLER_FANART,
    INVALID_OBJECT_ID,
    M_ALBUMARTIST,
    M_ARTIST,
    M_DESCRIPTION,
    M_TITLE,
    M_TRACKNUMBER,
    PURPOSE_ALBUM_ART,
    R_FANART_OBJ_ID,
    R_FANART_RES_ID,
    R_PROTOCOLINFO,
    R_RESOURCE_FILE,
    VIRTUAL_CONTAINER_SEPARATOR,
    CdsObject,
    CdsResource,
)

from .errors import ContentError

LOGGER = logging.getLogger(__name__)

_STRIPPED_METADATA = (M_DESCRIPTION, M_TITLE, M_TRACKNUMBER, M_ARTIST)


class ContainerCache:
    """Resolve virtual container chains, creating them in the store once.

    Entries map a normalized virtual path to a container ID. The cache is
    cleared wholesale by :meth:`clear` whenever a removal may have collapsed
    an empty virtual container.
    """

    def __init__(
        self,
        store: ObjectStore,
        settings: ScanSettings,
        extractor: MetadataExtractor,
        notify: Callable[[Set[int]], None],
    ) -> None:
        self._store = store
        self._settings = settings
        self._extractor = extractor
        self._notify = notify
        self._lock = threading.RLock()
        self._cache: Dict[str, int] = {}
        self._mappings = [
            (re.compile(pattern), replacement)
            for pattern, replacement in settings.layout_mapping.items()
        ]

    def get(self, path: str) -> Optional[int]:
        with self._lock:
            return self._cache.get(_normalize(path))

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def add_container_chain(
        self,
        chain: str,
        last_class: str,
        last_ref_id: int = INVALID_OBJECT_ID,
        orig_obj: Optional[CdsObject] = None,
    ) -> Tuple[int, bool]:
        """Return the container for ``chain``, creating missing segments.

        Args:
            chain: Escaped virtual path such as ``/Audio/Artists/Foo``.
            last_class: UPnP class of the final container.
            last_ref_id: Reference ID of the final container.
            orig_obj: Object whose metadata seeds the created containers.

        Returns:
            Tuple[int, bool]: Container ID and whether any container was created.

        Raises:
            ContentError: If ``chain`` is empty.
        """
        if not chain or not split_virtual_path(chain):
            raise ContentError("Cannot add an empty container chain")

        rewritten = _normalize(self._rewrite(chain))
        with self._lock:
            cached = self._cache.get(rewritten)
            if cached is not None:
                return cached, False

            metadata: Dict[str, str] = dict(orig_obj.metadata) if orig_obj is not None else {}
            if M_ALBUMARTIST not in metadata and M_ARTIST in metadata:
                metadata[M_ALBUMARTIST] = metadata[M_ARTIST]
            for key in _STRIPPED_METADATA:
                metadata.pop(key, None)
            metadata[M_TITLE] = split_virtual_path(rewritten)[-1]

            container_id, created = self._store.add_container_chain(
                rewritten, last_class, last_ref_id, metadata
            )
            self._remember(created)
            self._cache[rewritten] = container_id

        if created:
            self._finish_created(created, orig_obj)
        return container_id, bool(created)

    def add_container_tree(self, chain: Sequence[CdsObject]) -> Tuple[int, bool]:
        """Build a chain from container prototypes, one segment at a time.

        Returns:
            Tuple[int, bool]: ID of the last container and whether any was created.
        """
        if not chain:
            raise ContentError("Cannot add an empty container tree")

        path = ""
        container_id = INVALID_OBJECT_ID
        created_all: List[int] = []
        with self._lock:
            for prototype in chain:
                path += VIRTUAL_CONTAINER_SEPARATOR + escape_segment(prototype.title)
                cached = self._cache.get(path)
                if cached is not None:
                    container_id = cached
                    continue
                metadata = dict(prototype.metadata)
                metadata.setdefault(M_TITLE, prototype.title)
                container_id, created = self._store.add_container_chain(
                    path, prototype.upnp_class, prototype.ref_id, metadata
                )
                self._cache[path] = container_id
                self._remember(created)
                created_all.extend(created)

        if created_all:
            self._finish_created(created_all, None)
        return container_id, bool(created_all)

    def assign_fan_art(self, containers: Iterable[CdsObject], orig_obj: Optional[CdsObject]) -> None:
        """Give containers without art a weak reference to ``orig_obj``'s art.

        Containers are visited deepest first; at most
        ``container_art.parent_count`` of them borrow item art, and only when
        their location is at least ``container_art.min_depth`` deep.
        """
        art_settings = self._settings.container_art
        count = 0
        for container in containers:
            original = container.clone()
            art = self.resolve_fan_art(container)
            if art is None and self._extractor.fill_container_art(container):
                art = container.find_resource(PURPOSE_ALBUM_ART)

            depth = container.location.count(VIRTUAL_CONTAINER_SEPARATOR)
            if (
                art is None
                and orig_obj is not None
                and (orig_obj.is_container or (count < art_settings.parent_count and depth >= art_settings.min_depth))
            ):
                source = orig_obj.find_resource(PURPOSE_ALBUM_ART)
                if source is not None:
                    container.add_resource(_borrow(orig_obj, *source))

            if not container.equals(original):
                self._store.update_object(container)
            count += 1

    def resolve_fan_art(self, container: CdsObject) -> Optional[Tuple[int, CdsResource]]:
        """Return the container's art, pruning a dangling weak reference."""
        found = container.find_resource(PURPOSE_ALBUM_ART)
        if found is None:
            return None
        _, resource = found
        if resource.handler == HANDLER_CONTAINERART:
            return found
        source_id = resource.attributes.get(R_FANART_OBJ_ID)
        if not source_id:
            return found
        try:
            source = self._store.load_object(int(source_id))
            index = int(resource.attributes.get(R_FANART_RES_ID, "-1"))
            if not 0 <= index < len(source.resources):
                raise ObjectNotFoundError(f"Resource {index} of {source_id} not found")
        except ObjectNotFoundError:
            LOGGER.debug("Pruning stale fan art of container %d", container.id)
            container.remove_resource(resource.handler)
            return None
        return found

    # Internal helpers -------------------------------------------------

    def _rewrite(self, chain: str) -> str:
        for pattern, replacement in self._mappings:
            chain = pattern.sub(replacement, chain)
        return chain

    def _remember(self, created: Iterable[int]) -> None:
        for container_id in created:
            try:
                location = self._store.load_object(container_id).location
            except ObjectNotFoundError:
                continue
            self._cache[_normalize(location)] = container_id

    def _finish_created(self, created: List[int], orig_obj: Optional[CdsObject]) -> None:
        containers = []
        for container_id in reversed(created):
            try:
                containers.append(self._store.load_object(container_id))
            except ObjectNotFoundError:
                continue
        self.assign_fan_art(containers, orig_obj)

        changed = {created[-1]}
        if containers:
            changed.add(containers[-1].parent_id)
        self._notify(changed)


def _normalize(path: str) -> str:
    return join_virtual_path(split_virtual_path(path))


def _borrow(source: CdsObject, index: int, resource: CdsResource) -> CdsResource:
    attributes = {R_PROTOCOLINFO: resource.attributes.get(R_PROTOCOLINFO, "")}
    resource_file = resource.attributes.get(R_RESOURCE_FILE)
    if resource_file:
        attributes[R_RESOURCE_FILE] = resource_file
    else:
        object_id = source.id if source.id != INVALID_OBJECT_ID else source.ref_id
        attributes[R_FANART_OBJ_ID] = str(object_id)
        attributes[R_FANART_RES_ID] = str(index)
    return CdsResource(handler=HANDLER_FANART, purpose=PURPOSE_ALBUM_ART, attributes=attributes)


__all__ = ["ContainerCache"]
