"""Virtual layout placing imported items into browse containers."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol

from contentsync.store import join_virtual_path
from contentsync.store.models import (
    INVALID_OBJECT_ID,
    M_ALBUM,
    M_ARTIST,
    M_DATE,
    M_GENRE,
    UPNP_CLASS_CONTAINER,
    UPNP_CLASS_MUSIC_ALBUM,
    UPNP_CLASS_MUSIC_ARTIST,
    CdsObject,
)

if TYPE_CHECKING:
    from contentsync.content.manager import ContentManager

LOGGER = logging.getLogger(__name__)

_AUDIO = "Audio"
_VIDEO = "Video"
_PHOTOS = "Photos"
_UNKNOWN = "Unknown"


class Layout(Protocol):
    """Decides where an imported object appears in the virtual tree."""

    def process_object(self, obj: CdsObject, root_path: Optional[Path]) -> None: ...


class BuiltinLayout:
    """Rule-based layout grouping media by kind, artist, album and date.

    Every placement is a virtual reference to the imported item, created
    through the content manager's container chain cache.
    """

    def __init__(self, content: "ContentManager") -> None:
        self._content = content

    def process_object(self, obj: CdsObject, root_path: Optional[Path]) -> None:
        if not obj.is_item or obj.virtual or obj.id == INVALID_OBJECT_ID:
            return
        upnp_class = obj.upnp_class
        LOGGER.debug("Layout processing %s (%s)", obj.location, upnp_class)
        if upnp_class.startswith("object.item.audioItem"):
            self._add_audio(obj, root_path)
        elif upnp_class.startswith("object.item.videoItem"):
            self._add_video(obj, root_path)
        elif upnp_class.startswith("object.item.imageItem"):
            self._add_image(obj, root_path)

    def _add_audio(self, obj: CdsObject, root_path: Optional[Path]) -> None:
        artist = obj.metadata.get(M_ARTIST) or _UNKNOWN
        album = obj.metadata.get(M_ALBUM) or _UNKNOWN
        genre = obj.metadata.get(M_GENRE) or _UNKNOWN
        self._link(obj, [_AUDIO, "All Audio"])
        self._link_artist_container(obj, artist)
        self._link(obj, [_AUDIO, "Artists", artist, "All Songs"])
        self._link(obj, [_AUDIO, "Artists", artist, album], UPNP_CLASS_MUSIC_ALBUM)
        self._link(obj, [_AUDIO, "Albums", album], UPNP_CLASS_MUSIC_ALBUM)
        self._link(obj, [_AUDIO, "Genres", genre])
        self._link_directories(obj, _AUDIO, root_path)

    def _add_video(self, obj: CdsObject, root_path: Optional[Path]) -> None:
        self._link(obj, [_VIDEO, "All Video"])
        self._link_directories(obj, _VIDEO, root_path)

    def _add_image(self, obj: CdsObject, root_path: Optional[Path]) -> None:
        self._link(obj, [_PHOTOS, "All Photos"])
        date = obj.metadata.get(M_DATE, "")
        if len(date) >= 7:
            self._link(obj, [_PHOTOS, "Year", date[:4], date[5:7]])
        self._link_directories(obj, _PHOTOS, root_path)

    def _link_artist_container(self, obj: CdsObject, artist: str) -> None:
        chain = join_virtual_path([_AUDIO, "Artists", artist])
        self._content.add_container_chain(chain, UPNP_CLASS_MUSIC_ARTIST, INVALID_OBJECT_ID, obj)

    def _link_directories(self, obj: CdsObject, category: str, root_path: Optional[Path]) -> None:
        if root_path is None:
            return
        directory = Path(obj.location).parent
        try:
            relative = directory.relative_to(root_path)
        except ValueError:
            return
        segments = [category, "Directories", root_path.name or os.sep, *relative.parts]
        self._link(obj, segments)

    def _link(
        self, obj: CdsObject, segments: Iterable[str], last_class: str = UPNP_CLASS_CONTAINER
    ) -> None:
        names: List[str] = [segment for segment in segments if segment]
        chain = join_virtual_path(names)
        container_id, _ = self._content.add_container_chain(
            chain, last_class, INVALID_OBJECT_ID, obj
        )
        reference = obj.clone()
        reference.id = INVALID_OBJECT_ID
        reference.ref_id = obj.id
        reference.parent_id = container_id
        reference.virtual = True
        self._content.add_object(reference)


__all__ = ["BuiltinLayout", "Layout"]
