"""Object and autoscan models persisted by the object store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidObjectError

INVALID_OBJECT_ID = -333
ROOT_ID = 0
FS_ROOT_ID = 1
FS_ROOT_DIRECTORY = "/"

VIRTUAL_CONTAINER_SEPARATOR = "/"
VIRTUAL_CONTAINER_ESCAPE = "\\"

UPNP_CLASS_CONTAINER = "object.container"
UPNP_CLASS_STORAGE_FOLDER = "object.container.storageFolder"
UPNP_CLASS_MUSIC_ALBUM = "object.container.album.musicAlbum"
UPNP_CLASS_MUSIC_ARTIST = "object.container.person.musicArtist"
UPNP_CLASS_ITEM = "object.item"
UPNP_CLASS_MUSIC_TRACK = "object.item.audioItem.musicTrack"
UPNP_CLASS_VIDEO_ITEM = "object.item.videoItem"
UPNP_CLASS_IMAGE_ITEM = "object.item.imageItem"

OBJECT_FLAG_RESTRICTED = 0x00000001
OBJECT_FLAG_PLAYED = 0x00000200

M_TITLE = "dc:title"
M_DESCRIPTION = "dc:description"
M_DATE = "dc:date"
M_ARTIST = "upnp:artist"
M_ALBUMARTIST = "upnp:albumArtist"
M_ALBUM = "upnp:album"
M_TRACKNUMBER = "upnp:originalTrackNumber"
M_GENRE = "upnp:genre"

HANDLER_DEFAULT = "default"
HANDLER_CONTAINERART = "containerart"
HANDLER_FANART = "fanart"
HANDLER_RESOURCE = "resource"

PURPOSE_CONTENT = "content"
PURPOSE_ALBUM_ART = "album_art"
PURPOSE_SUBTITLE = "subtitle"

R_PROTOCOLINFO = "protocolInfo"
R_SIZE = "size"
R_RESOLUTION = "resolution"
R_RESOURCE_FILE = "resFile"
R_FANART_OBJ_ID = "fanArtObjId"
R_FANART_RES_ID = "fanArtResId"

ONLINE_SERVICE_LAST_UPDATE = "online_service_last_update"


def is_forbidden_id(object_id: int) -> bool:
    """Return whether ``object_id`` can never name a removable object."""
    return object_id < 0


def render_protocol_info(mime_type: str, protocol: str = "http-get") -> str:
    """Return the protocol info attribute for a resource."""
    return f"{protocol}:*:{mime_type}:*"


class CdsResource(BaseModel):
    """A resource (stream, art, sidecar) attached to an object.

    Attributes:
        handler: Handler that produced the resource.
        purpose: What the resource represents (content, album art, subtitle).
        attributes: Free-form resource attributes such as protocol info or the
            weak fan-art reference.
    """

    model_config = ConfigDict(extra="forbid")

    handler: str = HANDLER_DEFAULT
    purpose: str = PURPOSE_CONTENT
    attributes: Dict[str, str] = Field(default_factory=dict)

    def is_meta_resource(self, purpose: str) -> bool:
        return self.purpose == purpose


class CdsObject(BaseModel):
    """Common fields of every node in the content tree."""

    model_config = ConfigDict(extra="forbid")

    object_type: str = "object"
    id: int = INVALID_OBJECT_ID
    ref_id: int = INVALID_OBJECT_ID
    parent_id: int = INVALID_OBJECT_ID
    title: str = ""
    upnp_class: str = ""
    location: str = ""
    mtime: int = 0
    size_on_disk: int = 0
    virtual: bool = False
    flags: int = 0
    metadata: Dict[str, str] = Field(default_factory=dict)
    aux_data: Dict[str, str] = Field(default_factory=dict)
    resources: List[CdsResource] = Field(default_factory=list)
    service_id: Optional[str] = None

    @property
    def is_item(self) -> bool:
        return self.object_type == "item"

    @property
    def is_container(self) -> bool:
        return self.object_type == "container"

    def get_flag(self, mask: int) -> bool:
        return bool(self.flags & mask)

    def set_flag(self, mask: int) -> None:
        self.flags |= mask

    def clear_flag(self, mask: int) -> None:
        self.flags &= ~mask

    def set_metadata(self, key: str, value: str) -> None:
        self.metadata[key] = value

    def remove_metadata(self, key: str) -> None:
        self.metadata.pop(key, None)

    def has_resource(self, handler: str) -> bool:
        return any(resource.handler == handler for resource in self.resources)

    def get_resource(self, index: int) -> CdsResource:
        return self.resources[index]

    def add_resource(self, resource: CdsResource) -> None:
        self.resources.append(resource)

    def remove_resource(self, handler: str) -> None:
        self.resources = [res for res in self.resources if res.handler != handler]

    def find_resource(self, purpose: str) -> tuple[int, CdsResource] | None:
        """Return the first resource serving ``purpose`` with its index."""
        for index, resource in enumerate(self.resources):
            if resource.is_meta_resource(purpose):
                return index, resource
        return None

    def clone(self) -> "CdsObject":
        return self.model_copy(deep=True)

    def equals(self, other: "CdsObject") -> bool:
        """Structural comparison used to suppress no-op updates."""
        return type(self) is type(other) and self.model_dump() == other.model_dump()

    def validate_object(self) -> None:
        """Check the invariants every persisted object must satisfy.

        Raises:
            InvalidObjectError: If a mandatory field is missing.
        """
        if not self.title:
            raise InvalidObjectError(f"Object {self.id} has no title")
        if not self.upnp_class:
            raise InvalidObjectError(f"Object {self.title!r} has no upnp class")


class CdsItem(CdsObject):
    """Leaf object backed by one file."""

    object_type: Literal["item"] = "item"
    upnp_class: str = UPNP_CLASS_ITEM
    mime_type: str = ""
    bookmark_pos: int = 0

    def validate_object(self) -> None:
        super().validate_object()
        if not self.mime_type:
            raise InvalidObjectError(f"Item {self.title!r} has no mime type")
        if not self.virtual and not self.location and self.service_id is None:
            raise InvalidObjectError(f"Item {self.title!r} has no location")


class CdsContainer(CdsObject):
    """Directory or virtual grouping node."""

    object_type: Literal["container"] = "container"
    upnp_class: str = UPNP_CLASS_CONTAINER
    child_count: int = 0
    autoscan_type: Literal["none", "ui", "config"] = "none"


AnyCdsObject = Annotated[Union[CdsItem, CdsContainer], Field(discriminator="object_type")]


@dataclass
class ChangedContainers:
    """Container IDs touched by a removal, split by notification channel."""

    ui: set[int] = field(default_factory=set)
    upnp: set[int] = field(default_factory=set)

    def __bool__(self) -> bool:
        return bool(self.ui or self.upnp)

    def add(self, container_id: int) -> None:
        if container_id >= 0:
            self.ui.add(container_id)
            self.upnp.add(container_id)

    def update(self, other: "ChangedContainers") -> None:
        self.ui |= other.ui
        self.upnp |= other.upnp


class AutoscanRecord(BaseModel):
    """Persisted form of an autoscan directory.

    Attributes:
        database_id: Store-assigned identifier of the record.
        location: Monitored filesystem directory.
        mode: Scan mode.
        recursive: Whether subdirectories are scanned.
        hidden: Whether dotfiles are imported.
        interval: Rescan interval in seconds (timed mode).
        persistent: Survive the disappearance of the directory.
        object_id: Container representing the directory, if resolved.
        last_modified: Committed watermark per scanned location.
        from_config: Whether the record originates from the configuration file.
    """

    model_config = ConfigDict(extra="forbid")

    database_id: int = -1
    location: str
    mode: Literal["timed", "inotify"] = "timed"
    recursive: bool = True
    hidden: bool = False
    interval: int = 0
    persistent: bool = False
    object_id: int = INVALID_OBJECT_ID
    last_modified: Dict[str, int] = Field(default_factory=dict)
    from_config: bool = False


class StoreSnapshot(BaseModel):
    """JSON snapshot written by :meth:`ObjectStore.save`."""

    version: int = 1
    next_id: int
    next_autoscan_id: int = 0
    objects: List[AnyCdsObject] = Field(default_factory=list)
    autoscans: List[AutoscanRecord] = Field(default_factory=list)


__all__ = [
    "INVALID_OBJECT_ID",
    "ROOT_ID",
    "FS_ROOT_ID",
    "FS_ROOT_DIRECTORY",
    "AnyCdsObject",
    "AutoscanRecord",
    "CdsContainer",
    "CdsItem",
    "CdsObject",
    "CdsResource",
    "ChangedContainers",
    "StoreSnapshot",
    "is_forbidden_id",
    "render_protocol_info",
]
