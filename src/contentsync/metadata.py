"""MIME classification and per-file metadata extraction."""

from __future__ import annotations

import logging
import mimetypes
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from contentsync.config.models import ScanSettings
from contentsync.store.models import (
    HANDLER_CONTAINERART,
    HANDLER_DEFAULT,
    HANDLER_RESOURCE,
    M_DATE,
    M_TITLE,
    PURPOSE_ALBUM_ART,
    PURPOSE_CONTENT,
    PURPOSE_SUBTITLE,
    R_PROTOCOLINFO,
    R_RESOLUTION,
    R_RESOURCE_FILE,
    R_SIZE,
    UPNP_CLASS_ITEM,
    CdsItem,
    CdsObject,
    CdsResource,
    render_protocol_info,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"
SUBTITLE_EXTENSIONS = (".srt", ".vtt", ".ass", ".sub")


class MimeResolver:
    """Map files to MIME types and UPnP classes."""

    def __init__(self, settings: ScanSettings) -> None:
        self._settings = settings

    def classify(self, path: str | os.PathLike[str]) -> Tuple[str, str]:
        """Return the MIME type and UPnP class for ``path``.

        Configured extension overrides win over the platform MIME database.
        """
        mime_type = self.mime_type(path)
        return mime_type, self.upnp_class(mime_type)

    def mime_type(self, path: str | os.PathLike[str]) -> str:
        suffix = Path(path).suffix.lower().lstrip(".")
        overrides = {key.lower().lstrip("."): value for key, value in self._settings.extension_mimetype.items()}
        if suffix in overrides:
            return overrides[suffix]
        guessed, _ = mimetypes.guess_type(os.fspath(path), strict=False)
        return guessed or DEFAULT_MIME_TYPE

    def upnp_class(self, mime_type: str) -> str:
        mapping = self._settings.mimetype_upnpclass
        if mime_type in mapping:
            return mapping[mime_type]
        wildcard = mime_type.split("/", 1)[0] + "/*"
        return mapping.get(wildcard, UPNP_CLASS_ITEM)

    def content_type(self, mime_type: str) -> Optional[str]:
        return self._settings.mimetype_contenttype.get(mime_type)


class MetadataExtractor:
    """Fill item metadata and resources from the file system."""

    def __init__(self, settings: ScanSettings) -> None:
        self._settings = settings

    def extract_metadata(self, item: CdsItem, stat_result: Optional[os.stat_result] = None) -> None:
        """Populate size, date, resources and, for images, the resolution.

        Args:
            item: Item whose ``location`` names the file.
            stat_result: Stat result already obtained by the caller.
        """
        path = Path(item.location)
        if stat_result is None:
            try:
                stat_result = path.stat()
            except OSError as exc:
                LOGGER.warning("Cannot stat %s: %s", path, exc)
                return

        item.size_on_disk = stat_result.st_size
        item.mtime = int(stat_result.st_mtime)
        item.metadata.setdefault(M_TITLE, item.title)
        item.metadata.setdefault(
            M_DATE,
            datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc).date().isoformat(),
        )

        main = CdsResource(
            handler=HANDLER_DEFAULT,
            purpose=PURPOSE_CONTENT,
            attributes={
                R_PROTOCOLINFO: render_protocol_info(item.mime_type),
                R_SIZE: str(stat_result.st_size),
            },
        )
        if item.mime_type.startswith("image/"):
            resolution = self._image_resolution(path)
            if resolution:
                main.attributes[R_RESOLUTION] = resolution
        item.resources = [main]

        if item.mime_type.startswith("video/"):
            self._attach_subtitles(item, path)
        if item.mime_type.startswith(("audio/", "video/")):
            self._attach_art(item, path.parent, HANDLER_CONTAINERART)

    def fill_container_art(self, container: CdsObject) -> bool:
        """Attach a directory image as art to a filesystem container.

        Returns:
            bool: Whether a resource was added.
        """
        if container.virtual or not container.location:
            return False
        return self._attach_art(container, Path(container.location), HANDLER_CONTAINERART)

    def _attach_art(self, obj: CdsObject, directory: Path, handler: str) -> bool:
        if obj.find_resource(PURPOSE_ALBUM_ART) is not None:
            return False
        for name in self._settings.container_art.file_names:
            candidate = directory / name
            if candidate.is_file():
                mime_type = mimetypes.guess_type(candidate.name)[0] or DEFAULT_MIME_TYPE
                obj.add_resource(
                    CdsResource(
                        handler=handler,
                        purpose=PURPOSE_ALBUM_ART,
                        attributes={
                            R_PROTOCOLINFO: render_protocol_info(mime_type),
                            R_RESOURCE_FILE: str(candidate),
                        },
                    )
                )
                return True
        return False

    def _attach_subtitles(self, item: CdsItem, path: Path) -> None:
        for extension in SUBTITLE_EXTENSIONS:
            candidate = path.with_suffix(extension)
            if candidate.is_file():
                item.add_resource(
                    CdsResource(
                        handler=HANDLER_RESOURCE,
                        purpose=PURPOSE_SUBTITLE,
                        attributes={
                            R_PROTOCOLINFO: render_protocol_info(
                                mimetypes.guess_type(candidate.name)[0] or "text/plain"
                            ),
                            R_RESOURCE_FILE: str(candidate),
                        },
                    )
                )

    def _image_resolution(self, path: Path) -> Optional[str]:
        try:
            with Image.open(path) as img:
                width, height = img.size
        except (OSError, UnidentifiedImageError) as exc:
            LOGGER.debug("Cannot read image size of %s: %s", path, exc)
            return None
        return f"{width}x{height}"


__all__ = ["DEFAULT_MIME_TYPE", "MetadataExtractor", "MimeResolver"]
