"""Builtin layout tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional

from contentsync.autoscan import AutoscanDirectory, ScanMode
from contentsync.config import ContentSyncConfig, resolve_with_precedence
from contentsync.content import ContentManager
from contentsync.store import ObjectStore
from contentsync.store.models import (
    INVALID_OBJECT_ID,
    ROOT_ID,
    UPNP_CLASS_MUSIC_ALBUM,
    UPNP_CLASS_MUSIC_ARTIST,
    CdsObject,
)


def _content(**overrides: Any) -> ContentManager:
    cli = {"scan.autoscan.use_inotify": False}
    cli.update(overrides)
    return ContentManager(resolve_with_precedence(defaults=ContentSyncConfig(), cli_overrides=cli))


def _lookup(store: ObjectStore, titles: Iterable[str]) -> Optional[CdsObject]:
    current = store.load_object(ROOT_ID)
    for title in titles:
        match = next((child for child in store.get_children(current.id) if child.title == title), None)
        if match is None:
            return None
        current = match
    return current


def _scan(content: ContentManager, root: Path) -> AutoscanDirectory:
    adir = content.set_autoscan_directory(AutoscanDirectory(root, ScanMode.TIMED, True, False))
    assert content.scheduler.wait_until_idle(5)
    return adir


def test_video_is_linked_into_all_video_and_directories(tmp_path: Path) -> None:
    media = tmp_path / "media"
    (media / "Movies").mkdir(parents=True)
    film = media / "Movies" / "film.mp4"
    film.write_bytes(b"x")
    content = _content()
    content.scheduler.start()
    try:
        _scan(content, media)
        store = content.store
        item_id = store.find_object_id_by_path(film)

        all_video = _lookup(store, ["Video", "All Video"])
        assert all_video is not None and all_video.virtual
        [reference] = store.get_children(all_video.id)
        assert reference.virtual
        assert reference.ref_id == item_id
        assert reference.location == str(film)

        directory = _lookup(store, ["Video", "Directories", "media", "Movies"])
        assert directory is not None
        assert [child.ref_id for child in store.get_children(directory.id)] == [item_id]
    finally:
        content.shutdown()


def test_audio_without_tags_lands_in_unknown_containers(tmp_path: Path) -> None:
    media = tmp_path / "media"
    media.mkdir()
    (media / "song.mp3").write_bytes(b"x")
    content = _content()
    content.scheduler.start()
    try:
        _scan(content, media)
        store = content.store

        artist = _lookup(store, ["Audio", "Artists", "Unknown"])
        album = _lookup(store, ["Audio", "Albums", "Unknown"])
        assert artist is not None and artist.upnp_class == UPNP_CLASS_MUSIC_ARTIST
        assert album is not None and album.upnp_class == UPNP_CLASS_MUSIC_ALBUM
        assert _lookup(store, ["Audio", "All Audio"]) is not None
        assert _lookup(store, ["Audio", "Genres", "Unknown"]) is not None
    finally:
        content.shutdown()


def test_removed_item_prunes_its_virtual_containers(tmp_path: Path) -> None:
    media = tmp_path / "media"
    media.mkdir()
    clip = media / "clip.mp4"
    clip.write_bytes(b"x")
    (media / "keep.mp3").write_bytes(b"x")
    content = _content()
    content.scheduler.start()
    try:
        adir = _scan(content, media)
        assert _lookup(content.store, ["Video", "All Video"]) is not None

        clip.unlink()
        assert content.trigger_autoscan(adir)
        assert content.scheduler.wait_until_idle(5)

        assert content.store.find_object_id_by_path(clip) == INVALID_OBJECT_ID
        assert _lookup(content.store, ["Video"]) is None
        assert _lookup(content.store, ["Audio", "All Audio"]) is not None
    finally:
        content.shutdown()


def test_disabled_layout_creates_no_virtual_containers(tmp_path: Path) -> None:
    media = tmp_path / "media"
    media.mkdir()
    (media / "clip.mp4").write_bytes(b"x")
    content = _content(**{"scan.layout": "disabled"})
    content.scheduler.start()
    try:
        _scan(content, media)

        assert _lookup(content.store, ["Video"]) is None
        assert content.layout is None
    finally:
        content.shutdown()
