"""Scan engine tests driven through the content manager."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Set

from contentsync.autoscan import AutoscanDirectory, ScanMode
from contentsync.config import ContentSyncConfig, resolve_with_precedence
from contentsync.content import ContentManager, GenericTask
from contentsync.store import ObjectStore
from contentsync.store.models import INVALID_OBJECT_ID, UPNP_CLASS_VIDEO_ITEM, CdsObject

PAST = 1_600_000_000


def _content(**overrides: Any) -> ContentManager:
    cli = {"scan.layout": "disabled", "scan.autoscan.use_inotify": False}
    cli.update(overrides)
    config = resolve_with_precedence(defaults=ContentSyncConfig(), cli_overrides=cli)
    return ContentManager(config)


def _register(content: ContentManager, root: Path, recursive: bool = True, hidden: bool = False) -> AutoscanDirectory:
    adir = content.set_autoscan_directory(AutoscanDirectory(root, ScanMode.TIMED, recursive, hidden))
    assert content.scheduler.wait_until_idle(5)
    return adir


def _rescan(content: ContentManager, adir: AutoscanDirectory) -> None:
    assert content.trigger_autoscan(adir)
    assert content.scheduler.wait_until_idle(5)


def _children(store: ObjectStore, container_id: int) -> Dict[str, CdsObject]:
    return {Path(child.location).name: child for child in store.get_children(container_id)}


def _dump(store: ObjectStore, container_id: int) -> Dict[int, Dict[str, Any]]:
    dumped: Dict[int, Dict[str, Any]] = {}
    for child in store.get_children(container_id):
        dumped[child.id] = child.model_dump()
        if child.is_container:
            dumped.update(_dump(store, child.id))
    return dumped


def _media_tree(tmp_path: Path) -> Path:
    media = tmp_path / "media"
    action = media / "Movies" / "Action"
    action.mkdir(parents=True)
    (action / "foo.mp4").write_bytes(b"\x00" * 16)
    return media


def _freeze_mtimes(root: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        for name in filenames:
            os.utime(os.path.join(dirpath, name), (PAST, PAST))
        os.utime(dirpath, (PAST, PAST))


def test_initial_scan_builds_container_chain(tmp_path: Path) -> None:
    media = _media_tree(tmp_path)
    content = _content()
    content.scheduler.start()
    try:
        adir = _register(content, media)
        store = content.store

        level1 = _children(store, adir.object_id)
        assert list(level1) == ["Movies"]
        level2 = _children(store, level1["Movies"].id)
        assert list(level2) == ["Action"]
        level3 = _children(store, level2["Action"].id)
        assert list(level3) == ["foo.mp4"]

        item = level3["foo.mp4"]
        assert item.is_item
        assert item.upnp_class == UPNP_CLASS_VIDEO_ITEM
        assert item.mime_type == "video/mp4"
        assert item.size_on_disk == 16
    finally:
        content.shutdown()


def test_deleted_file_is_removed_and_container_kept(tmp_path: Path) -> None:
    media = _media_tree(tmp_path)
    content = _content()
    changes: List[Set[int]] = []
    content.update_manager.subscribe(changes.append)
    content.scheduler.start()
    try:
        adir = _register(content, media)
        action_id = content.store.find_object_id_by_path(media / "Movies" / "Action")
        item_id = content.store.find_object_id_by_path(media / "Movies" / "Action" / "foo.mp4")
        changes.clear()

        (media / "Movies" / "Action" / "foo.mp4").unlink()
        _rescan(content, adir)

        assert content.store.find_object_id_by_path(media / "Movies" / "Action" / "foo.mp4") == INVALID_OBJECT_ID
        assert content.store.find_object_id_by_path(media / "Movies" / "Action") == action_id
        assert content.store.get_child_count(action_id) == 0
        assert any(action_id in changed for changed in changes)
        assert item_id not in {child.id for child in content.store.get_children(action_id)}
    finally:
        content.shutdown()


def test_rescan_without_changes_writes_nothing(tmp_path: Path) -> None:
    media = _media_tree(tmp_path)
    (media / "Movies" / "bar.mkv").write_bytes(b"bar")
    _freeze_mtimes(media)
    content = _content()
    content.scheduler.start()
    try:
        adir = _register(content, media)
        before = _dump(content.store, adir.object_id)
        update_id = content.update_manager.system_update_id
        objects = len(content.store)

        _rescan(content, adir)

        assert _dump(content.store, adir.object_id) == before
        assert content.update_manager.system_update_id == update_id
        assert len(content.store) == objects
    finally:
        content.shutdown()


def test_modified_file_is_reimported(tmp_path: Path) -> None:
    media = _media_tree(tmp_path)
    target = media / "Movies" / "Action" / "foo.mp4"
    _freeze_mtimes(media)
    content = _content()
    content.scheduler.start()
    try:
        adir = _register(content, media)
        old_id = content.store.find_object_id_by_path(target)

        target.write_bytes(b"\x01" * 32)
        os.utime(target, (PAST + 100, PAST + 100))
        _rescan(content, adir)

        new_id = content.store.find_object_id_by_path(target)
        assert new_id not in (INVALID_OBJECT_ID, old_id)
        assert content.store.load_object(new_id).size_on_disk == 32
        assert adir.get_previous_lmt(target.parent) == PAST + 100
    finally:
        content.shutdown()


def test_new_files_are_picked_up_by_rescan(tmp_path: Path) -> None:
    media = _media_tree(tmp_path)
    content = _content()
    content.scheduler.start()
    try:
        adir = _register(content, media)

        (media / "Movies" / "Action" / "second.mp4").write_bytes(b"2")
        (media / "Series" / "S01").mkdir(parents=True)
        (media / "Series" / "S01" / "e01.mkv").write_bytes(b"e")
        _rescan(content, adir)

        assert content.store.find_object_id_by_path(media / "Movies" / "Action" / "second.mp4") != INVALID_OBJECT_ID
        assert content.store.find_object_id_by_path(media / "Series" / "S01" / "e01.mkv") != INVALID_OBJECT_ID
        assert adir.task_count == 0
        assert adir.active_scan_count == 0
    finally:
        content.shutdown()


def test_hidden_entries_follow_policy(tmp_path: Path) -> None:
    media = tmp_path / "media"
    (media / ".cache").mkdir(parents=True)
    (media / ".cache" / "inner.mp4").write_bytes(b"x")
    (media / ".secret.mp4").write_bytes(b"x")
    (media / "visible.mp4").write_bytes(b"x")
    other = tmp_path / "other"
    other.mkdir()
    (other / ".secret.mp4").write_bytes(b"x")

    content = _content()
    content.scheduler.start()
    try:
        adir = _register(content, media)
        assert set(_children(content.store, adir.object_id)) == {"visible.mp4"}

        hidden_adir = _register(content, other, hidden=True)
        assert set(_children(content.store, hidden_adir.object_id)) == {".secret.mp4"}
    finally:
        content.shutdown()


def test_non_recursive_autoscan_ignores_subdirectories(tmp_path: Path) -> None:
    media = _media_tree(tmp_path)
    (media / "top.mp4").write_bytes(b"x")
    content = _content()
    content.scheduler.start()
    try:
        adir = _register(content, media, recursive=False)

        assert set(_children(content.store, adir.object_id)) == {"top.mp4"}
    finally:
        content.shutdown()


def test_symlinks_follow_policy(tmp_path: Path) -> None:
    outside = tmp_path / "outside.mp4"
    outside.write_bytes(b"x")
    media = tmp_path / "media"
    (media / "sub").mkdir(parents=True)
    (media / "link.mp4").symlink_to(outside)
    (media / "sub" / "loop").symlink_to(media, target_is_directory=True)
    (media / "sub" / "real.mp4").write_bytes(b"x")

    content = _content(**{"scan.follow_symlinks": False})
    content.scheduler.start()
    try:
        adir = _register(content, media)
        assert content.store.find_object_id_by_path(media / "link.mp4") == INVALID_OBJECT_ID
        assert content.store.find_object_id_by_path(media / "sub" / "loop") == INVALID_OBJECT_ID
        assert content.store.find_object_id_by_path(media / "sub" / "real.mp4") != INVALID_OBJECT_ID
        assert adir.task_count == 0
    finally:
        content.shutdown()

    following = _content()
    following.scheduler.start()
    try:
        _register(following, media)
        assert following.store.find_object_id_by_path(media / "link.mp4") != INVALID_OBJECT_ID
    finally:
        following.shutdown()


def test_config_file_is_never_imported(tmp_path: Path) -> None:
    media = tmp_path / "media"
    media.mkdir()
    config_file = media / "config.xml"
    config_file.write_text("<config/>", encoding="utf-8")
    (media / "clip.mp4").write_bytes(b"x")

    content = _content(**{"server.config_file": str(config_file)})
    content.scheduler.start()
    try:
        adir = _register(content, media)
        assert set(_children(content.store, adir.object_id)) == {"clip.mp4"}
    finally:
        content.shutdown()


def test_invalidating_a_scan_cancels_its_followup_imports(tmp_path: Path) -> None:
    media = tmp_path / "media"
    (media / "later").mkdir(parents=True)
    (media / "later" / "deep.mp4").write_bytes(b"x")
    (media / "now.mp4").write_bytes(b"x")
    content = _content()
    try:
        adir = content.set_autoscan_directory(AutoscanDirectory(media, ScanMode.TIMED, True, False))
        for queued in content.task_list():
            content.invalidate_task(queued.id)

        scan = GenericTask("manual scan")
        scan.id = 4242
        content.scanner.rescan_directory(adir, adir.object_id, task=scan)
        assert [task.parent_id for task in content.task_list()] == [4242]

        content.invalidate_task(4242)
        content.scheduler.start()
        assert content.scheduler.wait_until_idle(5)

        assert content.store.find_object_id_by_path(media / "now.mp4") != INVALID_OBJECT_ID
        assert content.store.find_object_id_by_path(media / "later") == INVALID_OBJECT_ID
        assert adir.task_count == 0
    finally:
        content.shutdown()


def test_synchronous_add_file_returns_object_id(tmp_path: Path) -> None:
    target = tmp_path / "single" / "track.mp3"
    target.parent.mkdir()
    target.write_bytes(b"x")
    content = _content()

    object_id = content.add_file(target, asynchronous=False)

    stored = content.store.load_object(object_id)
    assert stored.location == str(target)
    assert stored.parent_id == content.store.find_object_id_by_path(target.parent)
    assert content.add_file(target, asynchronous=False) == object_id
    content.shutdown()


def test_rescan_with_newer_subdirectories_writes_nothing(tmp_path: Path) -> None:
    media = _media_tree(tmp_path)
    os.utime(media / "Movies" / "Action" / "foo.mp4", (PAST + 1000, PAST + 1000))
    os.utime(media / "Movies" / "Action", (PAST + 3000, PAST + 3000))
    os.utime(media / "Movies", (PAST + 2000, PAST + 2000))
    os.utime(media, (PAST + 1500, PAST + 1500))
    content = _content()
    content.scheduler.start()
    try:
        adir = _register(content, media)
        assert content.store.load_object(adir.object_id).mtime == PAST + 2000
        before = _dump(content.store, adir.object_id)
        writes: List[str] = []
        update_object = content.update_object

        def _recording(obj: CdsObject, *args: Any, **kwargs: Any) -> None:
            writes.append(obj.location)
            update_object(obj, *args, **kwargs)

        content.update_object = _recording  # type: ignore[method-assign]
        _rescan(content, adir)

        assert writes == []
        assert _dump(content.store, adir.object_id) == before
    finally:
        content.shutdown()


def test_rescan_does_not_persist_autoscan_removed_while_queued(tmp_path: Path) -> None:
    media = tmp_path / "media"
    media.mkdir()
    content = _content()
    content.scheduler.start()
    try:
        adir = content.set_autoscan_directory(
            AutoscanDirectory(media, ScanMode.TIMED, True, False, persistent=True)
        )
        assert content.scheduler.wait_until_idle(5)

        media.rmdir()
        _rescan(content, adir)
        assert adir.object_id == INVALID_OBJECT_ID
        assert len(content.store.get_autoscan_list("timed")) == 1

        media.mkdir()
        with content.scheduler.lock:
            assert content.trigger_autoscan(adir)
            content.remove_autoscan_directory(adir)
        assert content.scheduler.wait_until_idle(5)

        assert content.store.get_autoscan_list("timed") == []
        assert content.get_autoscan_directory_by_location(media) is None
    finally:
        content.shutdown()


def _interrupted_walk(tmp_path: Path, interrupt: Any) -> tuple[ContentManager, AutoscanDirectory, Path, List[str]]:
    """Scan a directory whose only stored file vanished, calling ``interrupt`` after the first import."""
    media = tmp_path / "media"
    media.mkdir()
    gone = media / "gone.mp4"
    gone.write_bytes(b"x")
    os.utime(gone, (PAST, PAST))
    content = _content()
    adir = content.set_autoscan_directory(AutoscanDirectory(media, ScanMode.TIMED, True, False))
    for queued in content.task_list():
        content.invalidate_task(queued.id)
    content.scanner.rescan_directory(adir, adir.object_id, task=GenericTask("first scan"))
    adir.update_lmt(force=True)
    assert content.store.find_object_id_by_path(gone) != INVALID_OBJECT_ID

    gone.unlink()
    for offset, name in ((10, "a.mp4"), (20, "b.mp4")):
        (media / name).write_bytes(b"x")
        os.utime(media / name, (PAST + offset, PAST + offset))

    imported: List[str] = []
    add_object = content.add_object

    def _add_then_interrupt(obj: CdsObject, *args: Any, **kwargs: Any) -> None:
        add_object(obj, *args, **kwargs)
        imported.append(Path(obj.location).name)
        interrupt(content, adir)

    content.add_object = _add_then_interrupt  # type: ignore[method-assign]
    return content, adir, media, imported


def test_invalidated_scan_stops_walk_and_keeps_leftovers(tmp_path: Path) -> None:
    scan = GenericTask("second scan")
    content, adir, media, imported = _interrupted_walk(
        tmp_path, lambda content, adir: scan.invalidate()
    )
    try:
        content.scanner.rescan_directory(adir, adir.object_id, task=scan)

        assert len(imported) == 1
        assert adir.active_scan_count == 0
        assert content.store.find_object_id_by_path(media / "gone.mp4") != INVALID_OBJECT_ID
        adir.update_lmt(force=True)
        expected = PAST + 10 if imported == ["a.mp4"] else PAST + 20
        assert adir.get_previous_lmt(media) == expected
    finally:
        content.shutdown()


def test_autoscan_retired_during_walk_stops_enumeration(tmp_path: Path) -> None:
    content, adir, media, imported = _interrupted_walk(
        tmp_path, lambda content, adir: content.remove_autoscan_directory(adir)
    )
    try:
        content.scanner.rescan_directory(adir, adir.object_id, task=GenericTask("second scan"))

        assert len(imported) == 1
        assert adir.active_scan_count == 0
        assert content.store.find_object_id_by_path(media / "gone.mp4") != INVALID_OBJECT_ID
        assert content.get_autoscan_directory_by_location(media) is None
    finally:
        content.shutdown()
