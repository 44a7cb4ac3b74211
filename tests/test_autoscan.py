"""Autoscan registry tests."""

from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from contentsync.autoscan import INVALID_SCAN_ID, AutoscanDirectory, AutoscanList, ScanMode
from contentsync.config import ContentSyncConfig, resolve_with_precedence
from contentsync.content import ContentManager
from contentsync.store import ObjectStore, OverlappingAutoscanError
from contentsync.store.models import CdsContainer
from contentsync.timer import TimerParameter


def _config() -> ContentSyncConfig:
    return resolve_with_precedence(
        defaults=ContentSyncConfig(),
        cli_overrides={"scan.layout": "disabled", "scan.autoscan.use_inotify": False},
    )


def test_watermark_falls_back_to_parent_mtime(tmp_path: Path) -> None:
    adir = AutoscanDirectory(tmp_path)
    parent = CdsContainer(title="media", location=str(tmp_path), mtime=123)

    assert adir.get_previous_lmt(tmp_path) == 0
    assert adir.get_previous_lmt(tmp_path, parent) == 123


def test_watermark_commits_only_when_idle(tmp_path: Path) -> None:
    adir = AutoscanDirectory(tmp_path)
    location = str(tmp_path)

    adir.set_current_lmt(location, 0)
    assert adir.active_scan_count == 1
    assert adir.update_lmt() is False

    adir.inc_task_count()
    adir.set_current_lmt(location, 500)
    assert adir.active_scan_count == 0
    assert adir.update_lmt() is False

    adir.dec_task_count()
    assert adir.update_lmt() is True
    assert adir.get_previous_lmt(location) == 500


def test_watermark_never_regresses(tmp_path: Path) -> None:
    adir = AutoscanDirectory(tmp_path)
    location = str(tmp_path)
    adir.set_current_lmt(location, 0)
    adir.set_current_lmt(location, 500)
    adir.update_lmt()

    adir.set_current_lmt(location, 0)
    adir.set_current_lmt(location, 1)

    assert adir.update_lmt() is False
    assert adir.get_previous_lmt(location) == 500


def test_record_round_trip_keeps_watermarks(tmp_path: Path) -> None:
    adir = AutoscanDirectory(tmp_path, ScanMode.INOTIFY, False, True, 0, True, object_id=7)
    adir.set_current_lmt(str(tmp_path), 0)
    adir.set_current_lmt(str(tmp_path), 99)
    adir.update_lmt()

    restored = AutoscanDirectory.from_record(adir.to_record())

    assert restored.mode == ScanMode.INOTIFY
    assert (restored.recursive, restored.hidden, restored.persistent) == (False, True, True)
    assert restored.object_id == 7
    assert restored.get_previous_lmt(tmp_path) == 99


def test_list_assigns_scan_ids_and_retires_on_removal(tmp_path: Path) -> None:
    removed: List[AutoscanDirectory] = []
    autoscans = AutoscanList(ObjectStore(), ScanMode.TIMED, on_remove=removed.append)
    first = AutoscanDirectory(tmp_path / "a", object_id=10)
    second = AutoscanDirectory(tmp_path / "b")

    assert autoscans.add(first) == 0
    assert autoscans.add(second) == 1
    with pytest.raises(OverlappingAutoscanError):
        autoscans.add(AutoscanDirectory(tmp_path / "a"))

    assert autoscans.get_by_location(tmp_path / "a") is first
    assert autoscans.get_by_object_id(10) is first
    assert autoscans.remove(first.scan_id) is first

    assert removed == [first]
    assert first.scan_id == INVALID_SCAN_ID
    assert first.task_count == -1
    assert autoscans.get(INVALID_SCAN_ID) is None
    assert list(autoscans) == [second]


def test_remove_if_subdir_keeps_persistent_entries(tmp_path: Path) -> None:
    autoscans = AutoscanList(ObjectStore(), ScanMode.TIMED)
    nested = AutoscanDirectory(tmp_path / "media" / "music")
    persistent = AutoscanDirectory(tmp_path / "media" / "photos", persistent=True)
    outside = AutoscanDirectory(tmp_path / "other")
    for adir in (nested, persistent, outside):
        autoscans.add(adir)

    retired = autoscans.remove_if_subdir(tmp_path / "media")

    assert retired == [nested]
    assert len(autoscans) == 2
    assert autoscans.remove_if_subdir(tmp_path / "media", persistent=True) == [persistent]


def test_notify_all_fires_each_entry(tmp_path: Path) -> None:
    fired: List[TimerParameter] = []

    class _Subscriber:
        def timer_notify(self, parameter: TimerParameter) -> None:
            fired.append(parameter)

    autoscans = AutoscanList(ObjectStore(), ScanMode.TIMED)
    first = AutoscanDirectory(tmp_path / "a")
    second = AutoscanDirectory(tmp_path / "b")
    autoscans.add(first)
    autoscans.add(second)

    autoscans.notify_all(_Subscriber())

    assert fired == [first.timer_parameter, second.timer_parameter]


def test_update_lm_in_store_persists_records(tmp_path: Path) -> None:
    store = ObjectStore()
    autoscans = AutoscanList(store, ScanMode.TIMED)
    adir = AutoscanDirectory(tmp_path)
    autoscans.add(adir)
    adir.set_current_lmt(str(tmp_path), 0)
    adir.set_current_lmt(str(tmp_path), 77)
    adir.inc_task_count()

    autoscans.update_lm_in_store()

    records = store.get_autoscan_list("timed")
    assert [record.last_modified for record in records] == [{str(tmp_path): 77}]
    assert adir.database_id == records[0].database_id


def test_timer_fire_during_running_scan_is_ignored(tmp_path: Path) -> None:
    media = tmp_path / "media"
    media.mkdir()
    (media / "clip.mp4").write_bytes(b"x")
    content = ContentManager(_config())
    content.scheduler.start()
    try:
        adir = content.set_autoscan_directory(
            AutoscanDirectory(media, ScanMode.TIMED, True, False, interval=60)
        )
        assert content.scheduler.wait_until_idle(5)
        assert content.timer.has_subscriber(content, adir.timer_parameter)

        # a manual rescan of the root is still running
        adir.set_current_lmt(str(media), 0)
        content.timer_notify(adir.timer_parameter)

        assert content.task_list() == []
        assert content.trigger_autoscan(adir) is False

        adir.set_current_lmt(str(media), 1)
        assert content.trigger_autoscan(adir) is True
        assert content.scheduler.wait_until_idle(5)
    finally:
        content.shutdown()


def test_removed_autoscan_drops_timer_subscription(tmp_path: Path) -> None:
    media = tmp_path / "media"
    media.mkdir()
    content = ContentManager(_config())
    content.scheduler.start()
    try:
        adir = content.set_autoscan_directory(
            AutoscanDirectory(media, ScanMode.TIMED, True, False, interval=60)
        )
        parameter = adir.timer_parameter
        content.scheduler.wait_until_idle(5)

        content.remove_autoscan_directory(adir)

        assert not content.timer.has_subscriber(content, parameter)
        assert content.get_autoscan_directory_by_location(media) is None
        assert content.store.get_autoscan_list("timed") == []
        assert content.trigger_autoscan(adir) is False
    finally:
        content.shutdown()
