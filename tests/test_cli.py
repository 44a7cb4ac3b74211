"""CLI integration tests for contentsync."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from contentsync.cli import cli
from contentsync.config import ConfigManager
from contentsync.store import DEFAULT_SNAPSHOT_NAME, ObjectStore


def _env_with_home(tmp_path: Path) -> dict[str, Any]:
    env = dict(os.environ)
    env["HOME"] = str(tmp_path / "home")
    for key in list(env):
        if key.startswith("CONTENTSYNC__"):
            env.pop(key)
    return env


def _media(tmp_path: Path) -> Path:
    media = tmp_path / "media"
    (media / "Movies").mkdir(parents=True)
    (media / "Movies" / "film.mkv").write_bytes(b"film")
    (media / "song.mp3").write_bytes(b"song")
    return media


def _snapshot(tmp_path: Path) -> Path:
    return tmp_path / "home" / ".contentsync" / DEFAULT_SNAPSHOT_NAME


def test_cli_scan_json_reports_imported_objects(tmp_path: Path) -> None:
    media = _media(tmp_path)
    runner = CliRunner()
    env = _env_with_home(tmp_path)

    result = runner.invoke(cli, ["scan", str(media), "--recursive", "--json"], env=env)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["path"] == str(media.resolve())
    assert payload["items"] == 2
    assert payload["containers"] == 1
    assert payload["complete"] is True

    store = ObjectStore.load(_snapshot(tmp_path))
    assert store.find_object_id_by_path(media / "Movies" / "film.mkv") >= 0
    assert [record.location for record in store.get_autoscan_list("timed")] == [str(media.resolve())]


def test_cli_second_scan_reuses_autoscan_and_keeps_ids(tmp_path: Path) -> None:
    media = _media(tmp_path)
    runner = CliRunner()
    env = _env_with_home(tmp_path)

    first = runner.invoke(cli, ["scan", str(media), "-r", "--json"], env=env)
    assert first.exit_code == 0, first.output
    before = ObjectStore.load(_snapshot(tmp_path)).find_object_id_by_path(media / "song.mp3")

    (media / "Movies" / "extra.mp4").write_bytes(b"extra")
    second = runner.invoke(cli, ["scan", str(media), "-r", "--json"], env=env)

    assert second.exit_code == 0, second.output
    payload = json.loads(second.output)
    assert payload["items"] == 3
    store = ObjectStore.load(_snapshot(tmp_path))
    assert store.find_object_id_by_path(media / "song.mp3") == before
    assert len(store.get_autoscan_list("timed")) == 1


def test_cli_scan_summary_line(tmp_path: Path) -> None:
    media = _media(tmp_path)
    runner = CliRunner()
    env = _env_with_home(tmp_path)

    result = runner.invoke(cli, ["scan", str(media), "-r", "--summary"], env=env)

    assert result.exit_code == 0, result.output
    assert "Scan summary for" in result.output
    assert "items=2" in result.output


def test_cli_tree_json_lists_imported_files(tmp_path: Path) -> None:
    media = _media(tmp_path)
    runner = CliRunner()
    env = _env_with_home(tmp_path)
    assert runner.invoke(cli, ["scan", str(media), "-r"], env=env).exit_code == 0

    result = runner.invoke(cli, ["tree", "--json"], env=env)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["id"] == 0
    locations = set()
    pending = [payload]
    while pending:
        node = pending.pop()
        pending.extend(node.get("children", []))
        if "location" in node:
            locations.add(node["location"])
    assert str(media / "song.mp3") in locations
    assert str(media / "Movies" / "film.mkv") in locations


def test_cli_autoscan_list_shows_registered_directories(tmp_path: Path) -> None:
    media = _media(tmp_path)
    runner = CliRunner()
    env = _env_with_home(tmp_path)

    empty = runner.invoke(cli, ["autoscan", "list"], env=env)
    assert empty.exit_code == 0
    assert "No autoscan directories registered" in empty.output

    assert runner.invoke(cli, ["scan", str(media), "-r"], env=env).exit_code == 0
    result = runner.invoke(cli, ["autoscan", "list", "--json"], env=env)

    assert result.exit_code == 0, result.output
    records = json.loads(result.output)["autoscans"]
    assert [record["location"] for record in records] == [str(media.resolve())]
    assert records[0]["mode"] == "timed"
    assert records[0]["recursive"] is True


def test_cli_scan_reports_invalid_config_as_json(tmp_path: Path) -> None:
    media = _media(tmp_path)
    runner = CliRunner()
    env = _env_with_home(tmp_path)
    config_path = tmp_path / "home" / ".contentsync" / "config.yaml"
    config_path.parent.mkdir(parents=True)
    config_path.write_text("scan: [not, a, mapping]\n", encoding="utf-8")

    result = runner.invoke(cli, ["scan", str(media), "--json"], env=env)

    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["error"]["code"] == "config_error"


def test_cli_config_view_and_set(tmp_path: Path) -> None:
    runner = CliRunner()
    env = _env_with_home(tmp_path)

    view = runner.invoke(cli, ["config", "view"], env=env)
    assert view.exit_code == 0
    assert "scan:" in view.output

    result = runner.invoke(cli, ["config", "set", "server.last_played_limit", "--value", "9"], env=env)
    assert result.exit_code == 0, result.output
    assert "Updated server.last_played_limit" in result.output

    manager = ConfigManager(config_path=tmp_path / "home" / ".contentsync" / "config.yaml")
    assert manager.load(include_env=False).server.last_played_limit == 9


def test_cli_config_set_rejects_invalid_values(tmp_path: Path) -> None:
    runner = CliRunner()
    env = _env_with_home(tmp_path)

    result = runner.invoke(cli, ["config", "set", "scan.layout", "--value", "fancy"], env=env)

    assert result.exit_code != 0
    assert "layout" in result.output


def test_cli_autoscan_add_and_remove_edit_config(tmp_path: Path) -> None:
    media = _media(tmp_path)
    runner = CliRunner()
    env = _env_with_home(tmp_path)
    manager = ConfigManager(config_path=tmp_path / "home" / ".contentsync" / "config.yaml")

    added = runner.invoke(
        cli, ["autoscan", "add", str(media), "--mode", "inotify", "--persistent"], env=env
    )
    assert added.exit_code == 0, added.output
    assert "Added inotify autoscan" in added.output
    [entry] = manager.load(include_env=False).scan.autoscan.directories
    assert entry.location == str(media.resolve())
    assert entry.persistent is True
    assert entry.recursive is True

    removed = runner.invoke(cli, ["autoscan", "remove", str(media)], env=env)
    assert removed.exit_code == 0, removed.output
    assert manager.load(include_env=False).scan.autoscan.directories == []

    missing = runner.invoke(cli, ["autoscan", "remove", str(media)], env=env)
    assert missing.exit_code != 0
    assert "No configured autoscan" in missing.output
