"""Unit tests for configuration management."""

from pathlib import Path

import pytest

from contentsync.config import (
    AutoscanEntry,
    ConfigError,
    ConfigManager,
    ContentSyncConfig,
    flatten_for_env,
    resolve_with_precedence,
)
from contentsync.content.settings import AutoScanSetting, find_directory_tweak


def _fresh_manager(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> ConfigManager:
    monkeypatch.setenv("HOME", str(tmp_path))
    return ConfigManager()


def test_ensure_exists_creates_default_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    manager = _fresh_manager(tmp_path, monkeypatch)

    path = manager.ensure_exists()

    assert path == tmp_path / ".contentsync" / "config.yaml"
    text = path.read_text(encoding="utf-8")
    assert "contentsync configuration file" in text
    assert "Last updated:" in text

    config = manager.load(include_env=False)
    assert isinstance(config, ContentSyncConfig)
    assert config.scan.container_art.parent_count == 2
    assert config.server.last_played_limit == 5


def test_resolve_with_precedence_respects_order(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    manager = _fresh_manager(tmp_path, monkeypatch)
    manager.ensure_exists()

    manager.save({"scan": {"hidden_files": True, "layout": "disabled"}, "logging": {"level": "INFO"}})

    env = {"CONTENTSYNC__LOGGING__LEVEL": "DEBUG", "CONTENTSYNC__SCAN__FOLLOW_SYMLINKS": "false"}
    cli = {"logging.level": "ERROR"}

    config = manager.load(cli_overrides=cli, env_overrides=env)

    assert config.scan.hidden_files is True
    assert config.scan.layout == "disabled"
    assert config.scan.follow_symlinks is False
    # CLI overrides take precedence over environment
    assert config.logging.level == "ERROR"


def test_invalid_yaml_raises_config_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    manager = _fresh_manager(tmp_path, monkeypatch)
    manager.ensure_exists()

    manager.config_path.write_text("- not-a-mapping", encoding="utf-8")

    with pytest.raises(ConfigError):
        manager.load()


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ConfigError):
        resolve_with_precedence(
            defaults=ContentSyncConfig(),
            file_overrides={"scan": {"does_not_exist": True}},
        )


def test_flatten_for_env_round_trips_defaults() -> None:
    flat = flatten_for_env(ContentSyncConfig())

    assert flat["CONTENTSYNC__SCAN__LAYOUT"] == "builtin"
    assert flat["CONTENTSYNC__SCAN__AUTOSCAN__INOTIFY_VERIFY_DELAY"] == "60"


def test_resolve_with_precedence_invalid_value_raises() -> None:
    with pytest.raises(ConfigError):
        resolve_with_precedence(
            defaults=ContentSyncConfig(),
            file_overrides={"scan": {"autoscan": {"directories": [{"location": "/x", "mode": "often"}]}}},
        )


def test_mapping_override_over_malformed_section_raises() -> None:
    with pytest.raises(ConfigError, match="scan"):
        resolve_with_precedence(
            defaults=ContentSyncConfig(),
            file_overrides={"scan": ["not", "a", "mapping"]},
            cli_overrides={"scan": {"autoscan": {"use_inotify": False}}},
        )

    with pytest.raises(ConfigError, match="server.home"):
        resolve_with_precedence(
            defaults=ContentSyncConfig(),
            cli_overrides={"server.home": {"nested": "value"}},
        )


def test_directory_tweaks_pick_longest_match(tmp_path: Path) -> None:
    config = resolve_with_precedence(
        defaults=ContentSyncConfig(),
        file_overrides={
            "scan": {
                "directory_tweaks": [
                    {"location": str(tmp_path), "hidden_files": True},
                    {"location": str(tmp_path / "music"), "recursive": False},
                    {"location": str(tmp_path / "exact"), "inherit": False, "follow_symlinks": False},
                ]
            }
        },
    )

    tweak = find_directory_tweak(config.scan, tmp_path / "music" / "rock")
    assert tweak is not None and tweak.recursive is False
    assert find_directory_tweak(config.scan, tmp_path / "exact" / "below").location == str(tmp_path)

    settings = AutoScanSetting.from_config(config.scan)
    settings.merge_options(config.scan, tmp_path / "exact")
    assert settings.follow_symlinks is False
    assert settings.hidden is False


def test_add_autoscan_replaces_entries_for_the_same_location(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    manager = _fresh_manager(tmp_path, monkeypatch)
    media = tmp_path / "media"

    assert manager.add_autoscan(AutoscanEntry(location=str(media))) is False
    assert manager.add_autoscan(AutoscanEntry(location=str(media) + "/", mode="inotify")) is True
    manager.add_autoscan(AutoscanEntry(location=str(tmp_path / "photos"), persistent=True))

    directories = manager.load(include_env=False).scan.autoscan.directories
    assert [(entry.location, entry.mode) for entry in directories] == [
        (str(media), "inotify"),
        (str(tmp_path / "photos"), "timed"),
    ]
    assert directories[1].persistent is True


def test_remove_autoscan_reports_missing_entries(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    manager = _fresh_manager(tmp_path, monkeypatch)
    manager.add_autoscan(AutoscanEntry(location=str(tmp_path / "media")))

    assert manager.remove_autoscan(tmp_path / "other") is False
    assert manager.remove_autoscan(tmp_path / "media") is True
    assert manager.load(include_env=False).scan.autoscan.directories == []


def test_add_autoscan_rejects_malformed_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    manager = _fresh_manager(tmp_path, monkeypatch)
    manager.config_path.parent.mkdir(parents=True)
    manager.config_path.write_text("scan:\n  autoscan:\n    directories: nope\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        manager.add_autoscan(AutoscanEntry(location=str(tmp_path)))
