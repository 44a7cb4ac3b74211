"""Configuration management for contentsync."""

from __future__ import annotations

import os
import textwrap
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import ConfigError
from .models import AutoscanEntry, ContentSyncConfig, DirectoryTweak
from .resolver import ENV_PREFIX, flatten_for_env, resolve_with_precedence

DEFAULT_CONFIG_PATH = Path("~/.contentsync/config.yaml")
_CONFIG_HEADER = textwrap.dedent(
    """\
    # contentsync configuration file
    # Generated automatically; manage via `contentsync config set` or edit by hand.
    """
)


class ConfigManager:
    """Load and persist configuration data, applying precedence rules."""

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._config_path = (config_path or DEFAULT_CONFIG_PATH).expanduser()
        self._env = env if env is not None else os.environ

    @property
    def config_path(self) -> Path:
        """Return the resolved configuration path."""
        return self._config_path

    def load(
        self,
        *,
        cli_overrides: Mapping[str, Any] | None = None,
        include_env: bool = True,
        ensure_file: bool = True,
        env_overrides: Mapping[str, str] | None = None,
    ) -> ContentSyncConfig:
        """Load configuration data from disk, applying precedence rules."""
        if ensure_file:
            self.ensure_exists()

        env_data: Mapping[str, str] | None = None
        if include_env:
            env_data = env_overrides if env_overrides is not None else self._env

        return resolve_with_precedence(
            defaults=ContentSyncConfig(),
            file_overrides=self._read_file(),
            env_overrides=self._extract_env(env_data) if env_data else None,
            cli_overrides=cli_overrides,
        )

    def load_file_overrides(self) -> dict[str, Any]:
        """Return raw overrides stored on disk."""
        return self._read_file()

    def save(self, config: ContentSyncConfig | Mapping[str, Any]) -> None:
        """Persist configuration data to disk."""
        if isinstance(config, ContentSyncConfig):
            data = config.model_dump(mode="python")
        else:
            data = dict(config)
        self._write_file(data)

    def ensure_exists(self) -> Path:
        """Create a configuration file with defaults if one does not exist."""
        if not self._config_path.exists():
            self._write_file(ContentSyncConfig().model_dump(mode="python"))
        return self._config_path

    def add_autoscan(self, entry: AutoscanEntry) -> bool:
        """Declare ``entry`` in the configuration file.

        An entry for the same location is replaced.

        Returns:
            bool: Whether an existing entry was replaced.

        Raises:
            ConfigError: If the resulting configuration is invalid.
        """
        data = self._read_file()
        directories = self._autoscan_directories(data)
        location = _normalize_location(entry.location)
        kept = [item for item in directories if _normalize_location(item.get("location", "")) != location]
        replaced = len(kept) != len(directories)
        kept.append(entry.model_copy(update={"location": location}).model_dump(mode="python"))
        self._store_autoscan_directories(data, kept)
        return replaced

    def remove_autoscan(self, location: str | os.PathLike[str]) -> bool:
        """Drop the configured autoscan for ``location``.

        Returns:
            bool: Whether an entry was removed.
        """
        data = self._read_file()
        directories = self._autoscan_directories(data)
        target = _normalize_location(location)
        kept = [item for item in directories if _normalize_location(item.get("location", "")) != target]
        if len(kept) == len(directories):
            return False
        self._store_autoscan_directories(data, kept)
        return True

    def read_text(self) -> str:
        """Return the current configuration file contents."""
        if not self._config_path.exists():
            return ""
        return self._config_path.read_text(encoding="utf-8")

    # Internal helpers -------------------------------------------------

    def _read_file(self) -> dict[str, Any]:
        if not self._config_path.exists():
            return {}

        try:
            raw = yaml.safe_load(self._config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Failed to parse configuration file: {exc}") from exc

        if not isinstance(raw, dict):
            raise ConfigError("Configuration file must contain a mapping at the top level.")
        return raw

    @staticmethod
    def _autoscan_directories(data: Mapping[str, Any]) -> list[dict[str, Any]]:
        node: Any = data
        for segment in ("scan", "autoscan"):
            if not isinstance(node, dict):
                raise ConfigError(f"Cannot read '{segment}' because its parent is not a mapping.")
            node = node.get(segment) or {}
        if not isinstance(node, dict):
            raise ConfigError("scan.autoscan must be a mapping in the config file.")
        directories = node.get("directories") or []
        if not isinstance(directories, list) or not all(isinstance(item, dict) for item in directories):
            raise ConfigError("scan.autoscan.directories must be a list of mappings.")
        return list(directories)

    def _store_autoscan_directories(self, data: dict[str, Any], directories: list[dict[str, Any]]) -> None:
        scan = data.get("scan") or {}
        autoscan = scan.get("autoscan") or {}
        autoscan["directories"] = directories
        scan["autoscan"] = autoscan
        data["scan"] = scan
        resolve_with_precedence(defaults=ContentSyncConfig(), file_overrides=data)
        self._write_file(data)

    def _write_file(self, data: Mapping[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        serialized = yaml.safe_dump(dict(data), sort_keys=False)
        stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        self._config_path.write_text(
            _CONFIG_HEADER + f"# Last updated: {stamp}\n" + serialized, encoding="utf-8"
        )

    def _extract_env(self, env: Mapping[str, str]) -> dict[str, Any]:
        overrides: dict[str, Any] = {}
        for key, raw_value in env.items():
            if not key.startswith(ENV_PREFIX):
                continue
            path = [segment.lower() for segment in key[len(ENV_PREFIX) :].split("__") if segment]
            if not path:
                continue
            try:
                parsed_value: Any = yaml.safe_load(raw_value)
            except yaml.YAMLError:
                parsed_value = raw_value

            node = overrides
            for segment in path[:-1]:
                existing = node.get(segment)
                if not isinstance(existing, dict):
                    existing = {}
                    node[segment] = existing
                node = existing
            node[path[-1]] = parsed_value
        return overrides


def _normalize_location(location: str | os.PathLike[str]) -> str:
    return os.path.abspath(os.path.expanduser(os.fspath(location))) if location else ""


__all__ = [
    "AutoscanEntry",
    "ConfigError",
    "ConfigManager",
    "ContentSyncConfig",
    "DEFAULT_CONFIG_PATH",
    "DirectoryTweak",
    "flatten_for_env",
    "resolve_with_precedence",
]
