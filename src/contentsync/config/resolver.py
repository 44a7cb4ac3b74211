"""Configuration resolution helpers."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from copy import deepcopy
from typing import Any, Dict, Mapping

import yaml
from pydantic import ValidationError

from .exceptions import ConfigError
from .models import ContentSyncConfig

ENV_PREFIX = "CONTENTSYNC__"


def resolve_with_precedence(
    *,
    defaults: ContentSyncConfig,
    file_overrides: Mapping[str, Any] | None = None,
    env_overrides: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> ContentSyncConfig:
    """Merge configuration sources: defaults < file < environment < CLI."""
    merged = deepcopy(defaults.model_dump(mode="python"))
    for name, source in (
        ("file", file_overrides),
        ("environment", env_overrides),
        ("cli", cli_overrides),
    ):
        if source is None:
            continue
        merged = _deep_merge(merged, _expand_dotted_keys(source, source_name=name))

    try:
        return ContentSyncConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration values: {exc}") from exc


def flatten_for_env(config: ContentSyncConfig) -> Dict[str, str]:
    """Flatten the config into `CONTENTSYNC__SECTION__KEY` environment variable mappings."""
    flat: Dict[str, str] = {}

    def _recurse(prefix: list[str], value: Any) -> None:
        if isinstance(value, dict) and value:
            for key, child in value.items():
                _recurse(prefix + [str(key)], child)
            return
        env_key = ENV_PREFIX + "__".join(part.upper() for part in prefix)
        if isinstance(value, (dict, list)):
            flat[env_key] = yaml.safe_dump(value, default_flow_style=True).strip()
        else:
            flat[env_key] = "null" if value is None else str(value)

    for top_key, child_value in config.model_dump(mode="python").items():
        _recurse([str(top_key)], child_value)
    return flat


def _expand_dotted_keys(source: Mapping[str, Any], *, source_name: str) -> dict[str, Any]:
    """Turn top-level ``section.key`` entries into nested mappings.

    Only top-level keys are split; nested mappings (such as regex rewrite
    tables) keep their keys verbatim.
    """
    if not isinstance(source, MappingABC):
        raise ConfigError(f"{source_name.capitalize()} overrides must be a mapping.")

    result: dict[str, Any] = {}
    for key, value in dict(source).items():
        if not isinstance(key, str):
            raise ConfigError(f"{source_name.capitalize()} override keys must be strings.")
        path = key.split(".")
        node = result
        for segment in path[:-1]:
            existing = node.setdefault(segment, {})
            if not isinstance(existing, dict):
                raise ConfigError(
                    f"{source_name.capitalize()} override for {key} conflicts with existing value."
                )
            node = existing
        leaf = path[-1]
        if isinstance(value, MappingABC) and isinstance(node.get(leaf), dict):
            node[leaf] = _deep_merge(node[leaf], value)
        else:
            node[leaf] = deepcopy(value)
    return result


def _deep_merge(
    base: Mapping[str, Any], overrides: Mapping[str, Any], *, prefix: str = ""
) -> dict[str, Any]:
    """Recursively merge ``overrides`` into ``base``.

    Raises:
        ConfigError: If a mapping override targets a scalar or list value.
    """
    merged = {key: deepcopy(value) for key, value in base.items()}
    for key, value in overrides.items():
        current = merged.get(key)
        dotted = f"{prefix}{key}"
        if isinstance(value, MappingABC) and isinstance(current, MappingABC):
            merged[key] = _deep_merge(dict(current), value, prefix=f"{dotted}.")  # type: ignore[arg-type]
        elif isinstance(value, MappingABC) and current is not None:
            raise ConfigError(f"Cannot merge a mapping into {dotted}: it holds a {type(current).__name__}.")
        else:
            merged[key] = deepcopy(value)
    return merged


__all__ = ["ENV_PREFIX", "resolve_with_precedence", "flatten_for_env"]
