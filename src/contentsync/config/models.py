"""Configuration models describing contentsync settings."""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ContentSyncBaseModel(BaseModel):
    """Shared configuration for contentsync Pydantic models."""

    model_config = ConfigDict(extra="forbid")


class AutoscanEntry(ContentSyncBaseModel):
    """A monitored directory declared in the configuration file.

    Attributes:
        location: Filesystem directory to monitor.
        mode: Scan mode, either periodic (``timed``) or change notification (``inotify``).
        interval: Rescan interval in seconds for timed autoscans.
        recursive: Whether subdirectories are scanned as well.
        hidden_files: Whether dotfiles are imported.
        persistent: Keep the autoscan registered when its directory disappears.
    """

    location: str
    mode: Literal["timed", "inotify"] = "timed"
    interval: int = 1800
    recursive: bool = True
    hidden_files: bool = False
    persistent: bool = False


class DirectoryTweak(ContentSyncBaseModel):
    """Per-directory overrides applied on top of the scan defaults.

    Attributes:
        location: Directory the tweak applies to.
        inherit: Whether the tweak also applies to subdirectories.
        recursive: Optional override of the recursive flag.
        hidden_files: Optional override of the hidden-file policy.
        follow_symlinks: Optional override of the symlink policy.
    """

    location: str
    inherit: bool = True
    recursive: Optional[bool] = None
    hidden_files: Optional[bool] = None
    follow_symlinks: Optional[bool] = None


class ContainerArtSettings(ContentSyncBaseModel):
    """Thresholds governing fan-art propagation onto new containers.

    Attributes:
        parent_count: Number of freshly created containers (deepest first) that may
            borrow art from the triggering item.
        min_depth: Minimum number of path separators a container location needs
            before it may borrow art from an item.
        file_names: Image names looked up inside a directory as container art.
    """

    parent_count: int = 2
    min_depth: int = 2
    file_names: List[str] = Field(
        default_factory=lambda: ["folder.jpg", "cover.jpg", "folder.png", "cover.png"]
    )


class AutoscanSettings(ContentSyncBaseModel):
    """Autoscan defaults and configured directories.

    Attributes:
        use_inotify: Whether change-notification autoscans are enabled.
        inotify_verify_delay: Delay of the one-shot verification scan armed after
            registering a change-notification autoscan.
        directories: Autoscan directories declared in the configuration file.
    """

    use_inotify: bool = True
    inotify_verify_delay: int = 60
    directories: List[AutoscanEntry] = Field(default_factory=list)


class ScanSettings(ContentSyncBaseModel):
    """Options governing how directories are imported.

    Attributes:
        follow_symlinks: Whether symbolic links are imported.
        hidden_files: Whether dotfiles are imported.
        recursive: Default recursion flag for manual imports.
        readable_names: Derive titles from file stems with underscores replaced.
        layout: Virtual layout engine, ``builtin`` or ``disabled``.
        layout_mapping: Regex rewrites applied to virtual container paths.
        extension_mimetype: Extension to MIME type overrides.
        mimetype_upnpclass: MIME prefix to UPnP class mapping.
        mimetype_contenttype: MIME type to content type mapping.
        directory_tweaks: Per-directory overrides.
        container_art: Fan-art propagation thresholds.
        autoscan: Autoscan settings.
    """

    follow_symlinks: bool = True
    hidden_files: bool = False
    recursive: bool = True
    readable_names: bool = True
    layout: Literal["builtin", "disabled"] = "builtin"
    layout_mapping: Dict[str, str] = Field(default_factory=dict)
    extension_mimetype: Dict[str, str] = Field(default_factory=dict)
    mimetype_upnpclass: Dict[str, str] = Field(
        default_factory=lambda: {
            "audio/*": "object.item.audioItem.musicTrack",
            "video/*": "object.item.videoItem",
            "image/*": "object.item.imageItem",
            "application/ogg": "object.item.audioItem.musicTrack",
        }
    )
    mimetype_contenttype: Dict[str, str] = Field(
        default_factory=lambda: {
            "audio/x-mpegurl": "playlist",
            "audio/x-scpls": "playlist",
            "application/ogg": "ogg",
        }
    )
    directory_tweaks: List[DirectoryTweak] = Field(default_factory=list)
    container_art: ContainerArtSettings = Field(default_factory=ContainerArtSettings)
    autoscan: AutoscanSettings = Field(default_factory=AutoscanSettings)


class MarkPlayedSettings(ContentSyncBaseModel):
    """Policy for flagging items as played when they are streamed.

    Attributes:
        enabled: Whether the played flag is set at all.
        content: MIME prefixes eligible for the played flag.
        suppress_updates: Skip change notifications for played-flag updates.
    """

    enabled: bool = False
    content: List[str] = Field(default_factory=lambda: ["video"])
    suppress_updates: bool = False


class ServerSettings(ContentSyncBaseModel):
    """Process-level settings.

    Attributes:
        home: Directory holding the store snapshot and logs.
        config_file: Server configuration file, never imported during scans.
        mark_played: Played-flag policy.
        last_played_limit: Length of the last-played container list.
    """

    home: str = "~/.contentsync"
    config_file: Optional[str] = None
    mark_played: MarkPlayedSettings = Field(default_factory=MarkPlayedSettings)
    last_played_limit: int = 5


class LoggingSettings(ContentSyncBaseModel):
    """Runtime logging configuration.

    Attributes:
        level: Logging verbosity level.
        file: Optional log file name, relative to the server home.
        max_size_mb: Maximum log size before rotation.
        backup_count: Number of historical log files to retain.
    """

    level: str = "WARNING"
    file: Optional[str] = None
    max_size_mb: int = 100
    backup_count: int = 5


class CLIOptions(ContentSyncBaseModel):
    """CLI behavior defaults and presentation preferences.

    Attributes:
        quiet_default: Whether commands suppress non-error output by default.
        summary_default: Whether commands only print summary lines by default.
    """

    quiet_default: bool = False
    summary_default: bool = False


class ContentSyncConfig(ContentSyncBaseModel):
    """Top-level configuration struct for contentsync.

    Attributes:
        scan: Import and autoscan settings.
        server: Process-level settings.
        logging: Logging configuration.
        cli: CLI presentation defaults.
    """

    scan: ScanSettings = Field(default_factory=ScanSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cli: CLIOptions = Field(default_factory=CLIOptions)


__all__ = [
    "ContentSyncBaseModel",
    "AutoscanEntry",
    "DirectoryTweak",
    "ContainerArtSettings",
    "AutoscanSettings",
    "ScanSettings",
    "MarkPlayedSettings",
    "ServerSettings",
    "LoggingSettings",
    "CLIOptions",
    "ContentSyncConfig",
]
