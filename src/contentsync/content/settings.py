"""Effective scan options for one import."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from contentsync.autoscan import AutoscanDirectory
from contentsync.config.models import DirectoryTweak, ScanSettings


@dataclass
class AutoScanSetting:
    """Options applied while importing a file or directory.

    Attributes:
        adir: Autoscan the import belongs to, if any.
        recursive: Descend into subdirectories.
        hidden: Import dotfiles.
        follow_symlinks: Import symbolic links.
        rescan_resource: Rescan attached resources when an item is removed.
    """

    adir: Optional[AutoscanDirectory] = None
    recursive: bool = True
    hidden: bool = False
    follow_symlinks: bool = True
    rescan_resource: bool = True

    @classmethod
    def from_config(
        cls, config: ScanSettings, adir: Optional[AutoscanDirectory] = None
    ) -> "AutoScanSetting":
        return cls(
            adir=adir,
            recursive=adir.recursive if adir is not None else config.recursive,
            hidden=adir.hidden if adir is not None else config.hidden_files,
            follow_symlinks=config.follow_symlinks,
        )

    def merge_options(self, config: ScanSettings, location: str | os.PathLike[str]) -> None:
        """Apply the most specific directory tweak matching ``location``."""
        tweak = find_directory_tweak(config, location)
        if tweak is None:
            return
        if tweak.recursive is not None:
            self.recursive = tweak.recursive
        if tweak.hidden_files is not None:
            self.hidden = tweak.hidden_files
        if tweak.follow_symlinks is not None:
            self.follow_symlinks = tweak.follow_symlinks


def find_directory_tweak(
    config: ScanSettings, location: str | os.PathLike[str]
) -> Optional[DirectoryTweak]:
    """Return the longest tweak that matches ``location`` exactly or by inheritance."""
    target = Path(os.path.normpath(os.fspath(location)))
    best: Optional[DirectoryTweak] = None
    best_depth = -1
    for tweak in config.directory_tweaks:
        tweak_path = Path(os.path.normpath(os.path.expanduser(tweak.location)))
        if target == tweak_path or (tweak.inherit and target.is_relative_to(tweak_path)):
            depth = len(tweak_path.parts)
            if depth > best_depth:
                best, best_depth = tweak, depth
    return best


__all__ = ["AutoScanSetting", "find_directory_tweak"]
