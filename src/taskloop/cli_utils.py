"""Utilities for finding agent CLI executables.

Agent CLIs are usually installed through npm, pipx or a vendor script, so
they are not always on PATH for non-login shells. This module checks the
usual install locations as well.
"""

import os
import shutil
import sys
from pathlib import Path
from typing import Optional


def _candidate_paths(name: str) -> list[Path]:
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA", "")
        local_appdata = os.environ.get("LOCALAPPDATA", "")
        nvm_symlink = os.environ.get("NVM_SYMLINK")
        paths = [
            Path(appdata) / "npm" / f"{name}.cmd" if appdata else None,
            Path(local_appdata) / "npm" / f"{name}.cmd" if local_appdata else None,
            Path.home() / "AppData" / "Roaming" / "npm" / f"{name}.cmd",
            # nvm for Windows puts binaries here
            Path(nvm_symlink) / f"{name}.cmd" if nvm_symlink else None,
        ]
        return [p for p in paths if p is not None]

    return [
        Path.home() / ".npm-global" / "bin" / name,
        Path("/usr/local/bin") / name,
        Path.home() / ".local" / "bin" / name,
        Path.home() / ".bun" / "bin" / name,
        # nvm puts binaries in versioned directories, but also symlinks
        Path.home() / ".nvm" / "current" / "bin" / name,
    ]


def find_executable(name: str) -> Optional[str]:
    """Find an agent CLI executable.

    Searches in order:
    1. PATH (via shutil.which)
    2. Windows-specific: .cmd extension, npm global locations
    3. Unix-specific: common installation directories

    Returns:
        Path to the executable, or None if not found.
    """
    path = shutil.which(name)
    if path:
        return path

    if sys.platform == "win32":
        path = shutil.which(f"{name}.cmd")
        if path:
            return path

    for candidate in _candidate_paths(name):
        if candidate.exists():
            return str(candidate)
    return None


def is_available(name: str) -> bool:
    """Check if an agent CLI is installed."""
    return find_executable(name) is not None
