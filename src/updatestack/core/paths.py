# This file is part of Updatestack, a tool for driving unattended software updates on control devices.
#
# Copyright 2025 Canonical Ltd.
#
# SPDX-License-Identifier: GPL-3.0-only
#
# Updatestack is free software: you can redistribute it and/or modify it under
# the terms of the GNU General Public License version 3, as published by the
# Free Software Foundation.
#
# Updatestack is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranties of MERCHANTABILITY,
# SATISFACTORY QUALITY, or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License along with
# Updatestack. If not, see <http://www.gnu.org/licenses/>.

"""Path helpers for locating the update working root."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from updatestack.core.config import UpdaterSettings
from updatestack.core.exceptions import MissingWorkingRootError


def resolve_working_root(
    settings: UpdaterSettings,
    environ: Mapping[str, str] | None = None,
) -> Path:
    """Return the directory the update repository is cloned into.

    Resolution order:
      1. An explicit ``paths.working_root`` from the config file.
      2. The fixed device home when the environment variable named by
         ``settings.env_var`` equals ``settings.control_os_value``.
      3. ``$HOME``.

    Raises:
        MissingWorkingRootError: If none of the above yields a directory.
    """
    env = os.environ if environ is None else environ

    if settings.working_root is not None:
        return settings.working_root

    if env.get(settings.env_var) == settings.control_os_value:
        return settings.control_os_home

    home = env.get("HOME")
    if not home:
        raise MissingWorkingRootError()
    return Path(home)


def repository_dir(root: Path, repository: str) -> Path:
    """Return the local working copy path for a repository name."""
    return root / repository


def ensure_directories(settings: UpdaterSettings) -> dict[str, Path]:
    """Ensure state and run directories exist.

    Returns a mapping of keys to Path objects that were created/ensured.
    """
    paths = {
        "history_dir": settings.history_file.parent,
        "runs_root": settings.runs_root,
    }
    for p in paths.values():
        p.mkdir(parents=True, exist_ok=True)
    return paths
