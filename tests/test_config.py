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

"""Tests for updatestack configuration and path resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from updatestack.core import config
from updatestack.core.config import UpdaterSettings
from updatestack.core.exceptions import MissingWorkingRootError
from updatestack.core.paths import ensure_directories, repository_dir, resolve_working_root


class TestLoadConfig:
    """Tests for load_config()."""

    def test_creates_default_config(self, temp_home: Path) -> None:
        cfg = config.load_config()
        assert config.get_config_path().exists()
        assert cfg["build"]["script"] == "nixos-install.sh"
        assert cfg["estimates"]["history_cap"] == 10

    def test_merges_user_values(self, mock_config: Path) -> None:
        cfg = config.load_config()
        assert cfg["cancel"]["grace_period"] == 0.5
        # Untouched sections keep their defaults
        assert cfg["remote"]["host"] == "github.com"

    def test_expands_tilde_paths(self, mock_config: Path, temp_home: Path) -> None:
        cfg = config.load_config()
        assert cfg["paths"]["runs_root"] == str(temp_home / ".cache" / "updatestack" / "runs")

    def test_invalid_yaml_falls_back_to_defaults(self, temp_home: Path) -> None:
        path = config.get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("paths: [unclosed")
        cfg = config.load_config()
        assert cfg["device"]["env_var"] == "UPDATESTACK_ENV"


class TestUpdaterSettings:
    """Tests for UpdaterSettings.from_config()."""

    def test_defaults(self) -> None:
        settings = UpdaterSettings.from_config(config.DEFAULT_CONFIG)
        assert settings.working_root is None
        assert settings.build_script == "nixos-install.sh"
        assert settings.grace_period == 5.0
        assert settings.default_durations["build"] == 900.0

    def test_overrides(self) -> None:
        cfg = {
            "paths": {"working_root": "/srv/updates"},
            "estimates": {"history_cap": 3, "defaults": {"build": 120}},
            "cancel": {"grace_period": 1},
        }
        settings = UpdaterSettings.from_config(cfg)
        assert settings.working_root == Path("/srv/updates")
        assert settings.history_cap == 3
        assert settings.grace_period == 1.0
        assert settings.default_durations["build"] == 120.0
        # Missing defaults are filled in
        assert settings.default_durations["fetch-source"] == 60.0

    def test_loads_from_disk(self, mock_config: Path) -> None:
        settings = UpdaterSettings.from_config()
        assert settings.grace_period == 0.5


class TestResolveWorkingRoot:
    """Tests for resolve_working_root()."""

    def test_uses_home(self) -> None:
        root = resolve_working_root(UpdaterSettings(), {"HOME": "/home/alice"})
        assert root == Path("/home/alice")

    def test_control_os_uses_device_home(self) -> None:
        env = {"HOME": "/root", "UPDATESTACK_ENV": "control-os"}
        assert resolve_working_root(UpdaterSettings(), env) == Path("/home/qitech")

    def test_other_env_value_uses_home(self) -> None:
        env = {"HOME": "/root", "UPDATESTACK_ENV": "desktop"}
        assert resolve_working_root(UpdaterSettings(), env) == Path("/root")

    def test_explicit_override_wins(self) -> None:
        settings = UpdaterSettings(working_root=Path("/data"))
        env = {"HOME": "/root", "UPDATESTACK_ENV": "control-os"}
        assert resolve_working_root(settings, env) == Path("/data")

    def test_missing_home_raises(self) -> None:
        with pytest.raises(MissingWorkingRootError):
            resolve_working_root(UpdaterSettings(), {})

    def test_empty_home_raises(self) -> None:
        with pytest.raises(MissingWorkingRootError):
            resolve_working_root(UpdaterSettings(), {"HOME": ""})


class TestDirectories:
    def test_repository_dir(self) -> None:
        assert repository_dir(Path("/home/qitech"), "control") == Path("/home/qitech/control")

    def test_ensure_directories(self, settings: UpdaterSettings) -> None:
        paths = ensure_directories(settings)
        assert paths["runs_root"].is_dir()
        assert paths["history_dir"].is_dir()
