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

"""Configuration utilities for Updatestack."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG: dict[str, Any] = {
    "paths": {
        "working_root": None,
        "history_file": "~/.local/state/updatestack/durations.json",
        "runs_root": "~/.cache/updatestack/runs",
    },
    "device": {
        "env_var": "UPDATESTACK_ENV",
        "control_os_value": "control-os",
        "control_os_home": "/home/qitech",
    },
    "remote": {"host": "github.com"},
    "build": {"script": "nixos-install.sh"},
    "cancel": {"grace_period": 5.0},
    "estimates": {
        "history_cap": 10,
        "defaults": {
            "clear-repository": 2,
            "fetch-source": 60,
            "prepare": 1,
            "build": 900,
            "finalize": 30,
        },
    },
}


def get_config_path() -> Path:
    """Return the path to the config file."""
    return Path.home() / ".config" / "updatestack" / "config.yaml"


def ensure_config_exists() -> None:
    """Create the config file with defaults if it does not exist."""
    cfg_path = get_config_path()
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    if not cfg_path.exists():
        cfg_path.write_text(yaml.safe_dump(DEFAULT_CONFIG))


def load_config() -> dict[str, Any]:
    """Load configuration from disk and merge with defaults.

    The returned dictionary is a shallow per-section merge of DEFAULT_CONFIG
    and the values stored in the on-disk config file.
    """
    ensure_config_exists()
    cfg_path = get_config_path()
    try:
        raw = yaml.safe_load(cfg_path.read_text()) or {}
    except yaml.YAMLError:
        raw = {}

    merged: dict[str, Any] = {}
    for key, val in DEFAULT_CONFIG.items():
        if key in raw and isinstance(raw[key], dict) and isinstance(val, dict):
            merged[key] = {**val, **raw[key]}
        elif isinstance(val, dict):
            merged[key] = dict(val)
        else:
            merged[key] = raw.get(key, val)

    # Expand tilde paths in place for convenience.
    for pkey, pval in merged.get("paths", {}).items():
        if pval:
            merged["paths"][pkey] = str(Path(pval).expanduser())

    return merged


@dataclass(frozen=True)
class UpdaterSettings:
    """Resolved settings consumed by the update pipeline.

    Attributes:
        working_root: Explicit working root override, or None to resolve it
            from the environment.
        history_file: JSON file backing the step duration history.
        runs_root: Directory holding per-run transcripts and events.
        env_var: Environment variable naming the runtime environment.
        control_os_value: Value of env_var that selects the device home.
        control_os_home: Working root used on the control OS.
        remote_host: Host serving the update repositories.
        build_script: Installation script name inside the fetched tree.
        grace_period: Seconds to wait after SIGTERM before SIGKILL.
        history_cap: Maximum number of durations kept per step.
        default_durations: Seed duration estimates per step name.
    """

    working_root: Path | None = None
    history_file: Path = Path("~/.local/state/updatestack/durations.json").expanduser()
    runs_root: Path = Path("~/.cache/updatestack/runs").expanduser()
    env_var: str = "UPDATESTACK_ENV"
    control_os_value: str = "control-os"
    control_os_home: Path = Path("/home/qitech")
    remote_host: str = "github.com"
    build_script: str = "nixos-install.sh"
    grace_period: float = 5.0
    history_cap: int = 10
    default_durations: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CONFIG["estimates"]["defaults"])
    )

    @classmethod
    def from_config(cls, cfg: dict[str, Any] | None = None) -> UpdaterSettings:
        """Build settings from a merged configuration mapping."""
        if cfg is None:
            cfg = load_config()
        paths = cfg.get("paths", {})
        device = cfg.get("device", {})
        estimates = cfg.get("estimates", {})
        defaults = {
            **DEFAULT_CONFIG["estimates"]["defaults"],
            **(estimates.get("defaults") or {}),
        }
        working_root = paths.get("working_root")
        return cls(
            working_root=Path(working_root).expanduser() if working_root else None,
            history_file=Path(paths.get("history_file", cls.history_file)).expanduser(),
            runs_root=Path(paths.get("runs_root", cls.runs_root)).expanduser(),
            env_var=device.get("env_var", cls.env_var),
            control_os_value=device.get("control_os_value", cls.control_os_value),
            control_os_home=Path(device.get("control_os_home", cls.control_os_home)),
            remote_host=cfg.get("remote", {}).get("host", cls.remote_host),
            build_script=cfg.get("build", {}).get("script", cls.build_script),
            grace_period=float(cfg.get("cancel", {}).get("grace_period", cls.grace_period)),
            history_cap=int(estimates.get("history_cap", cls.history_cap)),
            default_durations={k: float(v) for k, v in defaults.items()},
        )
