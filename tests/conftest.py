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

"""Pytest fixtures and configuration for Updatestack tests."""

from __future__ import annotations

import tempfile
from collections.abc import Callable, Generator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from unittest import mock

import pytest

from updatestack.core.config import UpdaterSettings
from updatestack.pipeline.store import MemoryStore
from updatestack.process.runner import LineCallback, ProcessOutcome


@pytest.fixture
def temp_home(monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Create a temporary home directory and set HOME/XDG paths."""
    with tempfile.TemporaryDirectory() as tmpdir:
        home = Path(tmpdir)
        monkeypatch.setenv("HOME", str(home))
        monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
        monkeypatch.setenv("XDG_CACHE_HOME", str(home / ".cache"))
        monkeypatch.delenv("UPDATESTACK_ENV", raising=False)
        # Also patch Path.home() to return our temp home
        monkeypatch.setattr(Path, "home", lambda: home)
        yield home


@pytest.fixture
def mock_config(temp_home: Path) -> Path:
    """Create a minimal config file in the temp home."""
    config_dir = temp_home / ".config" / "updatestack"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_dir / "config.yaml"
    config_file.write_text("""
paths:
  history_file: "~/.local/state/updatestack/durations.json"
  runs_root: "~/.cache/updatestack/runs"

device:
  env_var: "UPDATESTACK_ENV"
  control_os_value: "control-os"
  control_os_home: "/home/qitech"

build:
  script: "nixos-install.sh"

cancel:
  grace_period: 0.5
""")
    return config_file


@pytest.fixture
def settings(tmp_path: Path) -> UpdaterSettings:
    """Settings rooted in a temporary directory."""
    return UpdaterSettings(
        working_root=tmp_path / "root",
        history_file=tmp_path / "state" / "durations.json",
        runs_root=tmp_path / "runs",
        grace_period=0.5,
    )


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@dataclass
class RecordedCall:
    command: str
    args: list[str]
    cwd: Path
    step: object = None
    secrets: list[str] = field(default_factory=list)


class FakeRunner:
    """Stand-in for ProcessRunner that records calls instead of spawning.

    ``script`` maps a command name (or "git <subcommand>") to an outcome and
    optional output lines fed to the caller's line callback.
    """

    def __init__(self) -> None:
        self.calls: list[RecordedCall] = []
        self.script: dict[str, tuple[ProcessOutcome | None, list[str]]] = {}
        self.side_effects: dict[str, Callable[[Path], None]] = {}

    def respond(
        self,
        key: str,
        outcome: ProcessOutcome | None = None,
        lines: Sequence[str] = (),
    ) -> None:
        self.script[key] = (outcome, list(lines))

    def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        *,
        step: object = None,
        on_line: LineCallback | None = None,
        secrets: Sequence[str] = (),
    ) -> ProcessOutcome:
        self.calls.append(RecordedCall(command, list(args), cwd, step, list(secrets)))
        key = f"{command} {args[0]}" if command == "git" and args else command
        outcome, lines = self.script.get(key, (None, []))
        if on_line is not None:
            for line in lines:
                on_line(line)
        if key in self.side_effects:
            self.side_effects[key](cwd)
        display = " ".join([command, *args])
        return outcome or ProcessOutcome.ok(display)

    def keys(self) -> list[str]:
        return [f"{c.command} {c.args[0]}" if c.command == "git" else c.command for c in self.calls]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def non_tty_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    """Mock sys.__stdout__.isatty() to return False."""
    mock_stdout = mock.MagicMock()
    mock_stdout.isatty.return_value = False
    monkeypatch.setattr("sys.__stdout__", mock_stdout)
