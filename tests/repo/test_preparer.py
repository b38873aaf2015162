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

"""Tests for the repository preparer."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest import mock

import pytest

from updatestack.core.context import SelectorKind, UpdateRequest
from updatestack.core.exceptions import (
    CancelledByUserError,
    CheckoutError,
    ClearDirectoryError,
    FetchError,
    NoRevisionSelectorError,
)
from updatestack.pipeline.events import LogLevel, LogLine, StepName, UpdateEvent
from updatestack.process.runner import ProcessOutcome
from updatestack.repo.preparer import RepositoryPreparer


@pytest.fixture
def events() -> list[UpdateEvent]:
    return []


@pytest.fixture
def git_repo() -> Any:
    with mock.patch("updatestack.repo.preparer.git.Repo") as repo_cls:
        repo_cls.return_value.head.commit.hexsha = "0123456789abcdef"
        yield repo_cls


def _preparer(fake_runner: Any, events: list[UpdateEvent], **kwargs: Any) -> RepositoryPreparer:
    return RepositoryPreparer(fake_runner, emit=events.append, **kwargs)


def _texts(events: list[UpdateEvent]) -> list[str]:
    return [e.text for e in events if isinstance(e, LogLine)]


class TestBuildUrl:
    def test_anonymous(self, fake_runner: Any, events: list[UpdateEvent]) -> None:
        request = UpdateRequest(owner="acme", repository="control", tag="v1")
        url = _preparer(fake_runner, events).build_url(request)
        assert url == "https://github.com/acme/control.git"

    def test_token_embedded(self, fake_runner: Any, events: list[UpdateEvent]) -> None:
        request = UpdateRequest(owner="acme", repository="control", token="tok", tag="v1")
        preparer = _preparer(fake_runner, events)
        assert preparer.build_url(request) == "https://tok@github.com/acme/control.git"
        assert preparer.build_url(request, with_token=False) == "https://github.com/acme/control.git"

    def test_custom_host(self, fake_runner: Any, events: list[UpdateEvent]) -> None:
        request = UpdateRequest(owner="acme", repository="control", tag="v1")
        url = _preparer(fake_runner, events, host="git.example.com").build_url(request)
        assert url == "https://git.example.com/acme/control.git"


class TestClear:
    """Tests for RepositoryPreparer.clear()."""

    def test_removes_existing_tree(self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path) -> None:
        repo = tmp_path / "control"
        (repo / ".git").mkdir(parents=True)
        (repo / "nixos-install.sh").write_text("#!/bin/sh\n")
        _preparer(fake_runner, events).clear(repo, tmp_path)
        assert not repo.exists()
        assert events == [LogLine(text=f"Deleted existing repository at {repo}", level=LogLevel.INFO)]

    def test_missing_is_noop(self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path) -> None:
        repo = tmp_path / "control"
        _preparer(fake_runner, events).clear(repo, tmp_path)
        assert _texts(events) == [f"No existing repository found at {repo}, nothing to delete"]
        assert all(e.level == LogLevel.INFO for e in events if isinstance(e, LogLine))

    def test_removes_plain_file(self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path) -> None:
        stray = tmp_path / "control"
        stray.write_text("not a repo")
        _preparer(fake_runner, events).clear(stray, tmp_path)
        assert not stray.exists()

    def test_failure_raises(self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path) -> None:
        repo = tmp_path / "control"
        repo.mkdir()
        with (
            mock.patch("updatestack.repo.preparer.shutil.rmtree", side_effect=PermissionError("denied")),
            pytest.raises(ClearDirectoryError),
        ):
            _preparer(fake_runner, events).clear(repo, tmp_path)
        assert fake_runner.calls == []

    @pytest.mark.parametrize("name", ["..", ".", "", "a/../.."])
    def test_refuses_paths_outside_root(
        self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path, name: str
    ) -> None:
        root = tmp_path / "home"
        (root / "control").mkdir(parents=True)
        keep = tmp_path / "keep.txt"
        keep.write_text("keep")

        with pytest.raises(ClearDirectoryError):
            _preparer(fake_runner, events).clear(root / name, root)

        assert keep.exists()
        assert (root / "control").exists()

    def test_refuses_nested_path(self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path) -> None:
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        with pytest.raises(ClearDirectoryError):
            _preparer(fake_runner, events).clear(nested, tmp_path)
        assert nested.exists()

    def test_symlinked_child_is_unlinked(
        self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path
    ) -> None:
        target = tmp_path / "elsewhere"
        target.mkdir()
        link = tmp_path / "root" / "control"
        link.parent.mkdir()
        link.symlink_to(target)

        _preparer(fake_runner, events).clear(link, tmp_path / "root")

        assert not link.is_symlink()
        assert target.exists()


class TestFetch:
    """Tests for RepositoryPreparer.fetch()."""

    def test_tag_single_branch_clone(
        self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path
    ) -> None:
        request = UpdateRequest(owner="acme", repository="control", tag="v2.0.0")
        result = _preparer(fake_runner, events).fetch(request, tmp_path)

        (call,) = fake_runner.calls
        assert call.command == "git"
        assert call.args == [
            "clone",
            "--progress",
            "--branch",
            "v2.0.0",
            "--single-branch",
            "https://github.com/acme/control.git",
            str(tmp_path / "control"),
        ]
        assert call.cwd == tmp_path
        assert call.step == StepName.FETCH_SOURCE
        assert result.path == tmp_path / "control"
        assert result.selector.kind == SelectorKind.TAG
        assert result.revision == "0123456789abcdef"
        assert "Cloning tag: v2.0.0" in _texts(events)
        assert _texts(events)[-1] == "Repository cloned successfully"

    def test_branch_clone(self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path) -> None:
        request = UpdateRequest(owner="acme", repository="control", branch="main")
        _preparer(fake_runner, events).fetch(request, tmp_path)
        assert fake_runner.calls[0].args[2:5] == ["--branch", "main", "--single-branch"]
        assert "Cloning branch: main" in _texts(events)

    def test_commit_clone_then_checkout(
        self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path
    ) -> None:
        request = UpdateRequest(owner="acme", repository="control", commit="3f2a9c1")
        _preparer(fake_runner, events).fetch(request, tmp_path)

        clone, checkout = fake_runner.calls
        assert clone.args == ["clone", "--progress", "https://github.com/acme/control.git", str(tmp_path / "control")]
        assert checkout.args == ["checkout", "3f2a9c1"]
        assert checkout.cwd == tmp_path / "control"
        assert "Successfully checked out commit: 3f2a9c1" in _texts(events)

    def test_checkout_failure_is_distinct(
        self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path
    ) -> None:
        fake_runner.respond("git checkout", ProcessOutcome.failed("git checkout 3f2a9c1", 1))
        request = UpdateRequest(owner="acme", repository="control", commit="3f2a9c1")
        with pytest.raises(CheckoutError) as exc_info:
            _preparer(fake_runner, events).fetch(request, tmp_path)
        assert not isinstance(exc_info.value, FetchError)
        assert exc_info.value.commit == "3f2a9c1"
        assert "Failed to checkout commit: 3f2a9c1" in _texts(events)

    def test_clone_failure(self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path) -> None:
        fake_runner.respond("git clone", ProcessOutcome.failed("git clone", 128))
        request = UpdateRequest(owner="acme", repository="control", commit="3f2a9c1")
        with pytest.raises(FetchError):
            _preparer(fake_runner, events).fetch(request, tmp_path)
        assert fake_runner.keys() == ["git clone"]
        assert "Failed to clone repository" in _texts(events)

    def test_cancelled_clone(self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path) -> None:
        fake_runner.respond("git clone", ProcessOutcome.cancelled("git clone", -15))
        request = UpdateRequest(owner="acme", repository="control", tag="v1")
        with pytest.raises(CancelledByUserError):
            _preparer(fake_runner, events).fetch(request, tmp_path)

    def test_missing_selector_spawns_nothing(
        self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path
    ) -> None:
        request = UpdateRequest(owner="acme", repository="control")
        with pytest.raises(NoRevisionSelectorError):
            _preparer(fake_runner, events).fetch(request, tmp_path)
        assert fake_runner.calls == []

    def test_progress_lines_forwarded(
        self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path
    ) -> None:
        lines = ["Cloning into 'control'...", "Receiving objects: 45% (234/520)"]
        fake_runner.respond("git clone", None, lines)
        seen: list[str] = []
        request = UpdateRequest(owner="acme", repository="control", tag="v1")
        _preparer(fake_runner, events, on_progress_line=seen.append).fetch(request, tmp_path)
        assert seen == lines

    def test_token_is_scrubbed(
        self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path
    ) -> None:
        request = UpdateRequest(owner="acme", repository="control", token="tok", tag="v1")
        result = _preparer(fake_runner, events).fetch(request, tmp_path)

        call = fake_runner.calls[0]
        assert "https://tok@github.com/acme/control.git" in call.args
        assert call.secrets == ["tok"]
        git_repo.return_value.remote.assert_called_once_with("origin")
        git_repo.return_value.remote.return_value.set_url.assert_called_once_with(
            "https://github.com/acme/control.git"
        )
        assert result.url == "https://github.com/acme/control.git"

    def test_anonymous_clone_keeps_remote(
        self, fake_runner: Any, events: list[UpdateEvent], git_repo: Any, tmp_path: Path
    ) -> None:
        request = UpdateRequest(owner="acme", repository="control", tag="v1")
        _preparer(fake_runner, events).fetch(request, tmp_path)
        git_repo.return_value.remote.assert_not_called()

    def test_unreadable_clone_has_no_revision(
        self, fake_runner: Any, events: list[UpdateEvent], tmp_path: Path
    ) -> None:
        # Nothing was actually cloned, so GitPython cannot open the tree
        request = UpdateRequest(owner="acme", repository="control", tag="v1")
        result = _preparer(fake_runner, events).fetch(request, tmp_path)
        assert result.revision is None
