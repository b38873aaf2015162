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

"""Request objects for Updatestack update runs.

An UpdateRequest captures what the caller asked for and stays immutable for
the whole run. Selector validation is deferred to validate() so that a run
started with a bad request still fails through the normal end-event path.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from updatestack.core.exceptions import (
    AmbiguousRevisionSelectorError,
    InvalidRepositoryNameError,
    NoRevisionSelectorError,
)


class SelectorKind(str, Enum):
    """Kind of revision selector carried by a request."""

    TAG = "tag"
    BRANCH = "branch"
    COMMIT = "commit"


@dataclass(frozen=True)
class RevisionSelector:
    kind: SelectorKind
    value: str


@dataclass(frozen=True)
class UpdateRequest:
    """Immutable request for one update run.

    Attributes:
        owner: Owner (user or organisation) of the update repository.
        repository: Repository name; also the local working copy name.
        token: Optional access token embedded as transport credentials.
        tag: Tag to fetch.
        branch: Branch to fetch.
        commit: Exact commit to check out after a default clone.
    """

    owner: str
    repository: str
    token: str | None = None
    tag: str | None = None
    branch: str | None = None
    commit: str | None = None

    def selectors(self) -> list[RevisionSelector]:
        """Return every selector that is set, in tag/branch/commit order."""
        candidates = [
            (SelectorKind.TAG, self.tag),
            (SelectorKind.BRANCH, self.branch),
            (SelectorKind.COMMIT, self.commit),
        ]
        return [RevisionSelector(kind, value) for kind, value in candidates if value]

    def selector(self) -> RevisionSelector:
        """Return the single revision selector.

        Raises:
            NoRevisionSelectorError: If none of tag/branch/commit is set.
            AmbiguousRevisionSelectorError: If more than one is set.
        """
        found = self.selectors()
        if not found:
            raise NoRevisionSelectorError()
        if len(found) > 1:
            raise AmbiguousRevisionSelectorError(selectors=[s.kind.value for s in found])
        return found[0]

    def validate(self) -> None:
        """Check the request before anything touches the disk.

        Raises:
            InvalidRepositoryNameError: If the repository name is empty, "."
                or "..", or contains a path separator.
            NoRevisionSelectorError: If none of tag/branch/commit is set.
            AmbiguousRevisionSelectorError: If more than one is set.
        """
        name = self.repository
        if name in ("", ".", "..") or "/" in name or "\\" in name:
            raise InvalidRepositoryNameError(
                message=f"Invalid repository name: {name!r}",
                repository=name,
            )
        self.selector()

    def describe(self) -> str:
        """Human-readable target, never including the token."""
        target = f"{self.owner}/{self.repository}"
        found = self.selectors()
        if len(found) == 1:
            return f"{target} ({found[0].kind.value} {found[0].value})"
        return target
