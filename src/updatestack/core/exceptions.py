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

"""Updatestack-specific exception types with associated exit codes."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class UpdatestackError(Exception):
    """Base class for Updatestack errors with an exit code."""

    message: str = "An error occurred"
    exit_code: int = field(default=1)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.message} (exit {self.exit_code})"


@dataclass
class ConfigError(UpdatestackError):
    exit_code: int = field(default=1)


@dataclass
class MissingWorkingRootError(ConfigError):
    """Raised when no home/working root can be resolved from the environment."""

    message: str = "Home directory not found"


@dataclass
class NoRevisionSelectorError(ConfigError):
    """Raised when a request names none of tag, branch or commit."""

    message: str = "No specific version specified!"


@dataclass
class AmbiguousRevisionSelectorError(ConfigError):
    """Raised when a request names more than one of tag, branch or commit."""

    message: str = "Exactly one of tag, branch or commit must be specified"
    selectors: list[str] = field(default_factory=list)


@dataclass
class InvalidRepositoryNameError(ConfigError):
    """Raised when a repository name would not map to a single directory under the root."""

    message: str = "Invalid repository name"
    repository: str = ""


@dataclass
class ClearDirectoryError(UpdatestackError):
    exit_code: int = field(default=2)


@dataclass
class FetchError(UpdatestackError):
    """Error raised when the repository could not be cloned."""

    exit_code: int = field(default=3)


@dataclass
class CheckoutError(UpdatestackError):
    """Error raised when the clone succeeded but the revision checkout did not."""

    exit_code: int = field(default=4)
    commit: str = ""


@dataclass
class PermissionChangeError(UpdatestackError):
    exit_code: int = field(default=5)


@dataclass
class BuildScriptError(UpdatestackError):
    """Error raised when the installation script exits non-zero."""

    exit_code: int = field(default=6)
    script_exit_code: int | None = None


@dataclass
class ProcessSpawnError(UpdatestackError):
    """Error raised when a command could not be started at all."""

    exit_code: int = field(default=7)
    command: str = ""


@dataclass
class AlreadyRunningError(UpdatestackError):
    """Error raised when a second process or run would break single-flight."""

    exit_code: int = field(default=8)


@dataclass
class CancelledByUserError(UpdatestackError):
    message: str = "Update process cancelled"
    exit_code: int = field(default=130)
