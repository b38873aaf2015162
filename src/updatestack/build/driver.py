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

"""Build driver: prepares and runs the system installation script."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from updatestack.core.exceptions import BuildScriptError, PermissionChangeError
from updatestack.pipeline.events import StepName
from updatestack.process.runner import ProcessRunner, check_outcome

logger = logging.getLogger(__name__)

DEFAULT_BUILD_SCRIPT = "nixos-install.sh"


class BuildDriver:
    def __init__(
        self,
        runner: ProcessRunner,
        script: str = DEFAULT_BUILD_SCRIPT,
        on_build_line: Callable[[str], object] | None = None,
    ) -> None:
        self.runner = runner
        self.script = script
        self._on_build_line = on_build_line

    def prepare(self, path: Path) -> None:
        """Make the installation script executable.

        Raises:
            PermissionChangeError: If chmod exits non-zero.
        """
        outcome = self.runner.run("chmod", ["+x", self.script], path, step=StepName.PREPARE)
        check_outcome(
            outcome,
            lambda o: PermissionChangeError(message=f"Failed to make {self.script} executable: {o.error}"),
        )

    def build(self, path: Path) -> None:
        """Run the installation script with build-output parsing attached.

        Raises:
            BuildScriptError: If the script exits non-zero.
        """
        logger.info("Running %s in %s", self.script, path)
        outcome = self.runner.run(
            f"./{self.script}",
            [],
            path,
            step=StepName.BUILD,
            on_line=self._on_build_line,
        )
        check_outcome(
            outcome,
            lambda o: BuildScriptError(message=o.error, script_exit_code=o.exit_code),
        )
