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

"""CLI application definition for Updatestack."""

from __future__ import annotations

from typer import Typer

from updatestack.commands.estimate import estimate
from updatestack.commands.update import update

app: Typer = Typer(
    name="updatestack",
    help="A tool for driving unattended software updates on control devices.",
    add_completion=False,
)

# Register commands
app.command(name="update")(update)
app.command(name="estimate")(estimate)
