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

"""Build module for Updatestack.

Runs the system installation script of a fetched update tree.
"""

from updatestack.build.driver import DEFAULT_BUILD_SCRIPT, BuildDriver

__all__ = [
    "DEFAULT_BUILD_SCRIPT",
    "BuildDriver",
]
