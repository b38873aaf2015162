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

"""Build output parsing for the system installation script.

The installation script is opaque; what we see is Nix-style log output. This
module turns those lines into BuildProgress events:

- "these N derivations will be built" sets the unit total and restarts the
  counters at 0%.
- "these M paths will be fetched/copied" moves the bar to at least 5%.
- every "building '/.../store/<hash>-<name>.drv'" line counts one unit and
  maps units done onto 15-85%.
- keyword phases (copying, unpacking, patching, configuring, compiling,
  installing, post-install, bootloader, system configuration) set a phase
  label and, for some of them, a percent floor.

Percentages never go down within a run: every computed value is raised to
the highest percentage already reported. Detection is heuristic; unexpected
wording simply produces no event.
"""

from __future__ import annotations

import math
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass

from updatestack.pipeline.events import (
    BuildProgress,
    ProgressEvent,
    StepChange,
    StepName,
    StepStatus,
)

DERIVATIONS_PATTERN = re.compile(r"these (\d+) derivations? will be built", re.IGNORECASE)
SINGLE_DERIVATION_PATTERN = re.compile(r"this derivation will be built", re.IGNORECASE)
PATHS_PATTERN = re.compile(r"these (\d+) paths? will be (?:fetched|copied)", re.IGNORECASE)
SINGLE_PATH_PATTERN = re.compile(r"this path will be (?:fetched|copied)", re.IGNORECASE)
UNIT_BUILD_PATTERN = re.compile(
    r"""building\s+['"]?(?:/[^/\s'"]+)*?/store/[^-/\s'"]+-([^'"\s]+)"""
)

UNIT_RANGE_START = 15
UNIT_RANGE_SPAN = 70
FETCH_FLOOR = 5
COPY_FLOOR = 10
SYSTEM_CONFIG_FLOOR = 12
INSTALL_FLOOR = 88
POST_INSTALL_FLOOR = 92
BOOTLOADER_FLOOR = 95

BOOTLOADER_MARKERS = ("updating grub", "installing bootloader", "updating bootloader")
SYSTEM_CONFIG_MARKERS = ("building the system configuration", "building system")
POST_INSTALL_MARKERS = ("post-installation", "post-install")

# (markers, label, percent floor or None) checked in order after the
# counting rules; more specific phrases come before the generic ones.
KEYWORD_PHASES: tuple[tuple[tuple[str, ...], str, int | None], ...] = (
    (BOOTLOADER_MARKERS, "Updating bootloader...", BOOTLOADER_FLOOR),
    (SYSTEM_CONFIG_MARKERS, "Building system configuration...", SYSTEM_CONFIG_FLOOR),
    (POST_INSTALL_MARKERS, "Running post-installation...", POST_INSTALL_FLOOR),
    (("installing",), "Installing packages...", INSTALL_FLOOR),
    (("copying path", "copying "), "Copying dependencies...", COPY_FLOOR),
    (("unpacking",), "Unpacking sources...", None),
    (("patching",), "Patching sources...", None),
    (("configuring",), "Configuring build...", None),
    (("building",), "Compiling...", None),
)


@dataclass
class BuildPhaseTracker:
    """Counters for one build step."""

    total_units: int = 0
    completed_units: int = 0
    phase: str = ""
    max_percent: int = 0

    def reset(self) -> None:
        self.total_units = 0
        self.completed_units = 0
        self.phase = ""
        self.max_percent = 0

    def raise_to(self, percent: int) -> int:
        """Record a candidate percentage and return the non-regressing value."""
        self.max_percent = max(percent, self.max_percent)
        return self.max_percent

    def unit_percent(self) -> int:
        if self.total_units <= 0:
            return UNIT_RANGE_START
        ratio = min(1.0, self.completed_units / self.total_units)
        return UNIT_RANGE_START + math.floor(ratio * UNIT_RANGE_SPAN)


def unit_display_name(store_name: str) -> str:
    """Strip the recipe suffix from a store entry name (``foo-1.0.drv``)."""
    return store_name.removesuffix(".drv")


class BuildOutputParser:
    """Turns installation script output into build progress events.

    Lines may arrive from the stdout and stderr reader threads at the same
    time; the tracker and the emission order are guarded by one lock.
    """

    def __init__(self, emit: Callable[[ProgressEvent], None]) -> None:
        self._emit = emit
        self._lock = threading.Lock()
        self.tracker = BuildPhaseTracker()

    def reset(self) -> None:
        with self._lock:
            self.tracker.reset()

    def _progress(self, phase: str, percent: int, unit: str = "") -> BuildProgress:
        self.tracker.phase = phase
        return BuildProgress(
            phase=phase,
            percent=percent,
            current_unit=unit,
            completed_units=self.tracker.completed_units,
            total_units=self.tracker.total_units,
        )

    def feed(self, line: str) -> list[ProgressEvent]:
        """Parse one line, emit the resulting events and return them."""
        with self._lock:
            events = self._parse(line)
            for event in events:
                self._emit(event)
        return events

    def _parse(self, line: str) -> list[ProgressEvent]:
        tracker = self.tracker

        total = _count(DERIVATIONS_PATTERN, SINGLE_DERIVATION_PATTERN, line)
        if total is not None:
            tracker.total_units = total
            tracker.completed_units = 0
            tracker.max_percent = 0
            return [self._progress(f"Preparing to build {total} packages...", 0)]

        paths = _count(PATHS_PATTERN, SINGLE_PATH_PATTERN, line)
        if paths is not None:
            percent = tracker.raise_to(FETCH_FLOOR)
            return [self._progress(f"Fetching {paths} dependencies...", percent)]

        match = UNIT_BUILD_PATTERN.search(line)
        if match:
            name = unit_display_name(match.group(1))
            tracker.completed_units += 1
            percent = tracker.raise_to(tracker.unit_percent())
            phase = (
                f"Building {name}... ({tracker.completed_units}/{tracker.total_units})"
                if name
                else "Building packages..."
            )
            return [self._progress(phase, percent, unit=name)]

        lowered = line.lower()
        for markers, label, floor in KEYWORD_PHASES:
            if not any(marker in lowered for marker in markers):
                continue
            percent = tracker.raise_to(floor) if floor is not None else tracker.max_percent
            events: list[ProgressEvent] = []
            if markers is BOOTLOADER_MARKERS:
                # Bootloader work runs inside the build script but belongs to
                # the finalize step; announce it early.
                events.append(StepChange(StepName.FINALIZE, StepStatus.IN_PROGRESS))
            events.append(self._progress(label, percent))
            return events

        return []


def _count(plural: re.Pattern[str], singular: re.Pattern[str], line: str) -> int | None:
    match = plural.search(line)
    if match:
        return int(match.group(1))
    if singular.search(line):
        return 1
    return None
