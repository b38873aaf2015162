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

"""Remaining-time estimation from per-step duration history.

Each step keeps a short history of observed durations in a key-value store.
A step's estimate is the mean of its history, or the configured default when
nothing has been recorded yet. During a run the estimates of the remaining
steps are scaled by how fast the completed steps went compared to their own
estimates.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from updatestack.pipeline.events import StepName, StepStatus
from updatestack.pipeline.store import KeyValueStore

if TYPE_CHECKING:
    from updatestack.pipeline.steps import Step

logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "durations."
DEFAULT_HISTORY_CAP = 10


def history_key(step: StepName) -> str:
    return f"{HISTORY_KEY_PREFIX}{step.value}"


class DurationHistory:
    """Capped per-step duration lists stored under ``durations.<step>``."""

    def __init__(
        self,
        store: KeyValueStore,
        defaults: Mapping[str, float],
        cap: int = DEFAULT_HISTORY_CAP,
    ) -> None:
        self.store = store
        self.defaults = dict(defaults)
        self.cap = max(1, cap)

    def durations(self, step: StepName) -> list[float]:
        raw = self.store.get(history_key(step))
        if not isinstance(raw, list):
            return []
        values: list[float] = []
        for item in raw:
            if isinstance(item, (int, float)) and not isinstance(item, bool) and item >= 0:
                values.append(float(item))
        return values

    def record(self, step: StepName, seconds: float) -> None:
        """Append one observed duration, dropping the oldest beyond the cap."""
        values = self.durations(step)
        values.append(round(seconds, 3))
        self.store.set(history_key(step), values[-self.cap :])

    def estimate(self, step: StepName) -> float:
        values = self.durations(step)
        if values:
            return sum(values) / len(values)
        return float(self.defaults.get(step.value, 0.0))


class ProgressEstimator:
    """Estimates remaining seconds for a run from its step list."""

    def __init__(self, history: DurationHistory) -> None:
        self.history = history

    def record_duration(self, step: StepName, seconds: float) -> None:
        logger.debug("Recording %.1fs for step %s", seconds, step.value)
        self.history.record(step, seconds)

    def estimated_duration(self, step: StepName) -> float:
        return self.history.estimate(step)

    def speed_factor(self, steps: Sequence[Step]) -> float:
        """Ratio of actual to estimated time over completed, timed steps."""
        actual = 0.0
        estimated = 0.0
        for step in steps:
            elapsed = step.elapsed()
            if step.status != StepStatus.COMPLETED or elapsed is None:
                continue
            actual += elapsed
            estimated += step.estimated_duration
        if actual <= 0 or estimated <= 0:
            return 1.0
        return actual / estimated

    def estimate_remaining(self, steps: Sequence[Step], now: float) -> int:
        """Return the estimated seconds left, rounded up and never negative.

        Args:
            steps: The run's steps in execution order.
            now: Current time on the same clock as the step timestamps.
        """
        factor = self.speed_factor(steps)
        remaining = 0.0
        for step in steps:
            if step.status == StepStatus.PENDING:
                remaining += step.estimated_duration * factor
            elif step.status == StepStatus.IN_PROGRESS:
                elapsed = step.elapsed(now) or 0.0
                remaining += max(0.0, step.estimated_duration * factor - elapsed)
        return max(0, math.ceil(remaining))


def format_remaining(seconds: float | None) -> str:
    """Render a remaining-time estimate the way the progress view shows it."""
    if seconds is None or seconds <= 0:
        return "Calculating..."
    seconds = int(seconds)
    minutes, secs = divmod(seconds, 60)
    if minutes == 0:
        return f"{secs}s"
    if minutes < 60:
        return f"~{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"~{hours}h {mins}m"
