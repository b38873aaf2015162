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

"""Step state machine for an update run.

Steps run in a fixed order and only move forward: pending -> in-progress ->
completed or failed. Requests for any other transition are ignored rather
than raised, since step changes also come from heuristic output parsing.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from updatestack.pipeline.estimator import ProgressEstimator
from updatestack.pipeline.events import StepName, StepStatus

logger = logging.getLogger(__name__)

STEP_LABELS: dict[StepName, str] = {
    StepName.CLEAR_REPOSITORY: "Clear old repository",
    StepName.FETCH_SOURCE: "Clone repository",
    StepName.PREPARE: "Prepare installation",
    StepName.BUILD: "Build NixOS system",
    StepName.FINALIZE: "Configure bootloader",
}

# Share of an in-progress step counted when it reports no progress of its own
IN_PROGRESS_SHARE = 0.5


@dataclass
class Step:
    name: StepName
    label: str
    status: StepStatus = StepStatus.PENDING
    started_at: float | None = None
    ended_at: float | None = None
    estimated_duration: float = 0.0

    def elapsed(self, now: float | None = None) -> float | None:
        """Seconds spent in the step so far, None if it never started."""
        if self.started_at is None:
            return None
        end = self.ended_at if self.ended_at is not None else now
        if end is None:
            return None
        return max(0.0, end - self.started_at)


def initial_steps(estimator: ProgressEstimator | None = None) -> list[Step]:
    steps = []
    for name in StepName:
        estimate = estimator.estimated_duration(name) if estimator is not None else 0.0
        steps.append(Step(name=name, label=STEP_LABELS[name], estimated_duration=estimate))
    return steps


class StepStateMachine:
    """Thread-safe holder of the run's steps.

    Durations of finished steps are handed to the estimator so future runs get
    better estimates.
    """

    def __init__(
        self,
        estimator: ProgressEstimator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.estimator = estimator
        self.clock = clock
        self._lock = threading.Lock()
        self._steps = initial_steps(estimator)
        self.current_index = -1

    def reset(self) -> None:
        """Return every step to pending with fresh estimates."""
        steps = initial_steps(self.estimator)
        with self._lock:
            self._steps = steps
            self.current_index = -1

    @property
    def steps(self) -> list[Step]:
        """A copy of the steps, safe to read while the run goes on."""
        with self._lock:
            return copy.deepcopy(self._steps)

    def get(self, name: StepName) -> Step | None:
        with self._lock:
            for step in self._steps:
                if step.name == name:
                    return copy.copy(step)
        return None

    def in_progress_step(self) -> Step | None:
        with self._lock:
            for step in self._steps:
                if step.status == StepStatus.IN_PROGRESS:
                    return copy.copy(step)
        return None

    def set_status(self, name: StepName | str, status: StepStatus) -> bool:
        """Apply a status change.

        Returns:
            True if the change was applied, False if it was ignored because
            the step is unknown or the transition is not allowed.
        """
        try:
            step_name = StepName(name)
        except ValueError:
            logger.debug("Ignoring status %s for unknown step %r", status.value, name)
            return False

        finished: list[tuple[StepName, float]] = []
        with self._lock:
            index = next(i for i, s in enumerate(self._steps) if s.name == step_name)
            step = self._steps[index]
            now = self.clock()

            running_later = any(s.status == StepStatus.IN_PROGRESS for s in self._steps[index + 1 :])
            if status == StepStatus.IN_PROGRESS and step.status == StepStatus.PENDING and not running_later:
                # A later step may announce itself while an earlier one is
                # still marked running; only one step runs at a time.
                for earlier in self._steps[:index]:
                    if earlier.status == StepStatus.IN_PROGRESS:
                        self._finish(earlier, StepStatus.COMPLETED, now, finished)
                step.status = StepStatus.IN_PROGRESS
                step.started_at = now
                self.current_index = index
            elif status in (StepStatus.COMPLETED, StepStatus.FAILED) and step.status == StepStatus.IN_PROGRESS:
                self._finish(step, status, now, finished)
            else:
                logger.debug(
                    "Ignoring transition %s -> %s for %s",
                    step.status.value,
                    status.value,
                    step_name.value,
                )
                return False

        if self.estimator is not None:
            for finished_name, seconds in finished:
                self.estimator.record_duration(finished_name, seconds)
        return True

    @staticmethod
    def _finish(
        step: Step,
        status: StepStatus,
        now: float,
        finished: list[tuple[StepName, float]],
    ) -> None:
        step.status = status
        step.ended_at = now
        elapsed = step.elapsed()
        if elapsed is not None:
            finished.append((step.name, elapsed))

    def overall_progress(self, source_percent: float = 0.0) -> float:
        """Percent of the whole run completed, 0-100.

        Completed steps count fully. The running step counts by its transfer
        progress while fetching, and as half a step otherwise.
        """
        with self._lock:
            total = len(self._steps)
            completed = sum(1 for s in self._steps if s.status == StepStatus.COMPLETED)
            if completed == total:
                return 100.0
            progress = completed / total * 100
            weight = 100 / total
            for step in self._steps:
                if step.status != StepStatus.IN_PROGRESS:
                    continue
                if step.name == StepName.FETCH_SOURCE and source_percent > 0:
                    progress += source_percent / 100 * weight
                else:
                    progress += IN_PROGRESS_SHARE * weight
        return min(100.0, max(0.0, progress))

    def estimate_remaining(self) -> int | None:
        """Seconds left for the run, or None without an estimator."""
        if self.estimator is None:
            return None
        steps = self.steps
        return self.estimator.estimate_remaining(steps, self.clock())
