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

"""Implementation of `updatestack estimate` command.

Prints the per-step duration estimates the next update would start from.
"""

from __future__ import annotations

import json

import typer

from updatestack.core.config import UpdaterSettings
from updatestack.core.run import activity
from updatestack.pipeline.estimator import DurationHistory, ProgressEstimator, format_remaining
from updatestack.pipeline.steps import initial_steps
from updatestack.pipeline.store import JsonFileStore


def estimate(
    output_format: str = typer.Option("text", "--format", "-f", help="Output format: text|json"),
) -> None:
    """Show the estimated duration of each update step."""
    settings = UpdaterSettings.from_config()
    history = DurationHistory(
        JsonFileStore(settings.history_file),
        settings.default_durations,
        cap=settings.history_cap,
    )
    estimator = ProgressEstimator(history)
    steps = initial_steps(estimator)
    total = estimator.estimate_remaining(steps, now=0.0)

    if output_format == "json":
        rows = [
            {
                "step": step.name.value,
                "label": step.label,
                "estimate_seconds": round(step.estimated_duration, 1),
                "samples": len(history.durations(step.name)),
            }
            for step in steps
        ]
        print(json.dumps({"steps": rows, "total_seconds": total}, indent=2))
        return

    for step in steps:
        samples = len(history.durations(step.name))
        source = f"{samples} run(s)" if samples else "default"
        activity("estimate", f"{step.label}: {format_remaining(step.estimated_duration)} ({source})")
    activity("estimate", f"Total: {format_remaining(total)}")
