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

"""Implementation of `updatestack update` command.

Runs the full update pipeline for one repository revision and renders its
progress on the terminal. Ctrl-C cancels the running process; the command
then waits for the pipeline to report the cancellation.
"""

from __future__ import annotations

import sys

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn

from updatestack.core.config import UpdaterSettings
from updatestack.core.context import UpdateRequest
from updatestack.core.exceptions import CancelledByUserError, UpdatestackError
from updatestack.core.paths import ensure_directories
from updatestack.core.run import RunContext, activity
from updatestack.pipeline.estimator import format_remaining
from updatestack.pipeline.events import (
    BuildProgress,
    LogLevel,
    LogLine,
    StepChange,
    StepStatus,
    Subscription,
    UpdateEnd,
)
from updatestack.pipeline.orchestrator import UpdateOrchestrator
from updatestack.pipeline.steps import STEP_LABELS

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# Seconds between progress refreshes while no event arrives
POLL_INTERVAL = 0.5

LEVEL_PHASES = {
    LogLevel.INFO: "update",
    LogLevel.SUCCESS: "ok",
    LogLevel.ERROR: "error",
    LogLevel.COMMAND: "cmd",
}


def is_tty() -> bool:
    """Return True if the real stdout is a TTY."""
    try:
        return sys.__stdout__ is not None and sys.__stdout__.isatty()
    except ValueError:  # pragma: no cover
        return False


def exit_code_for(end: UpdateEnd, error: UpdatestackError | None) -> int:
    if end.success:
        return EXIT_SUCCESS
    if end.cancelled:
        return CancelledByUserError().exit_code
    if error is not None:
        return error.exit_code
    return EXIT_FAILURE


def follow(
    orchestrator: UpdateOrchestrator,
    events: Subscription,
    run: RunContext,
    show_output: bool = False,
) -> UpdateEnd:
    """Render events until the run ends, cancelling on Ctrl-C."""
    console = Console(file=sys.__stdout__, force_terminal=is_tty())
    progress = Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(bar_width=40),
        TaskProgressColumn(),
        TextColumn("{task.fields[remaining]}"),
        console=console,
        transient=True,
        disable=not is_tty(),
    )

    with progress:
        task = progress.add_task("Starting update", total=100, remaining="Calculating...")
        while True:
            try:
                event = events.get(timeout=POLL_INTERVAL)
            except KeyboardInterrupt:
                result = orchestrator.cancel()
                if not result.success:
                    console.print(f"[cancel] {result.error}", markup=False, highlight=False)
                continue

            if event is not None:
                run.record(event)
                if isinstance(event, UpdateEnd):
                    return event
                if isinstance(event, LogLine):
                    phase = LEVEL_PHASES.get(event.level)
                    if phase is not None or show_output:
                        console.print(f"[{phase or 'out'}] {event.text}", markup=False, highlight=False)
                elif isinstance(event, StepChange) and event.status == StepStatus.IN_PROGRESS:
                    progress.update(task, description=STEP_LABELS[event.step])
                elif isinstance(event, BuildProgress):
                    progress.update(task, description=event.phase)

            progress.update(
                task,
                completed=orchestrator.overall_progress(),
                remaining=format_remaining(orchestrator.estimate_remaining()),
            )


def update(
    owner: str = typer.Argument(..., help="Owner of the update repository"),
    repository: str = typer.Argument(..., help="Name of the update repository"),
    tag: str = typer.Option("", "--tag", help="Tag to install"),
    branch: str = typer.Option("", "--branch", help="Branch to install"),
    commit: str = typer.Option("", "--commit", help="Exact commit to install"),
    token: str = typer.Option("", "--token", envvar="UPDATESTACK_TOKEN", help="Access token for private repositories"),
    show_output: bool = typer.Option(False, "--show-output", help="Echo raw command output"),
) -> None:
    """Fetch a repository revision and run its system installation script.

    Examples:
        updatestack update acme control --tag v2.4.0
        updatestack update acme control --commit 3f2a9c1
    """
    request = UpdateRequest(
        owner=owner,
        repository=repository,
        token=token or None,
        tag=tag or None,
        branch=branch or None,
        commit=commit or None,
    )
    settings = UpdaterSettings.from_config()
    ensure_directories(settings)

    with RunContext("update", settings.runs_root) as run:
        run.log_event({"event": "update.request", "target": request.describe()})
        activity("update", f"Updating {request.describe()}")

        orchestrator = UpdateOrchestrator(settings)
        with orchestrator.events.subscribe() as events:
            orchestrator.execute(request)
            end = follow(orchestrator, events, run, show_output=show_output)
        orchestrator.wait()

        code = exit_code_for(end, orchestrator.last_error)
        fetched = orchestrator.fetch_result
        run.write_summary(
            status="success" if end.success else ("cancelled" if end.cancelled else "failed"),
            target=request.describe(),
            revision=fetched.revision if fetched else None,
            error=end.error,
            exit_code=code,
            steps={s.name.value: s.status.value for s in orchestrator.steps.steps},
        )

    if end.success:
        activity("update", f"Installed {request.describe()}")
    if code != EXIT_SUCCESS:
        raise typer.Exit(code)
