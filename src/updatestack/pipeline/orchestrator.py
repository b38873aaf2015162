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

"""Update orchestrator: runs the pipeline steps in order and reports events.

The orchestrator owns every piece of mutable run state: the live-process
registry (shared only with its CancellationController), the output parsers,
the step state machine and the transcript. Every event produced during a run
goes through _emit(), which applies it to that state and then publishes it
on the EventStream.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import TypeVar

from updatestack.build.driver import BuildDriver
from updatestack.core.config import UpdaterSettings
from updatestack.core.context import UpdateRequest
from updatestack.core.exceptions import (
    AlreadyRunningError,
    CancelledByUserError,
    UpdatestackError,
)
from updatestack.core.paths import repository_dir, resolve_working_root
from updatestack.parsing.build_progress import BuildOutputParser
from updatestack.parsing.source_progress import SourceProgressParser
from updatestack.pipeline.estimator import DurationHistory, ProgressEstimator
from updatestack.pipeline.events import (
    BuildProgress,
    EventStream,
    LogLevel,
    LogLine,
    SourceProgress,
    StepChange,
    StepName,
    StepStatus,
    UpdateEnd,
    UpdateEvent,
)
from updatestack.pipeline.steps import StepStateMachine
from updatestack.pipeline.store import JsonFileStore, KeyValueStore
from updatestack.pipeline.transcript import Transcript
from updatestack.process.cancel import CancellationController, CancelResult
from updatestack.process.runner import ProcessRegistry, ProcessRunner
from updatestack.repo.preparer import FetchResult, RepositoryPreparer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpdateOrchestrator:
    """Runs one update at a time and publishes its events.

    Usage:
        orchestrator = UpdateOrchestrator(settings)
        with orchestrator.events.subscribe() as events:
            orchestrator.execute(request)
            for event in events:
                ...
    """

    def __init__(
        self,
        settings: UpdaterSettings | None = None,
        store: KeyValueStore | None = None,
        runner: ProcessRunner | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Resolved settings; defaults are used when omitted.
            store: Backing store for duration history; a JSON file at
                settings.history_file when omitted.
            runner: Process runner; one bound to this orchestrator's
                registry and event sink is created when omitted.
            environ: Environment used to resolve the working root.
            clock: Monotonic clock used for step timings.
        """
        self.settings = settings or UpdaterSettings()
        self.environ = environ
        self.events = EventStream()
        self.transcript = Transcript()
        self.registry = ProcessRegistry()
        self.runner = runner or ProcessRunner(self.registry, emit=self._emit)
        self.canceller = CancellationController(
            self.registry, emit=self._emit, grace_period=self.settings.grace_period
        )

        history = DurationHistory(
            store if store is not None else JsonFileStore(self.settings.history_file),
            self.settings.default_durations,
            cap=self.settings.history_cap,
        )
        self.estimator = ProgressEstimator(history)
        self.steps = StepStateMachine(self.estimator, clock=clock)

        self.source_parser = SourceProgressParser(self._emit)
        self.build_parser = BuildOutputParser(self._emit)
        self.preparer = RepositoryPreparer(
            self.runner,
            emit=self._emit,
            host=self.settings.remote_host,
            on_progress_line=self.source_parser.feed,
        )
        self.driver = BuildDriver(
            self.runner,
            script=self.settings.build_script,
            on_build_line=self.build_parser.feed,
        )

        self.source_percent = 0.0
        self.build_progress: BuildProgress | None = None
        self.fetch_result: FetchResult | None = None
        self.last_end: UpdateEnd | None = None
        self.last_error: UpdatestackError | None = None
        self._run_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def _emit(self, event: UpdateEvent) -> None:
        if isinstance(event, LogLine):
            self.transcript.append(event.text)
        elif isinstance(event, StepChange):
            if not self.steps.set_status(event.step, event.status):
                return
        elif isinstance(event, SourceProgress):
            self.source_percent = event.percent
        elif isinstance(event, BuildProgress):
            self.build_progress = event
        self.events.publish(event)

    def _log(self, text: str, level: LogLevel = LogLevel.INFO) -> None:
        self._emit(LogLine(text=text, level=level))

    def run(self, request: UpdateRequest) -> UpdateEnd:
        """Run an update to completion on the calling thread.

        Raises:
            AlreadyRunningError: If another run is in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            raise AlreadyRunningError(message="An update is already running")
        try:
            return self._run(request)
        finally:
            self._run_lock.release()

    def execute(self, request: UpdateRequest) -> threading.Thread:
        """Start an update on a background thread.

        The result is delivered as the UpdateEnd event; wait() joins the
        thread.

        Raises:
            AlreadyRunningError: If another run is in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            raise AlreadyRunningError(message="An update is already running")

        def _target() -> None:
            try:
                self._run(request)
            finally:
                self._run_lock.release()

        self._thread = threading.Thread(target=_target, name="updatestack-run", daemon=True)
        self._thread.start()
        return self._thread

    def wait(self, timeout: float | None = None) -> UpdateEnd | None:
        """Join the background run and return its end event, if finished."""
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                return None
        return self.last_end

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> CancelResult:
        """Cancel the live process of the current run."""
        return self.canceller.cancel()

    def estimate_remaining(self) -> int | None:
        return self.steps.estimate_remaining()

    def overall_progress(self) -> float:
        return self.steps.overall_progress(self.source_percent)

    def _reset(self) -> None:
        self.steps.reset()
        self.source_parser.reset()
        self.build_parser.reset()
        self.transcript.clear()
        self.source_percent = 0.0
        self.build_progress = None
        self.fetch_result = None
        self.last_end = None
        self.last_error = None

    def _step(self, name: StepName, action: Callable[[], T]) -> T:
        self._emit(StepChange(name, StepStatus.IN_PROGRESS))
        result = action()
        self._emit(StepChange(name, StepStatus.COMPLETED))
        return result

    def _fail_current_step(self) -> None:
        current = self.steps.in_progress_step()
        if current is not None:
            self._emit(StepChange(current.name, StepStatus.FAILED))

    def _run(self, request: UpdateRequest) -> UpdateEnd:
        self._reset()
        try:
            request.validate()
            root = resolve_working_root(self.settings, self.environ)
            path = repository_dir(root, request.repository)
            self._log(f"Updating {request.describe()} in {path}")
            self._pipeline(request, root, path)
        except CancelledByUserError as e:
            self.last_error = e
            self._fail_current_step()
            self._log(e.message, LogLevel.ERROR)
            end = UpdateEnd(success=False, error=e.message, cancelled=True)
        except UpdatestackError as e:
            self.last_error = e
            self._fail_current_step()
            self._log(f"Update failed: {e.message}", LogLevel.ERROR)
            end = UpdateEnd(success=False, error=e.message)
        except Exception as e:
            logger.exception("Unexpected error during update of %s", request.describe())
            self._fail_current_step()
            self._log(f"Update failed: {e}", LogLevel.ERROR)
            end = UpdateEnd(success=False, error=str(e))
        else:
            self._log("Update completed successfully!", LogLevel.SUCCESS)
            end = UpdateEnd(success=True)

        self.last_end = end
        self._emit(end)
        return end

    def _pipeline(self, request: UpdateRequest, root: Path, path: Path) -> None:
        self._step(StepName.CLEAR_REPOSITORY, lambda: self.preparer.clear(path, root))
        self.fetch_result = self._step(
            StepName.FETCH_SOURCE, lambda: self.preparer.fetch(request, root)
        )
        if self.fetch_result.revision:
            self._log(f"Fetched revision {self.fetch_result.revision}")
        self._step(StepName.PREPARE, lambda: self.driver.prepare(path))
        self._step(StepName.BUILD, lambda: self.driver.build(path))
        # Bootloader work happens inside the build script; the build parser
        # may already have moved finalize to in-progress.
        self._emit(StepChange(StepName.FINALIZE, StepStatus.IN_PROGRESS))
        self._emit(StepChange(StepName.FINALIZE, StepStatus.COMPLETED))
