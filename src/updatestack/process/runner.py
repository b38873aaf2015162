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

"""Process runner - spawns one external command and streams its output.

Every command of an update run goes through ProcessRunner.run(). The runner
starts the command without a shell in a new session (so the cancellation
path can signal the whole process group), reads stdout and stderr on one
thread each, and reports a structured ProcessOutcome. While the command is
alive its ProcessHandle is the single entry of the shared ProcessRegistry.
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO

from updatestack.core.exceptions import (
    AlreadyRunningError,
    CancelledByUserError,
    ProcessSpawnError,
    UpdatestackError,
)
from updatestack.pipeline.events import LogLevel, LogLine, StepName, UpdateEvent

logger = logging.getLogger(__name__)

# Seconds to wait for a reader thread after the process exited
READER_JOIN_TIMEOUT = 5.0

REDACTED = "***"

EventSink = Callable[[UpdateEvent], None]
LineCallback = Callable[[str], object]


class OutcomeStatus(str, Enum):
    """How a spawned command ended."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SPAWN_ERROR = "spawn-error"


@dataclass
class ProcessOutcome:
    """Result of running a single command."""

    status: OutcomeStatus
    command: str
    exit_code: int | None = None
    error: str = ""
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @classmethod
    def ok(cls, command: str, duration: float = 0.0) -> ProcessOutcome:
        return cls(OutcomeStatus.SUCCESS, command, exit_code=0, duration_seconds=duration)

    @classmethod
    def failed(cls, command: str, exit_code: int, duration: float = 0.0) -> ProcessOutcome:
        return cls(
            OutcomeStatus.FAILURE,
            command,
            exit_code=exit_code,
            error=f"Command failed with code {exit_code}",
            duration_seconds=duration,
        )

    @classmethod
    def cancelled(cls, command: str, exit_code: int | None, duration: float = 0.0) -> ProcessOutcome:
        return cls(
            OutcomeStatus.CANCELLED,
            command,
            exit_code=exit_code,
            error="Command was cancelled",
            duration_seconds=duration,
        )

    @classmethod
    def spawn_failed(cls, command: str, error: str) -> ProcessOutcome:
        return cls(OutcomeStatus.SPAWN_ERROR, command, error=error)


@dataclass
class ProcessHandle:
    """The live process of the current step."""

    pid: int
    process: subprocess.Popen[str]
    step: StepName | None = None
    cancellable: bool = True
    cancel_requested: bool = field(default=False)


class ProcessRegistry:
    """Holder of the single live ProcessHandle.

    Shared by the runner (set/clear) and the cancellation controller
    (get/clear); all access goes through the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: ProcessHandle | None = None

    def get(self) -> ProcessHandle | None:
        with self._lock:
            return self._handle

    def set(self, handle: ProcessHandle) -> None:
        with self._lock:
            if self._handle is not None:
                raise AlreadyRunningError(
                    message=f"Process {self._handle.pid} is still running",
                )
            self._handle = handle

    def clear(self, handle: ProcessHandle | None = None) -> bool:
        """Clear the live handle.

        When a handle is given, only clear if it is still the live one, so a
        late clear from a finished command never drops a newer registration.
        """
        with self._lock:
            if self._handle is None:
                return False
            if handle is not None and self._handle is not handle:
                return False
            self._handle = None
            return True

    def mark_cancel_requested(self) -> ProcessHandle | None:
        """Flag the live handle as being cancelled and return it.

        Returns None when nothing is running or the live process is not
        cancellable; its flag is then left untouched.
        """
        with self._lock:
            if self._handle is None or not self._handle.cancellable:
                return None
            self._handle.cancel_requested = True
            return self._handle

    @property
    def busy(self) -> bool:
        return self.get() is not None


def redact(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def child_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for spawned commands.

    Git must never stop to ask for credentials in an unattended run.
    """
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    if extra:
        env.update(extra)
    return env


class ProcessRunner:
    """Runs commands one at a time with line streaming and outcome mapping."""

    def __init__(
        self,
        registry: ProcessRegistry,
        emit: EventSink | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            registry: Shared live-process registry.
            emit: Sink receiving LogLine events for the transcript.
            env: Extra environment variables for every child.
        """
        self.registry = registry
        self._emit = emit
        self._env = env

    def _log(self, text: str, level: LogLevel = LogLevel.INFO, stream: str | None = None) -> None:
        if self._emit is not None:
            self._emit(LogLine(text=text, level=level, stream=stream))

    def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        *,
        step: StepName | None = None,
        on_line: LineCallback | None = None,
        secrets: Sequence[str] = (),
    ) -> ProcessOutcome:
        """Run a command to completion.

        Args:
            command: Executable name or path.
            args: Arguments, passed without shell interpretation.
            cwd: Working directory for the command.
            step: Pipeline step owning the process.
            on_line: Called with every non-empty output line, from the
                reader thread of the stream it arrived on.
            secrets: Strings to mask in transcript lines.

        Returns:
            ProcessOutcome describing how the command ended.

        Raises:
            AlreadyRunningError: If another command is still registered.
        """
        display = redact(" ".join([command, *args]), secrets)
        self._log(f"{cwd} $ {display}", LogLevel.COMMAND)

        if self.registry.busy:
            raise AlreadyRunningError(message=f"Cannot start '{display}': another command is running")

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                [command, *args],
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
                env=child_env(self._env),
            )
        except OSError as e:
            message = f"Command error: {e.strerror or e}"
            logger.warning("Failed to spawn %s: %s", display, e)
            self._log(message, LogLevel.ERROR)
            return ProcessOutcome.spawn_failed(display, message)

        handle = ProcessHandle(pid=proc.pid, process=proc, step=step)
        try:
            self.registry.set(handle)
        except AlreadyRunningError:
            # Lost a race with another command; do not leave this one running.
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            proc.communicate()
            raise
        logger.debug("Started pid %d: %s", proc.pid, display)

        try:
            readers = [
                self._start_reader(proc.stdout, "stdout", on_line, secrets),
                self._start_reader(proc.stderr, "stderr", on_line, secrets),
            ]
            returncode = proc.wait()
            for reader in readers:
                reader.join(timeout=READER_JOIN_TIMEOUT)
        finally:
            self.registry.clear(handle)

        duration = time.monotonic() - started

        if handle.cancel_requested and returncode != 0:
            self._log("Command was cancelled")
            return ProcessOutcome.cancelled(display, returncode, duration)
        if returncode == 0:
            self._log("Command completed successfully", LogLevel.SUCCESS)
            return ProcessOutcome.ok(display, duration)

        self._log(f"Command failed with code {returncode}", LogLevel.ERROR)
        return ProcessOutcome.failed(display, returncode, duration)

    def _start_reader(
        self,
        pipe: IO[str] | None,
        name: str,
        on_line: LineCallback | None,
        secrets: Sequence[str],
    ) -> threading.Thread:
        def _read() -> None:
            if pipe is None:
                return
            try:
                for raw in pipe:
                    line = raw.rstrip("\r\n")
                    if not line.strip():
                        continue
                    self._log(redact(line, secrets), LogLevel.OUTPUT, stream=name)
                    if on_line is not None:
                        on_line(line)
            except ValueError:
                # Pipe closed underneath us after a forced kill.
                logger.debug("%s pipe closed while reading", name)
            finally:
                pipe.close()

        thread = threading.Thread(target=_read, name=f"updatestack-{name}", daemon=True)
        thread.start()
        return thread


def check_outcome(
    outcome: ProcessOutcome,
    on_failure: Callable[[ProcessOutcome], UpdatestackError],
) -> None:
    """Raise the matching error for an unsuccessful outcome.

    Cancellation and spawn errors map to their own exception types; a plain
    non-zero exit maps to whatever ``on_failure`` builds for the caller's step.
    """
    if outcome.success:
        return
    if outcome.status == OutcomeStatus.CANCELLED:
        raise CancelledByUserError()
    if outcome.status == OutcomeStatus.SPAWN_ERROR:
        raise ProcessSpawnError(message=outcome.error, command=outcome.command)
    raise on_failure(outcome)
