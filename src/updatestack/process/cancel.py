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

"""Cancellation of the live update process and its descendants."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass

from updatestack.pipeline.events import LogLevel, LogLine
from updatestack.process.runner import EventSink, ProcessHandle, ProcessRegistry

logger = logging.getLogger(__name__)

NO_ACTIVE_PROCESS = "No update process running"

# Seconds to wait for the process group to die after SIGKILL
KILL_WAIT_TIMEOUT = 5.0

# Seconds between checks for surviving group members during the grace period
GROUP_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class CancelResult:
    success: bool
    error: str | None = None


def signal_process_tree(handle: ProcessHandle, sig: signal.Signals) -> None:
    """Send a signal to the process group led by the handle's process.

    Commands are spawned in their own session, so the group holds the
    command and every descendant that did not start a session of its own.
    The group id equals the leader pid and stays valid after the leader is
    reaped, as long as any member is alive.
    """
    try:
        os.killpg(handle.pid, sig)
    except ProcessLookupError:
        logger.debug("Process group of %d already gone", handle.pid)


def process_group_alive(pid: int) -> bool:
    """Return True while any member of the process group led by pid exists."""
    try:
        os.killpg(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class CancellationController:
    """Terminates the live process, graceful first, forced if needed."""

    def __init__(
        self,
        registry: ProcessRegistry,
        emit: EventSink | None = None,
        grace_period: float = 5.0,
    ) -> None:
        self.registry = registry
        self.grace_period = grace_period
        self._emit = emit

    def _log(self, text: str, level: LogLevel = LogLevel.INFO) -> None:
        if self._emit is not None:
            self._emit(LogLine(text=text, level=level))

    def cancel(self) -> CancelResult:
        """Cancel the live process, if any.

        Returns:
            CancelResult(success=True) once the process is confirmed dead,
            CancelResult(False, "No update process running") when idle, or
            CancelResult(False, <reason>) when the signals could not be sent.
        """
        handle = self.registry.mark_cancel_requested()
        if handle is None:
            self._log(NO_ACTIVE_PROCESS)
            return CancelResult(success=False, error=NO_ACTIVE_PROCESS)

        self._log("Cancelling update process...")
        logger.info("Cancelling pid %d (step %s)", handle.pid, handle.step)

        try:
            self._terminate(handle)
        except (OSError, subprocess.TimeoutExpired) as e:
            message = f"Error cancelling process: {e}"
            self._log(message, LogLevel.ERROR)
            return CancelResult(success=False, error=str(e))

        self.registry.clear(handle)
        return CancelResult(success=True)

    def _terminate(self, handle: ProcessHandle) -> None:
        """SIGTERM the group, then SIGKILL it if any member outlives the grace period."""
        deadline = time.monotonic() + self.grace_period
        signal_process_tree(handle, signal.SIGTERM)
        try:
            handle.process.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            logger.info("pid %d ignored SIGTERM for %.1fs, sending SIGKILL", handle.pid, self.grace_period)
        else:
            # The leader is gone; descendants in its group may still be running.
            while process_group_alive(handle.pid):
                if time.monotonic() >= deadline:
                    logger.info("Descendants of pid %d ignored SIGTERM, sending SIGKILL", handle.pid)
                    break
                time.sleep(GROUP_POLL_INTERVAL)
            else:
                return

        signal_process_tree(handle, signal.SIGKILL)
        handle.process.wait(timeout=KILL_WAIT_TIMEOUT)
