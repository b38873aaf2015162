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

"""Typed events emitted by an update run and the stream that carries them.

Events are frozen dataclasses forming a closed union (UpdateEvent). Callers
consume them through EventStream.subscribe(), which hands out a queue-backed
Subscription; there is no listener registration to undo between runs.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Union


class StepName(str, Enum):
    """Pipeline steps, declared in execution order."""

    CLEAR_REPOSITORY = "clear-repository"
    FETCH_SOURCE = "fetch-source"
    PREPARE = "prepare"
    BUILD = "build"
    FINALIZE = "finalize"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    COMMAND = "command"
    OUTPUT = "output"


@dataclass(frozen=True)
class LogLine:
    """One human-readable transcript line."""

    text: str
    level: LogLevel = LogLevel.INFO
    stream: str | None = None


@dataclass(frozen=True)
class StepChange:
    step: StepName
    status: StepStatus


@dataclass(frozen=True)
class SourceProgress:
    """Repository transfer progress, 0-100."""

    percent: float


@dataclass(frozen=True)
class BuildProgress:
    """Build-phase progress derived from the installation script output."""

    phase: str
    percent: int
    current_unit: str = ""
    completed_units: int = 0
    total_units: int = 0


@dataclass(frozen=True)
class UpdateEnd:
    """Terminal event of a run."""

    success: bool
    error: str | None = None
    cancelled: bool = False


ProgressEvent = Union[StepChange, SourceProgress, BuildProgress]
UpdateEvent = Union[LogLine, StepChange, SourceProgress, BuildProgress, UpdateEnd]


def event_to_dict(event: UpdateEvent) -> dict[str, Any]:
    """Convert an event to a JSON-serializable dict tagged with its type."""
    payload: dict[str, Any] = {"type": type(event).__name__}
    for key, value in asdict(event).items():
        payload[key] = value.value if isinstance(value, Enum) else value
    return payload


class Subscription:
    """Queue-backed view of an EventStream.

    Iterating a subscription yields events in publish order and stops after
    the first UpdateEnd, so one ``for`` loop consumes exactly one run.
    """

    def __init__(self, stream: EventStream) -> None:
        self._stream = stream
        self._queue: queue.Queue[UpdateEvent] = queue.Queue()
        self.closed = False

    def put(self, event: UpdateEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> UpdateEvent | None:
        """Return the next event, or None if none arrives within timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[UpdateEvent]:
        """Return every event currently queued without blocking."""
        events: list[UpdateEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._stream.unsubscribe(self)
        self.closed = True

    def __iter__(self) -> Iterator[UpdateEvent]:
        while True:
            event = self._queue.get()
            yield event
            if isinstance(event, UpdateEnd):
                return

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventStream:
    """Fan-out of update events to any number of subscriptions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: UpdateEvent) -> None:
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            subscription.put(event)
