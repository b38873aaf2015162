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

"""Git transfer progress parsing.

Object transfer fills the first 80% of the fetch bar and delta resolution
the remaining 20%.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable

from updatestack.pipeline.events import SourceProgress

RECEIVING_PATTERN = re.compile(r"Receiving objects:\s*(\d+)%")
RESOLVING_PATTERN = re.compile(r"Resolving deltas:\s*(\d+)%")

# Integer shares keep the arithmetic exact (45% receiving -> 36.0)
RECEIVING_SHARE_PCT = 80
RESOLVING_SHARE_PCT = 20


def parse_source_line(line: str) -> float | None:
    """Map one git progress line to an overall fetch percentage.

    Returns None for lines that carry no transfer progress.
    """
    match = RECEIVING_PATTERN.search(line)
    if match:
        return int(match.group(1)) * RECEIVING_SHARE_PCT / 100
    match = RESOLVING_PATTERN.search(line)
    if match:
        return RECEIVING_SHARE_PCT + int(match.group(1)) * RESOLVING_SHARE_PCT / 100
    return None


class SourceProgressParser:
    """Stateful wrapper that keeps fetch progress from moving backwards."""

    def __init__(self, emit: Callable[[SourceProgress], None]) -> None:
        self._emit = emit
        self._lock = threading.Lock()
        self.max_percent = 0.0

    def reset(self) -> None:
        with self._lock:
            self.max_percent = 0.0

    def feed(self, line: str) -> SourceProgress | None:
        percent = parse_source_line(line)
        if percent is None:
            return None
        # Emit under the lock so concurrent readers publish in order.
        with self._lock:
            percent = min(100.0, max(percent, self.max_percent))
            self.max_percent = percent
            event = SourceProgress(percent=percent)
            self._emit(event)
        return event
