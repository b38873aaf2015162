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

"""In-memory terminal transcript of an update run."""

from __future__ import annotations

import threading
from collections import deque

MAX_TRANSCRIPT_LINES = 10000


class Transcript:
    """Bounded list of terminal lines.

    A line equal to the one just before it is dropped (git repaints its
    progress lines many times), and only the newest lines are kept.
    """

    def __init__(self, max_lines: int = MAX_TRANSCRIPT_LINES) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()

    def append(self, line: str) -> bool:
        with self._lock:
            if self._lines and self._lines[-1] == line:
                return False
            self._lines.append(line)
            return True

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    @property
    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)
