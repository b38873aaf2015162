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

"""Repository preparation: clearing the working copy and fetching a revision.

Clones run through the ProcessRunner rather than git.Repo.clone_from so the
transfer progress lines stream into the transcript and the process stays
cancellable. GitPython is used once the tree is on disk, to read the checked
out revision and to strip credentials from the stored remote URL.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import git

from updatestack.core.context import RevisionSelector, SelectorKind, UpdateRequest
from updatestack.core.exceptions import CheckoutError, ClearDirectoryError, FetchError
from updatestack.core.paths import repository_dir
from updatestack.pipeline.events import LogLevel, LogLine, StepName
from updatestack.process.runner import EventSink, ProcessRunner, check_outcome

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_HOST = "github.com"


@dataclass
class FetchResult:
    """Result of fetching the update repository."""

    repository: str
    path: Path
    selector: RevisionSelector
    url: str
    revision: str | None = None


class RepositoryPreparer:
    """Clears and fetches the local working copy of the update repository."""

    def __init__(
        self,
        runner: ProcessRunner,
        emit: EventSink | None = None,
        host: str = DEFAULT_REMOTE_HOST,
        on_progress_line: Callable[[str], object] | None = None,
    ) -> None:
        """Initialize the preparer.

        Args:
            runner: Runner used for the git commands.
            emit: Sink for transcript lines.
            host: Host serving the repository over HTTPS.
            on_progress_line: Receives every clone output line, typically
                SourceProgressParser.feed.
        """
        self.runner = runner
        self.host = host
        self._emit = emit
        self._on_progress_line = on_progress_line

    def _log(self, text: str, level: LogLevel = LogLevel.INFO) -> None:
        if self._emit is not None:
            self._emit(LogLine(text=text, level=level))

    def build_url(self, request: UpdateRequest, *, with_token: bool = True) -> str:
        """Build the HTTPS clone URL, with the token as credentials if set."""
        path = f"{self.host}/{request.owner}/{request.repository}.git"
        if with_token and request.token:
            return f"https://{request.token}@{path}"
        return f"https://{path}"

    def clear(self, path: Path, root: Path) -> None:
        """Remove the working copy at path if it exists.

        Only a direct child of root is ever removed.

        Raises:
            ClearDirectoryError: If path is not a direct child of root, or the
                tree could not be removed.
        """
        if path.name in ("", ".", "..") or path.parent.resolve() != root.resolve():
            self._log(f"Refusing to delete {path}: not inside {root}", LogLevel.ERROR)
            raise ClearDirectoryError(message=f"Refusing to delete {path}: not inside {root}")
        if not path.exists() and not path.is_symlink():
            self._log(f"No existing repository found at {path}, nothing to delete")
            return
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            self._log(f"Error: {e}", LogLevel.ERROR)
            raise ClearDirectoryError(message=f"Failed to delete {path}: {e}") from e
        self._log(f"Deleted existing repository at {path}")

    def clone_args(self, url: str, selector: RevisionSelector, dest: Path) -> list[str]:
        args = ["clone", "--progress"]
        if selector.kind in (SelectorKind.TAG, SelectorKind.BRANCH):
            args += ["--branch", selector.value, "--single-branch"]
        return [*args, url, str(dest)]

    def fetch(self, request: UpdateRequest, root: Path) -> FetchResult:
        """Clone the requested revision into ``root/<repository>``.

        The selector is validated before anything is spawned.

        Raises:
            NoRevisionSelectorError: If the request names no revision.
            AmbiguousRevisionSelectorError: If it names more than one.
            FetchError: If the clone failed.
            CheckoutError: If the clone worked but the commit checkout failed.
            CancelledByUserError: If the clone or checkout was cancelled.
            ProcessSpawnError: If git could not be started.
        """
        selector = request.selector()
        dest = repository_dir(root, request.repository)
        url = self.build_url(request)
        secrets = [request.token] if request.token else []

        if selector.kind == SelectorKind.TAG:
            self._log(f"Cloning tag: {selector.value}")
        elif selector.kind == SelectorKind.BRANCH:
            self._log(f"Cloning branch: {selector.value}")
        else:
            self._log(f"Cloning repository, will checkout commit: {selector.value}")

        outcome = self.runner.run(
            "git",
            self.clone_args(url, selector, dest),
            root,
            step=StepName.FETCH_SOURCE,
            on_line=self._on_progress_line,
            secrets=secrets,
        )
        check_outcome(outcome, lambda o: self._clone_failed(o.error))

        if selector.kind == SelectorKind.COMMIT:
            outcome = self.runner.run(
                "git",
                ["checkout", selector.value],
                dest,
                step=StepName.FETCH_SOURCE,
                secrets=secrets,
            )
            check_outcome(outcome, lambda o: self._checkout_failed(selector.value, o.error))
            self._log(f"Successfully checked out commit: {selector.value}", LogLevel.SUCCESS)

        result = FetchResult(
            repository=request.repository,
            path=dest,
            selector=selector,
            url=self.build_url(request, with_token=False),
        )
        result.revision = self._finish_clone(dest, result.url, scrub_credentials=bool(request.token))
        self._log("Repository cloned successfully", LogLevel.SUCCESS)
        return result

    def _clone_failed(self, detail: str) -> FetchError:
        self._log("Failed to clone repository", LogLevel.ERROR)
        return FetchError(message=f"Failed to clone repository: {detail}")

    def _checkout_failed(self, commit: str, detail: str) -> CheckoutError:
        self._log(f"Failed to checkout commit: {commit}", LogLevel.ERROR)
        return CheckoutError(message=f"Failed to checkout commit: {commit} ({detail})", commit=commit)

    def _finish_clone(self, dest: Path, anonymous_url: str, scrub_credentials: bool) -> str | None:
        """Read HEAD and drop the token from the stored origin URL."""
        try:
            repo = git.Repo(dest)
            if scrub_credentials:
                repo.remote("origin").set_url(anonymous_url)
            return repo.head.commit.hexsha
        except (git.GitError, ValueError) as e:
            logger.warning("Could not inspect cloned repository %s: %s", dest, e)
            return None
