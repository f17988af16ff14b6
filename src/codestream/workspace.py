"""Execution workspaces and project file sources.

Every session runs inside its own scratch directory (a *scope*).  The
:class:`WorkspaceManager` hands out scopes, writes files into them and
removes them again.  Removal is unconditional: :meth:`WorkspaceManager.scoped`
releases the directory on every exit path, and :meth:`WorkspaceManager.release`
retries with backoff when the filesystem refuses, logging instead of raising.

Project files come from a :class:`ProjectSource`.  Two implementations are
provided:

* ``NullProjectSource`` – no project files; the snippet runs alone.
* ``LocalProjectSource`` – reads the files of a project from
  ``<base_dir>/<project_ref>/`` on the local filesystem.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, AsyncIterator, Dict, Set

from .errors import ValidationError


logger = logging.getLogger("codestream.workspace")


class ProjectSource:
    """Protocol for project file providers."""

    def files(self, project_ref: Any) -> Dict[str, bytes]:
        raise NotImplementedError


class NullProjectSource(ProjectSource):
    def files(self, project_ref: Any) -> Dict[str, bytes]:
        return {}


class LocalProjectSource(ProjectSource):
    """Read project files from a local directory tree."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def _project_dir(self, project_ref: Any) -> Path:
        name = str(project_ref)
        if not name or name in {".", ".."} or "/" in name or "\\" in name:
            raise ValidationError(f"Invalid project reference: {project_ref!r}")
        return self.base_dir / name

    def files(self, project_ref: Any) -> Dict[str, bytes]:
        if project_ref is None:
            return {}
        project_dir = self._project_dir(project_ref)
        if not project_dir.is_dir():
            return {}
        files = {}
        for file in project_dir.rglob("*"):
            if file.is_file() and not file.is_symlink():
                files[file.relative_to(project_dir).as_posix()] = file.read_bytes()
        return files


@dataclass
class WorkspaceScope:
    """Handle to a directory exclusively owned by one session."""

    session_id: str
    path: Path
    released: bool = False


class WorkspaceManager:
    """Allocate, populate and remove per-session directories."""

    def __init__(
        self,
        base_dir: str | Path,
        projects: ProjectSource | None = None,
        release_retries: int = 3,
        release_backoff: float = 0.1,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.projects = projects or NullProjectSource()
        self.release_retries = release_retries
        self.release_backoff = release_backoff
        self._live: Set[str] = set()
        self._lock = threading.Lock()

    def acquire(self, session_id: str) -> WorkspaceScope:
        with self._lock:
            if session_id in self._live:
                raise ValidationError(f"Session {session_id} already owns a workspace")
            self._live.add(session_id)
        try:
            path = Path(tempfile.mkdtemp(prefix=f"{session_id}-", dir=str(self.base_dir)))
        except OSError:
            with self._lock:
                self._live.discard(session_id)
            raise
        logger.debug("Acquired workspace %s for session %s", path, session_id)
        return WorkspaceScope(session_id=session_id, path=path)

    def write(self, scope: WorkspaceScope, relative_path: str, content: bytes) -> Path:
        """Write ``content`` to ``relative_path`` inside ``scope``."""
        parts = PurePosixPath(relative_path.replace("\\", "/")).parts
        if not parts or parts[0] == "/" or ".." in parts:
            raise ValidationError(f"Path escapes the workspace: {relative_path!r}")
        dest = scope.path.joinpath(*parts)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        return dest

    def materialize(self, scope: WorkspaceScope, project_ref: Any) -> int:
        """Copy the files of ``project_ref`` into ``scope``; return how many."""
        files = self.projects.files(project_ref)
        for relative_path, content in files.items():
            self.write(scope, relative_path, content)
        if files:
            logger.debug("Copied %d project files into %s", len(files), scope.path)
        return len(files)

    async def release(self, scope: WorkspaceScope) -> None:
        if scope.released:
            return
        scope.released = True
        delay = self.release_backoff
        for attempt in range(self.release_retries + 1):
            try:
                shutil.rmtree(scope.path)
                break
            except FileNotFoundError:
                break
            except OSError as exc:
                if attempt == self.release_retries:
                    logger.error(
                        "Giving up removing workspace %s after %d attempts: %s",
                        scope.path,
                        attempt + 1,
                        exc,
                    )
                    break
                logger.warning(
                    "Failed to remove workspace %s (attempt %d): %s; retrying in %.2fs",
                    scope.path,
                    attempt + 1,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
        with self._lock:
            self._live.discard(scope.session_id)
        logger.debug("Released workspace %s", scope.path)

    @contextlib.asynccontextmanager
    async def scoped(self, session_id: str) -> AsyncIterator[WorkspaceScope]:
        scope = self.acquire(session_id)
        try:
            yield scope
        finally:
            await self.release(scope)

    def live_scopes(self) -> int:
        with self._lock:
            return len(self._live)
