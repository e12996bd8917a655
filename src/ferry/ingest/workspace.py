"""WorkspaceManager — scoped per-session directories under a shared root."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from ferry.exceptions import StorageIOError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """Creates and reclaims ``{root}/{session_id}/`` workspaces.

    A workspace is exclusively owned by one job.  :meth:`acquire` is the
    only way processing code obtains one, and it removes the directory on
    every exit path.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._active: set[str] = set()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._active)

    def path_for(self, session_id: str) -> Path:
        """Return the workspace path for *session_id* (not created)."""
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            msg = f"Invalid session id for workspace: {session_id!r}"
            raise ValueError(msg)
        return self._root / session_id

    @asynccontextmanager
    async def acquire(self, session_id: str) -> AsyncIterator[Path]:
        """Create a fresh workspace for *session_id* and release it on exit."""
        path = self.path_for(session_id)
        if session_id in self._active:
            msg = f"Workspace for session {session_id} is already in use"
            raise StorageIOError(msg)
        try:
            await asyncio.to_thread(_recreate, path)
        except OSError as e:
            msg = f"Workspace unavailable at {path}: {e}"
            raise StorageIOError(msg) from e

        self._active.add(session_id)
        logger.debug("Acquired workspace %s", path)
        try:
            yield path
        finally:
            self._active.discard(session_id)
            await self.release(session_id)

    async def release(self, session_id: str) -> bool:
        """Remove the workspace directory.  Returns True if it existed."""
        path = self.path_for(session_id)
        if not path.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, path, True)
        logger.debug("Released workspace %s", path)
        return True

    async def sweep_stale(self, older_than: float) -> list[str]:
        """Remove inactive workspaces last modified more than *older_than* seconds ago."""
        if not self._root.exists():
            return []
        cutoff = time.time() - older_than
        removed: list[str] = []
        for child in sorted(self._root.iterdir()):
            if not child.is_dir() or child.name in self._active:
                continue
            try:
                mtime = child.stat().st_mtime
            except OSError:
                continue
            if mtime < cutoff:
                await asyncio.to_thread(shutil.rmtree, child, True)
                removed.append(child.name)
        if removed:
            logger.warning("Swept %d stale workspaces: %s", len(removed), ", ".join(removed))
        return removed


def _recreate(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
