"""Per-job workspace directories.

Each job gets exactly one fresh directory, named only from its opaque job
id, under a shared root. The directory holds the source file, the compiled
artifact and whatever the program writes; release() removes the whole tree.

Release is idempotent and never raises. Removal failures are logged at
ERROR and reported through the return value only.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiofiles.os

from compile_sandbox import constants
from compile_sandbox._logging import get_logger
from compile_sandbox.exceptions import ResourceError
from compile_sandbox.resource_cleanup import cleanup_directory, run_uncancellable

logger = get_logger(__name__)

_JOB_ID_RE = re.compile(r"^[0-9a-f]{32}$")


class WorkspaceManager:
    """Allocates and tears down isolated job directories under one root.

    Attributes:
        root: Parent directory of all job workspaces.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._live: dict[str, Path] = {}

    @property
    def live_count(self) -> int:
        """Number of workspaces acquired and not yet released."""
        return len(self._live)

    def path_for(self, job_id: str) -> Path:
        """Directory a job's workspace lives in (whether or not it exists)."""
        if not _JOB_ID_RE.match(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return self.root / f"{constants.WORKSPACE_DIR_PREFIX}{job_id}"

    async def start(self) -> int:
        """Create the root directory and remove orphans from a previous process.

        Returns:
            Number of orphaned workspaces removed

        Raises:
            ResourceError: Root directory can't be created
        """
        try:
            await aiofiles.os.makedirs(self.root, mode=0o700, exist_ok=True)
        except OSError as e:
            raise ResourceError(
                f"Cannot create workspace root {self.root}: {e}",
                context={"root": str(self.root), "error_type": type(e).__name__},
            ) from e
        return await self.sweep_orphans()

    async def sweep_orphans(self) -> int:
        """Remove job directories under root that no live job owns.

        Only entries with the workspace prefix are touched, so a root shared
        with other files is safe.
        """
        try:
            entries = await aiofiles.os.listdir(self.root)
        except FileNotFoundError:
            return 0

        owned = {path.name for path in self._live.values()}
        orphans = [
            self.root / name
            for name in entries
            if name.startswith(constants.WORKSPACE_DIR_PREFIX) and name not in owned
        ]
        if not orphans:
            return 0

        results = await asyncio.gather(
            *(cleanup_directory(path, context_id=path.name, description="orphaned workspace") for path in orphans)
        )
        removed = sum(results)
        logger.info(
            "Swept orphaned workspaces",
            extra={"root": str(self.root), "found": len(orphans), "removed": removed},
        )
        return removed

    async def acquire(self, job_id: str) -> Path:
        """Create a fresh, empty directory owned by job_id.

        The directory must not exist yet: a name collision is an error, never
        a shared directory.

        Raises:
            ResourceError: Directory can't be created (exists, disk full, read-only, ...)
        """
        path = self.path_for(job_id)
        if job_id in self._live:
            raise ResourceError(
                f"Workspace already acquired for job {job_id}",
                context={"job_id": job_id, "path": str(path)},
            )
        try:
            await aiofiles.os.mkdir(path, mode=0o700)
        except OSError as e:
            raise ResourceError(
                f"Cannot create workspace for job {job_id}: {e}",
                context={"job_id": job_id, "path": str(path), "error_type": type(e).__name__},
            ) from e

        self._live[job_id] = path
        logger.debug("Workspace acquired", extra={"job_id": job_id, "path": str(path)})
        return path

    async def release(self, job_id: str) -> bool:
        """Remove the job's workspace tree. Idempotent, never raises.

        Returns:
            True if the directory is gone, False if removal failed (logged)
        """
        path = self._live.pop(job_id, None)
        if path is None:
            logger.debug("Workspace already released (idempotent)", extra={"job_id": job_id})
            return True
        return await cleanup_directory(path, context_id=job_id)

    @asynccontextmanager
    async def workspace(self, job_id: str) -> AsyncIterator[Path]:
        """acquire() on entry, release() on every exit path including cancellation."""
        path = await self.acquire(job_id)
        try:
            yield path
        finally:
            await run_uncancellable(self.release(job_id))
