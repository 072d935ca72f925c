"""Resource cleanup utilities for job lifecycle management.

Cleanup operations that log errors but don't raise: a failure to clean up
must never mask the outcome a job already reached.
"""

import asyncio
import logging
import os
import shutil
import stat
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from compile_sandbox import constants
from compile_sandbox._logging import get_logger
from compile_sandbox.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.KILL_TERM_TIMEOUT_SECONDS,
    kill_timeout: float = constants.KILL_WAIT_TIMEOUT_SECONDS,
) -> bool:
    """Force cleanup of a child and its whole process tree (SIGTERM → SIGKILL).

    - Always awaits process.wait() after signalling to prevent zombies
    - term_timeout <= 0 skips the SIGTERM phase (straight to SIGKILL)
    - The group is signalled even when the direct child already exited,
      since orphaned grandchildren may still be holding the group alive
    - Never raises (logs instead)

    Args:
        proc: ProcessWrapper to kill (None safe - returns immediately)
        name: Process name for logging (e.g., "compiler", "program")
        context_id: Context for logging (job_id)
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if process cleaned successfully, False if issues occurred
    """
    if proc is None:
        return True

    try:
        if proc.returncode is None and term_timeout > 0:
            logger.debug(f"Sending SIGTERM to {name} tree", extra={"job_id": context_id, "pid": proc.pid})
            await proc.terminate_tree()
            try:
                await proc.wait_with_timeout(timeout=term_timeout)
            except TimeoutError:
                logger.debug(
                    f"{name} didn't respond to SIGTERM, force killing",
                    extra={"job_id": context_id, "term_timeout": term_timeout},
                )

        # SIGKILL the group unconditionally: catches stragglers after a
        # graceful exit of the direct child as well.
        await proc.kill_tree()

        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"job_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

        logger.debug(
            f"{name} tree reaped",
            extra={"job_id": context_id, "returncode": proc.returncode},
        )
        return True

    except ProcessLookupError:
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"job_id": context_id})
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"job_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


def _make_writable_and_retry(func, path, exc) -> None:  # noqa: ANN001
    """rmtree onexc hook: the program may have chmod'ed entries read-only."""
    if isinstance(exc, FileNotFoundError):
        return
    parent = os.path.dirname(path)
    os.chmod(parent, os.stat(parent).st_mode | stat.S_IRWXU)
    if os.path.isdir(path) and not os.path.islink(path):
        os.chmod(path, os.stat(path).st_mode | stat.S_IRWXU)
    func(path)


async def cleanup_directory(
    path: Path | None,
    context_id: str,
    description: str = "workspace",
) -> bool:
    """Remove a directory tree, including files other processes created in it.

    Silently succeeds if the directory doesn't exist.

    Args:
        path: Directory to remove (None safe - returns immediately)
        context_id: Context for logging (job_id)
        description: Description for logging

    Returns:
        True if the tree is gone, False if removal failed
    """
    if path is None:
        return True

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(constants.WORKSPACE_REMOVE_MAX_ATTEMPTS),
            wait=wait_random_exponential(
                min=constants.WORKSPACE_REMOVE_RETRY_MIN_SECONDS,
                max=constants.WORKSPACE_REMOVE_RETRY_MAX_SECONDS,
            ),
            # ENOTEMPTY and friends: something wrote into the tree mid-removal
            retry=retry_if_exception_type(OSError) & retry_if_not_exception_type(FileNotFoundError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await asyncio.to_thread(shutil.rmtree, path, onexc=_make_writable_and_retry)
        logger.debug(
            f"{description} removed",
            extra={"job_id": context_id, "path": str(path)},
        )
        return True

    except FileNotFoundError:
        logger.debug(
            f"{description} already removed",
            extra={"job_id": context_id, "path": str(path)},
        )
        return True

    except OSError as e:
        logger.error(
            f"{description} removal error",
            extra={"job_id": context_id, "path": str(path), "error": str(e), "error_type": type(e).__name__},
        )
        return False

    except Exception as e:
        logger.error(
            f"{description} cleanup error",
            extra={"job_id": context_id, "path": str(path), "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def run_uncancellable[T](coro: Coroutine[Any, Any, T]) -> T:
    """Run cleanup to completion even if the calling task is cancelled.

    asyncio.shield() alone still raises CancelledError in the caller while the
    shielded work carries on unobserved. Here the caller waits for the work to
    finish and only then re-raises the cancellation.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await task
        raise
