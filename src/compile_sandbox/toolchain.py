"""Toolchain invoker: runs the compiler and the compiled program.

Both are spawned the same way:

- argument vector, never a shell (no interpolation of anything)
- own session / process group (start_new_session=True), so the whole tree
  can be signalled at once
- stdin from /dev/null, stdout/stderr drained concurrently into capped buffers
- a race between "process exited" and "deadline elapsed"; losing the race
  SIGKILLs the process group and every descendant
- after a normal exit the group is still swept, so background grandchildren
  never outlive their job

A spawn failure (missing binary, permission denied) raises
ToolchainUnavailableError. A non-zero exit is a normal outcome, as is a
timeout. Neither process is ever retried.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import aiofiles

from compile_sandbox import constants
from compile_sandbox._logging import get_logger
from compile_sandbox.config import SandboxConfig
from compile_sandbox.exceptions import ResourceError, ToolchainUnavailableError
from compile_sandbox.limits import ProcessLimits
from compile_sandbox.platform_utils import ProcessWrapper
from compile_sandbox.resource_cleanup import cleanup_process, run_uncancellable
from compile_sandbox.subprocess_utils import CappedOutput, capture_process_output
from compile_sandbox.system_probes import probe_unshare_net

logger = get_logger(__name__)

_UNSHARE_NET_PREFIX: tuple[str, ...] = ("unshare", "--user", "--map-root-user", "--net", "--")


@dataclass(frozen=True)
class ProcessOutcome:
    """How one child process ended.

    Attributes:
        exit_code: Exit status; negative for death by signal. None if the
            process was never spawned because the deadline had already passed.
        timed_out: The deadline won the race and the tree was killed.
        duration_ms: Wall-clock time from spawn to reap.
    """

    exit_code: int | None
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class ToolchainInvoker:
    """Spawns compiler and program processes for jobs under one configuration."""

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config
        self._compile_limits = ProcessLimits.for_compiler(config)
        self._run_limits = ProcessLimits.for_program(config)

    def compile_argv(self) -> list[str]:
        """Compiler argument vector, relative to the workspace."""
        return [
            self._config.compiler,
            *self._config.compiler_flags,
            "-o",
            constants.EXECUTABLE_FILENAME,
            constants.SOURCE_FILENAME,
        ]

    async def run_argv(self, executable: Path) -> list[str]:
        """Program argument vector, wrapped in a network namespace when enabled."""
        argv = [str(executable)]
        if self._config.isolate_network and await probe_unshare_net():
            return [*_UNSHARE_NET_PREFIX, *argv]
        return argv

    @staticmethod
    def _child_env(workspace: Path) -> dict[str, str]:
        """Minimal environment; temp files land in the workspace."""
        return {
            "PATH": os.environ.get("PATH", os.defpath),
            "LANG": "C.UTF-8",
            "HOME": str(workspace),
            "TMPDIR": str(workspace),
        }

    async def write_source(self, source_text: str, workspace: Path) -> Path:
        """Write source text verbatim to the workspace's single source file.

        Raises:
            ResourceError: The file can't be written
        """
        source_path = workspace / constants.SOURCE_FILENAME
        try:
            async with aiofiles.open(source_path, "wb") as f:
                await f.write(source_text.encode("utf-8"))
        except OSError as e:
            raise ResourceError(
                f"Cannot write source file: {e}",
                context={"path": str(source_path), "error_type": type(e).__name__},
            ) from e
        return source_path

    async def compile(
        self,
        source_text: str,
        workspace: Path,
        deadline: float,
        *,
        job_id: str,
        stdout: CappedOutput,
        stderr: CappedOutput,
    ) -> ProcessOutcome:
        """Write the source and run the compiler inside the workspace.

        The compiler runs under memory and file-size rlimits.

        Args:
            source_text: Program text, written byte-for-byte (UTF-8)
            workspace: The job's directory (cwd of the compiler)
            deadline: time.monotonic() instant after which the compiler is killed
            job_id: For log correlation
            stdout: Sink for compiler stdout
            stderr: Sink for compiler diagnostics

        Raises:
            ToolchainUnavailableError: Compiler could not be spawned
            ResourceError: Source file could not be written
        """
        await self.write_source(source_text, workspace)
        return await self._execute(
            self.compile_argv(),
            cwd=workspace,
            deadline=deadline,
            name="compiler",
            job_id=job_id,
            stdout=stdout,
            stderr=stderr,
            preexec_fn=self._compile_limits.preexec_fn(),
        )

    async def run(
        self,
        executable: Path,
        deadline: float,
        *,
        job_id: str,
        stdout: CappedOutput,
        stderr: CappedOutput,
    ) -> ProcessOutcome:
        """Execute the compiled artifact with rlimits applied.

        The program's cwd is the directory holding the executable.

        Raises:
            ToolchainUnavailableError: Program could not be spawned
        """
        return await self._execute(
            await self.run_argv(executable),
            cwd=executable.parent,
            deadline=deadline,
            name="program",
            job_id=job_id,
            stdout=stdout,
            stderr=stderr,
            preexec_fn=self._run_limits.preexec_fn(),
        )

    async def _execute(  # noqa: PLR0913
        self,
        argv: list[str],
        *,
        cwd: Path,
        deadline: float,
        name: str,
        job_id: str,
        stdout: CappedOutput,
        stderr: CappedOutput,
        preexec_fn: Callable[[], None] | None = None,
    ) -> ProcessOutcome:
        if deadline - time.monotonic() <= 0:
            logger.info(f"Deadline passed before {name} spawn", extra={"job_id": job_id})
            return ProcessOutcome(exit_code=None, timed_out=True)

        started = time.monotonic()
        try:
            proc = ProcessWrapper(
                await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=cwd,
                    env=self._child_env(cwd),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,  # Own process group for tree kill
                    preexec_fn=preexec_fn,
                )
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise ToolchainUnavailableError(
                f"Failed to start {name} {argv[0]!r}: {e}",
                binary=argv[0],
                context={"job_id": job_id, "error_type": type(e).__name__},
            ) from e

        logger.debug(f"{name} started", extra={"job_id": job_id, "pid": proc.pid, "argv": argv})
        capture = asyncio.create_task(capture_process_output(proc, stdout, stderr), name=f"capture-{name}-{job_id}")
        timed_out = False
        try:
            try:
                await proc.wait_with_timeout(max(0.0, deadline - time.monotonic()))
            except TimeoutError:
                timed_out = True
                logger.info(
                    f"{name} exceeded deadline, killing process tree",
                    extra={"job_id": job_id, "pid": proc.pid},
                )
                await cleanup_process(proc, name, job_id, term_timeout=0)

            # Readers hit EOF once every holder of the pipes is gone; a
            # grandchild that kept them open is cut off after the grace period.
            await asyncio.wait({capture}, timeout=constants.OUTPUT_DRAIN_GRACE_SECONDS)
        finally:
            await run_uncancellable(self._reap(proc, capture, name=name, job_id=job_id))

        outcome = ProcessOutcome(
            exit_code=proc.returncode,
            timed_out=timed_out,
            duration_ms=round((time.monotonic() - started) * 1000),
        )
        logger.debug(
            f"{name} finished",
            extra={
                "job_id": job_id,
                "exit_code": outcome.exit_code,
                "timed_out": timed_out,
                "duration_ms": outcome.duration_ms,
                "stdout_bytes": len(stdout),
                "stderr_bytes": len(stderr),
            },
        )
        return outcome

    @staticmethod
    async def _reap(
        proc: ProcessWrapper,
        capture: asyncio.Task[None],
        *,
        name: str,
        job_id: str,
    ) -> None:
        """Kill whatever is left of the tree, then settle the reader task."""
        await cleanup_process(proc, name, job_id, term_timeout=0)
        if not capture.done():
            # Pipes close once the killed tree is gone
            await asyncio.wait({capture}, timeout=constants.OUTPUT_DRAIN_GRACE_SECONDS)
        if not capture.done():
            capture.cancel()
        try:
            await capture
        except asyncio.CancelledError:
            logger.warning(f"{name} output reader cancelled before EOF", extra={"job_id": job_id})
        except Exception as e:
            logger.warning(
                f"{name} output reader failed",
                extra={"job_id": job_id, "error": str(e), "error_type": type(e).__name__},
            )
