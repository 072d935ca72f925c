"""Job controller: drives one Job from admission to a terminal state.

The whole pipeline is one state machine in one method. Workspace release is
structural (an async context manager around every stage), so there is no
per-branch cleanup: success, compile failure, run failure, timeout, spawn
failure, cancellation and unexpected faults all leave through the same exit.

Deadlines:
    job.deadline = admission + job_timeout_seconds
    stage deadline = min(job.deadline, stage start + stage cap)

A stage is never entered once the job deadline has passed; the job
short-circuits to TIMED_OUT instead. A program stopped by its CPU rlimit
(SIGXCPU) is a timeout too.
"""

from __future__ import annotations

import asyncio
import signal
import time

from compile_sandbox import constants
from compile_sandbox._logging import get_logger
from compile_sandbox.config import SandboxConfig
from compile_sandbox.exceptions import ResourceError, ToolchainUnavailableError
from compile_sandbox.job import Job
from compile_sandbox.models import ErrorKind, JobState, Stage
from compile_sandbox.subprocess_utils import CappedOutput
from compile_sandbox.toolchain import ToolchainInvoker
from compile_sandbox.workspace import WorkspaceManager

logger = get_logger(__name__)


class JobController:
    """Runs admitted jobs through prepare → compile → run."""

    def __init__(
        self,
        config: SandboxConfig,
        workspaces: WorkspaceManager,
        invoker: ToolchainInvoker | None = None,
    ) -> None:
        self._config = config
        self._workspaces = workspaces
        self._invoker = invoker or ToolchainInvoker(config)

    def _stage_deadline(self, job: Job, cap_seconds: float) -> float:
        assert job.deadline is not None
        return min(job.deadline, time.monotonic() + cap_seconds)

    def _time_out(self, job: Job, stage: Stage, detail: str) -> None:
        job.timed_out_stage = stage
        job.fail(JobState.TIMED_OUT, ErrorKind.TIMED_OUT, detail)
        logger.info(
            "Job timed out",
            extra={"job_id": job.id, "stage": stage.value, "elapsed_ms": job.duration_ms},
        )

    async def execute(self, job: Job) -> Job:
        """Run an admitted job to a terminal state.

        The caller holds a gate slot for the duration of this call. On return
        the job is terminal and its workspace has been released.

        Cancellation (client disconnect) kills any running child tree through
        the invoker, moves the job to ABORTED, releases the workspace and
        re-raises CancelledError.

        Returns:
            The same job, now terminal
        """
        job.transition(JobState.PREPARING)
        job.start_clock(self._config.job_timeout_seconds)
        logger.debug("Job admitted", extra={"job_id": job.id, "display_name": job.display_name})

        try:
            async with self._workspaces.workspace(job.id) as workspace:
                job.workspace_path = workspace
                await self._compile_and_run(job)

        except ResourceError as e:
            logger.error("Workspace failure", extra={"job_id": job.id, "error": e.message, **e.context})
            if not job.is_terminal:
                job.fail(JobState.ABORTED, ErrorKind.RESOURCE_ERROR, e.message)

        except ToolchainUnavailableError as e:
            logger.error(
                "Toolchain unavailable",
                extra={"job_id": job.id, "binary": e.binary, "state": job.state.value, "error": e.message},
            )
            if not job.is_terminal:
                job.fail(JobState.ABORTED, ErrorKind.TOOLCHAIN_UNAVAILABLE, self._spawn_failure_message(job))

        except asyncio.CancelledError:
            logger.info("Job cancelled", extra={"job_id": job.id, "state": job.state.value})
            if not job.is_terminal:
                job.fail(JobState.ABORTED, ErrorKind.ABORTED, "Job cancelled before completion")
            raise

        except Exception as e:
            logger.exception("Unexpected error while handling job", extra={"job_id": job.id, "state": job.state.value})
            if not job.is_terminal:
                job.fail(JobState.ABORTED, ErrorKind.ABORTED, f"Internal error: {type(e).__name__}")

        logger.info(
            "Job finished",
            extra={
                "job_id": job.id,
                "state": job.state.value,
                "error_kind": job.error_kind.value if job.error_kind else None,
                "duration_ms": job.duration_ms,
            },
        )
        return job

    def _spawn_failure_message(self, job: Job) -> str:
        if job.state == JobState.COMPILING:
            return (
                "Failed to start compilation process. "
                f"Make sure {self._config.compiler} is installed and available in PATH."
            )
        return "Failed to start the compiled program."

    async def _compile_and_run(self, job: Job) -> None:
        assert job.workspace_path is not None
        workspace = job.workspace_path

        if job.expired:
            self._time_out(job, Stage.COMPILE, "Deadline passed before compilation started")
            return

        job.transition(JobState.COMPILING)
        compiled = await self._invoker.compile(
            job.request.source_text,
            workspace,
            self._stage_deadline(job, self._config.compile_timeout_seconds),
            job_id=job.id,
            stdout=job.compile_stdout,
            stderr=job.compile_stderr,
        )
        job.compile_exit_code = compiled.exit_code

        if compiled.timed_out:
            self._time_out(job, Stage.COMPILE, "Compilation exceeded the time limit")
            return
        if not compiled.ok:
            job.fail(JobState.COMPILE_FAILED, ErrorKind.COMPILE_FAILED)
            logger.debug("Compilation failed", extra={"job_id": job.id, "exit_code": compiled.exit_code})
            return

        if job.expired:
            self._time_out(job, Stage.RUN, "Deadline passed before the program started")
            return

        job.run_stdout = CappedOutput(job.max_output_bytes)
        job.run_stderr = CappedOutput(job.max_output_bytes)
        job.transition(JobState.RUNNING)
        ran = await self._invoker.run(
            workspace / constants.EXECUTABLE_FILENAME,
            self._stage_deadline(job, self._config.run_timeout_seconds),
            job_id=job.id,
            stdout=job.run_stdout,
            stderr=job.run_stderr,
        )
        job.run_exit_code = ran.exit_code

        if ran.timed_out:
            self._time_out(job, Stage.RUN, "Program exceeded the time limit")
        elif ran.exit_code == -signal.SIGXCPU:
            self._time_out(job, Stage.RUN, "Program exceeded its CPU time limit")
        elif ran.exit_code == 0:
            job.transition(JobState.COMPLETED)
        else:
            job.fail(JobState.RUN_FAILED, ErrorKind.RUN_FAILED)
