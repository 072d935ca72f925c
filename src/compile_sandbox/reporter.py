"""Result reporter: terminal Job -> CompileResponse.

Pure function of the job's terminal state and buffers. It never touches
process handles or the workspace, so it cannot race with cleanup.
"""

from __future__ import annotations

import signal

from compile_sandbox.exceptions import InvalidStateTransitionError
from compile_sandbox.job import Job
from compile_sandbox.models import CompileResponse, ErrorKind, JobState, Stage


def _signal_name(exit_code: int) -> str:
    try:
        return signal.Signals(-exit_code).name
    except ValueError:
        return f"signal {-exit_code}"


def _describe(job: Job, stage: Stage, exit_code: int | None) -> str | None:
    """Human-readable explanation, or None when stdout/stderr say it all."""
    if job.error_kind in (ErrorKind.RESOURCE_ERROR, ErrorKind.TOOLCHAIN_UNAVAILABLE, ErrorKind.ABORTED):
        return job.error_message
    if job.error_kind == ErrorKind.TIMED_OUT:
        return job.error_message or f"Time limit exceeded during {stage.value}"
    if job.error_kind == ErrorKind.COMPILE_FAILED:
        return "Compilation failed"
    if job.error_kind == ErrorKind.RUN_FAILED and exit_code is not None:
        if exit_code < 0:
            return f"Program terminated by {_signal_name(exit_code)}"
        return f"Program exited with code {exit_code}"
    return None


def build_response(job: Job) -> CompileResponse:
    """Map a terminal job to the stable response contract.

    stage is "run" once the program was started, "compile" otherwise.
    stdout/stderr come from the program if it ran, from the compiler if not,
    so compiler diagnostics are never mixed with program output.

    Raises:
        InvalidStateTransitionError: Job is not terminal yet
    """
    if not job.is_terminal:
        raise InvalidStateTransitionError(
            f"Cannot report job in non-terminal state {job.state.value}",
            context={"job_id": job.id, "state": job.state.value},
        )

    if job.run_stdout is not None and job.run_stderr is not None:
        stage = Stage.RUN
        out, err = job.run_stdout, job.run_stderr
        exit_code = job.run_exit_code
    else:
        stage = Stage.COMPILE
        out, err = job.compile_stdout, job.compile_stderr
        exit_code = job.compile_exit_code

    truncated = any(
        buf is not None and buf.truncated
        for buf in (job.compile_stdout, job.compile_stderr, job.run_stdout, job.run_stderr)
    )

    return CompileResponse(
        ok=job.state == JobState.COMPLETED,
        stage=stage,
        stdout=out.text(),
        stderr=err.text(),
        exit_code=exit_code,
        truncated=truncated,
        error=job.error_kind,
        message=_describe(job, stage, exit_code),
        job_id=job.id,
        state=job.state,
        display_name=job.display_name,
        duration_ms=job.duration_ms,
    )
