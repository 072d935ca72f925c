"""Pipeline configuration for compile-sandbox.

SandboxConfig holds every knob of the compile-and-run pipeline: admission
capacity and queueing, deadlines, toolchain invocation, output caps and the
resource limits applied to the executed program.

Example:
    ```python
    from compile_sandbox import CompileService, SandboxConfig

    # Default configuration
    async with CompileService() as service:
        response = await service.run('int main() { return 0; }')

    # Custom configuration
    config = SandboxConfig(
        max_concurrent_jobs=8,
        admission_mode="reject",
        run_timeout_seconds=2,
    )
    async with CompileService(config) as service:
        response = await service.run(source)
    ```
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from compile_sandbox import constants


class SandboxConfig(BaseModel):
    """Configuration for CompileService.

    All fields have sensible defaults for local development.

    Attributes:
        max_concurrent_jobs: Jobs allowed between workspace acquisition and
            workspace release at the same time (N). Default: 4.
        admission_mode: "queue" waits for a slot (bounded by max_queue_length
            and queue_timeout_seconds); "reject" fails with BusyError at once.
        max_queue_length: Requests allowed to wait for a slot. Default: 32.
        queue_timeout_seconds: Per-request wait deadline in the queue.
        job_timeout_seconds: Wall-clock budget for compile + run.
        compile_timeout_seconds: Cap for the compiler stage.
        run_timeout_seconds: Cap for the program stage.
        compiler: Compiler binary (name on PATH or absolute path).
        compiler_flags: Flags passed before "-o main main.cpp".
        max_source_bytes: Policy cap on source text size (UTF-8 bytes).
        max_output_bytes: Cap per captured stream; excess is dropped.
        run_memory_limit_mb: RLIMIT_AS for the program (None disables).
        run_cpu_seconds: RLIMIT_CPU for the program (None disables).
        run_max_file_size_mb: RLIMIT_FSIZE for the program (None disables).
        run_max_processes: RLIMIT_NPROC for the program (None disables).
            Counted per user on Linux, so only enable for a dedicated user.
        compile_memory_limit_mb: RLIMIT_AS for the compiler (None disables).
        compile_max_file_size_mb: RLIMIT_FSIZE for the compiler, bounding
            the object file and executable (None disables).
        isolate_network: Run the program in an empty network namespace when
            the host supports unprivileged `unshare --net`.
        workspace_root: Parent directory for per-job workspaces.
            If None: <system temp dir>/compile-sandbox
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    # Concurrency gate
    max_concurrent_jobs: int = Field(
        default=constants.DEFAULT_MAX_CONCURRENT_JOBS,
        ge=1,
        le=256,
        description="Maximum simultaneous in-flight jobs",
    )
    admission_mode: Literal["queue", "reject"] = Field(
        default="queue",
        description="Queue excess requests or reject them with BusyError",
    )
    max_queue_length: int = Field(
        default=constants.DEFAULT_MAX_QUEUE_LENGTH,
        ge=0,
        le=10_000,
        description="Maximum requests waiting for a slot",
    )
    queue_timeout_seconds: float = Field(
        default=constants.DEFAULT_QUEUE_TIMEOUT_SECONDS,
        gt=0,
        le=constants.MAX_TIMEOUT_SECONDS,
        description="How long a queued request waits for a slot",
    )

    # Deadlines
    job_timeout_seconds: float = Field(
        default=constants.DEFAULT_JOB_TIMEOUT_SECONDS,
        gt=0,
        le=constants.MAX_TIMEOUT_SECONDS,
        description="Wall-clock budget for the whole job",
    )
    compile_timeout_seconds: float = Field(
        default=constants.DEFAULT_COMPILE_TIMEOUT_SECONDS,
        gt=0,
        le=constants.MAX_TIMEOUT_SECONDS,
        description="Cap for the compiler stage",
    )
    run_timeout_seconds: float = Field(
        default=constants.DEFAULT_RUN_TIMEOUT_SECONDS,
        gt=0,
        le=constants.MAX_TIMEOUT_SECONDS,
        description="Cap for the program stage",
    )

    # Toolchain
    compiler: str = Field(
        default=constants.DEFAULT_COMPILER,
        min_length=1,
        description="Compiler binary",
    )
    compiler_flags: tuple[str, ...] = Field(
        default=constants.DEFAULT_COMPILER_FLAGS,
        description="Fixed flags passed to the compiler",
    )

    # Input / output caps
    max_source_bytes: int = Field(
        default=constants.MAX_SOURCE_SIZE,
        ge=1,
        description="Maximum source size in bytes",
    )
    max_output_bytes: int = Field(
        default=constants.MAX_OUTPUT_SIZE,
        ge=1,
        description="Maximum captured bytes per stream",
    )

    # Program resource limits
    run_memory_limit_mb: int | None = Field(
        default=constants.DEFAULT_RUN_MEMORY_LIMIT_MB,
        ge=16,
        description="Address-space limit for the program in MB",
    )
    run_cpu_seconds: int | None = Field(
        default=constants.DEFAULT_RUN_CPU_SECONDS,
        ge=1,
        description="CPU time limit for the program",
    )
    run_max_file_size_mb: int | None = Field(
        default=constants.DEFAULT_RUN_MAX_FILE_SIZE_MB,
        ge=1,
        description="Largest file the program may create in MB",
    )
    run_max_processes: int | None = Field(
        default=None,
        ge=1,
        description="Process limit for the program's user",
    )

    # Compiler resource limits
    compile_memory_limit_mb: int | None = Field(
        default=constants.DEFAULT_COMPILE_MEMORY_LIMIT_MB,
        ge=64,
        description="Address-space limit for the compiler in MB",
    )
    compile_max_file_size_mb: int | None = Field(
        default=constants.DEFAULT_COMPILE_MAX_FILE_SIZE_MB,
        ge=1,
        description="Largest file the compiler may write in MB",
    )
    isolate_network: bool = Field(
        default=False,
        description="Run the program without network access when the host allows it",
    )

    # Paths
    workspace_root: Path | None = Field(
        default=None,
        description="Parent directory for per-job workspaces (temp dir if None)",
    )

    def get_workspace_root(self) -> Path:
        """Get the workspace root, defaulting to a directory under the temp dir.

        The directory itself is created by the workspace manager on start.
        """
        if self.workspace_root is not None:
            return self.workspace_root
        return Path(tempfile.gettempdir()) / constants.WORKSPACE_ROOT_DIRNAME
