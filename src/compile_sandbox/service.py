"""CompileService: the public entry point of the compile-and-run pipeline.

Wires the concurrency gate, job controller, workspace manager and result
reporter together. One instance is shared by every request of a process.

Example:
    ```python
    from compile_sandbox import CompileService

    async with CompileService() as service:
        response = await service.run(source, logical_name="sort.cpp")
        print(response.ok, response.stdout)
    ```
"""

from __future__ import annotations

import asyncio
from types import TracebackType
from typing import Self

from compile_sandbox._logging import get_logger
from compile_sandbox.admission import AdmissionGate, GateSnapshot
from compile_sandbox.config import SandboxConfig
from compile_sandbox.controller import JobController
from compile_sandbox.exceptions import SourceValidationError
from compile_sandbox.job import Job
from compile_sandbox.models import CompileRequest, CompileResponse, ErrorKind, JobState
from compile_sandbox.reporter import build_response
from compile_sandbox.system_probes import ToolchainInfo, probe_toolchain
from compile_sandbox.toolchain import ToolchainInvoker
from compile_sandbox.workspace import WorkspaceManager

logger = get_logger(__name__)


class CompileService:
    """Compile and run single-file C++ programs in isolated, bounded jobs.

    Lifecycle: start() (or ``async with``) creates the workspace root and
    sweeps orphaned workspaces left by a crashed process. run() may be
    called concurrently from any number of tasks; the gate bounds how many
    proceed at once.
    """

    def __init__(self, config: SandboxConfig | None = None) -> None:
        self.config = config or SandboxConfig()
        self.workspaces = WorkspaceManager(self.config.get_workspace_root())
        self.gate = AdmissionGate(
            self.config.max_concurrent_jobs,
            mode=self.config.admission_mode,
            max_queue_length=self.config.max_queue_length,
            queue_timeout=self.config.queue_timeout_seconds,
        )
        self.controller = JobController(self.config, self.workspaces, ToolchainInvoker(self.config))
        self._active: dict[str, Job] = {}
        self._started = False

    @property
    def active_jobs(self) -> int:
        """Jobs created and not yet reported (queued or in flight)."""
        return len(self._active)

    async def start(self) -> None:
        """Create the workspace root and remove orphans. Idempotent."""
        if self._started:
            return
        removed = await self.workspaces.start()
        toolchain = await probe_toolchain(self.config.compiler)
        if not toolchain.available:
            logger.warning(
                "Compiler not available; compile requests will fail with toolchain_unavailable",
                extra={"compiler": self.config.compiler},
            )
        self._started = True
        logger.info(
            "Compile service started",
            extra={
                "workspace_root": str(self.workspaces.root),
                "orphans_removed": removed,
                "max_concurrent_jobs": self.config.max_concurrent_jobs,
                "admission_mode": self.config.admission_mode,
            },
        )

    async def stop(self) -> None:
        if self._active:
            logger.warning("Compile service stopping with jobs in flight", extra={"count": len(self._active)})
        self._started = False

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def validate(self, source_text: str) -> None:
        """Reject source that can never compile before it costs a slot.

        Raises:
            SourceValidationError: Empty, contains NUL bytes, or too large
        """
        if not source_text or not source_text.strip():
            raise SourceValidationError("No code provided")
        if "\x00" in source_text:
            raise SourceValidationError("Source contains NUL bytes")
        size = len(source_text.encode("utf-8"))
        if size > self.config.max_source_bytes:
            raise SourceValidationError(
                f"Source too large: {size} bytes (limit {self.config.max_source_bytes})",
                context={"size": size, "limit": self.config.max_source_bytes},
            )

    async def run(self, source_text: str, logical_name: str | None = None) -> CompileResponse:
        """Compile and execute one program.

        Args:
            source_text: C++ source code
            logical_name: Client-side file name; only echoed back as display_name

        Returns:
            CompileResponse. Compile errors, non-zero exits and timeouts are
            reported here, not raised.

        Raises:
            SourceValidationError: Source rejected before admission
            BusyError: Gate full (reject mode / queue full) or queue wait expired
            asyncio.CancelledError: Caller cancelled; the job was aborted and
                its workspace released
        """
        self.validate(source_text)
        if not self._started:
            await self.start()

        job = Job(
            CompileRequest(source_text=source_text, logical_name=logical_name),
            max_output_bytes=self.config.max_output_bytes,
        )
        self._active[job.id] = job
        try:
            async with self.gate.slot(job.id):
                await self.controller.execute(job)
            # Slot is free here; serialization happens outside the gate
        except asyncio.CancelledError:
            if not job.is_terminal:
                # Dropped while still waiting in the admission queue
                job.fail(JobState.ABORTED, ErrorKind.ABORTED, "Job cancelled before admission")
                logger.info("Job cancelled while queued", extra={"job_id": job.id})
            raise
        finally:
            self._active.pop(job.id, None)
        return build_response(job)

    def snapshot(self) -> GateSnapshot:
        return self.gate.snapshot()

    async def toolchain(self) -> ToolchainInfo:
        """Compiler availability and version (cached probe)."""
        return await probe_toolchain(self.config.compiler)
