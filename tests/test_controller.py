"""Tests for JobController: state sequencing, error classification, cleanup.

Every test asserts the workspace is gone afterwards: release is the one
guarantee that must hold on every path.
"""

import asyncio
import signal
from pathlib import Path

import pytest

from compile_sandbox.config import SandboxConfig
from compile_sandbox.controller import JobController
from compile_sandbox.job import Job
from compile_sandbox.models import CompileRequest, ErrorKind, JobState, Stage
from compile_sandbox.toolchain import ProcessOutcome, ToolchainInvoker
from compile_sandbox.workspace import WorkspaceManager
from tests.conftest import skip_unless_linux, workspace_entries


def _job(source: str) -> Job:
    return Job(CompileRequest(source_text=source))


@pytest.fixture
async def workspaces(workspace_root: Path) -> WorkspaceManager:
    manager = WorkspaceManager(workspace_root)
    await manager.start()
    return manager


@pytest.fixture
def controller(fake_config: SandboxConfig, workspaces: WorkspaceManager) -> JobController:
    return JobController(fake_config, workspaces)


def _assert_released(job: Job, workspaces: WorkspaceManager) -> None:
    assert workspaces.live_count == 0
    assert workspace_entries(workspaces.root) == []
    if job.workspace_path is not None:
        assert not job.workspace_path.exists()


# ============================================================================
# Outcomes
# ============================================================================


async def test_completed(controller: JobController, workspaces: WorkspaceManager) -> None:
    job = await controller.execute(_job("print('ok')\n"))
    assert job.state == JobState.COMPLETED
    assert job.history == [
        JobState.QUEUED,
        JobState.PREPARING,
        JobState.COMPILING,
        JobState.RUNNING,
        JobState.COMPLETED,
    ]
    assert job.run_exit_code == 0
    assert job.run_stdout is not None and job.run_stdout.text() == "ok\n"
    assert job.error_kind is None
    _assert_released(job, workspaces)


async def test_compile_failed_never_runs(controller: JobController, workspaces: WorkspaceManager) -> None:
    job = await controller.execute(_job("#error missing semicolon\n"))
    assert job.state == JobState.COMPILE_FAILED
    assert job.error_kind == ErrorKind.COMPILE_FAILED
    assert job.compile_exit_code == 1
    assert len(job.compile_stderr) > 0
    assert not job.run_started
    assert JobState.RUNNING not in job.history
    _assert_released(job, workspaces)


async def test_run_failed_keeps_exit_code(controller: JobController, workspaces: WorkspaceManager) -> None:
    job = await controller.execute(_job("import sys\nprint('partial')\nsys.exit(42)\n"))
    assert job.state == JobState.RUN_FAILED
    assert job.error_kind == ErrorKind.RUN_FAILED
    assert job.run_exit_code == 42
    assert job.run_stdout is not None and job.run_stdout.text() == "partial\n"
    _assert_released(job, workspaces)


async def test_run_timeout(fake_config: SandboxConfig, workspaces: WorkspaceManager) -> None:
    config = fake_config.model_copy(update={"run_timeout_seconds": 0.5})
    controller = JobController(config, workspaces)
    job = await controller.execute(_job("while True:\n    pass\n"))
    assert job.state == JobState.TIMED_OUT
    assert job.error_kind == ErrorKind.TIMED_OUT
    assert job.timed_out_stage == Stage.RUN
    assert job.duration_ms is not None and job.duration_ms < 5000
    _assert_released(job, workspaces)


async def test_compile_timeout(fake_config: SandboxConfig, workspaces: WorkspaceManager) -> None:
    config = fake_config.model_copy(update={"compile_timeout_seconds": 0.5})
    controller = JobController(config, workspaces)
    job = await controller.execute(_job("#compile-hang\n"))
    assert job.state == JobState.TIMED_OUT
    assert job.timed_out_stage == Stage.COMPILE
    assert not job.run_started
    _assert_released(job, workspaces)


async def test_job_deadline_bounds_stage_caps(fake_config: SandboxConfig, workspaces: WorkspaceManager) -> None:
    """The job budget wins over a looser stage cap."""
    config = fake_config.model_copy(update={"job_timeout_seconds": 0.5, "run_timeout_seconds": 60})
    job = await JobController(config, workspaces).execute(_job("import time\ntime.sleep(60)\n"))
    assert job.state == JobState.TIMED_OUT
    assert job.duration_ms is not None and job.duration_ms < 5000


@skip_unless_linux
async def test_run_deadline_beats_smaller_cpu_limit(fake_config: SandboxConfig, workspaces: WorkspaceManager) -> None:
    """A spin loop outliving run_cpu_seconds still ends as a wall-clock timeout."""
    config = fake_config.model_copy(update={"run_cpu_seconds": 1, "run_timeout_seconds": 2.5})
    job = await JobController(config, workspaces).execute(_job("while True:\n    pass\n"))
    assert job.state == JobState.TIMED_OUT
    assert job.error_kind == ErrorKind.TIMED_OUT
    assert job.timed_out_stage == Stage.RUN
    assert job.run_exit_code == -signal.SIGKILL
    assert job.duration_ms is not None and job.duration_ms >= 2000
    _assert_released(job, workspaces)


class _CpuLimitedInvoker(ToolchainInvoker):
    """Program dies from SIGXCPU before the wall-clock deadline."""

    async def run(self, executable, deadline, *, job_id, stdout, stderr):  # noqa: ANN001, ANN201
        return ProcessOutcome(exit_code=-signal.SIGXCPU)


async def test_cpu_limit_signal_is_a_timeout(fake_config: SandboxConfig, workspaces: WorkspaceManager) -> None:
    job = await JobController(fake_config, workspaces, _CpuLimitedInvoker(fake_config)).execute(_job("print(1)"))
    assert job.state == JobState.TIMED_OUT
    assert job.timed_out_stage == Stage.RUN
    assert job.error_message == "Program exceeded its CPU time limit"
    _assert_released(job, workspaces)


# ============================================================================
# Deadline short-circuit
# ============================================================================


class _SlowCompileInvoker(ToolchainInvoker):
    """Compiles "successfully" but only after the job deadline has passed."""

    run_called = False

    async def compile(self, source_text, workspace, deadline, *, job_id, stdout, stderr):  # noqa: ANN001, ANN201
        await asyncio.sleep(0.3)
        return ProcessOutcome(exit_code=0)

    async def run(self, executable, deadline, *, job_id, stdout, stderr):  # noqa: ANN001, ANN201
        self.run_called = True
        return ProcessOutcome(exit_code=0)


async def test_expired_job_never_enters_running(fake_config: SandboxConfig, workspaces: WorkspaceManager) -> None:
    config = fake_config.model_copy(update={"job_timeout_seconds": 0.1})
    invoker = _SlowCompileInvoker(config)
    job = await JobController(config, workspaces, invoker).execute(_job("print(1)"))
    assert job.state == JobState.TIMED_OUT
    assert job.timed_out_stage == Stage.RUN
    assert JobState.RUNNING not in job.history
    assert not invoker.run_called
    _assert_released(job, workspaces)


# ============================================================================
# Operational failures
# ============================================================================


async def test_workspace_failure_aborts(fake_config: SandboxConfig, tmp_path: Path) -> None:
    not_a_dir = tmp_path / "file"
    not_a_dir.write_text("x")
    workspaces = WorkspaceManager(not_a_dir)
    job = await JobController(fake_config, workspaces).execute(_job("print(1)"))
    assert job.state == JobState.ABORTED
    assert job.error_kind == ErrorKind.RESOURCE_ERROR
    assert job.history[-2] == JobState.PREPARING
    assert workspaces.live_count == 0


async def test_missing_compiler_aborts_with_toolchain_unavailable(
    fake_config: SandboxConfig, workspaces: WorkspaceManager
) -> None:
    config = fake_config.model_copy(update={"compiler": "no-such-gxx-binary", "compiler_flags": ()})
    job = await JobController(config, workspaces).execute(_job("int main(){}"))
    assert job.state == JobState.ABORTED
    assert job.error_kind == ErrorKind.TOOLCHAIN_UNAVAILABLE
    assert job.error_message is not None
    assert "Failed to start compilation process" in job.error_message
    assert "no-such-gxx-binary" in job.error_message
    _assert_released(job, workspaces)


class _BrokenInvoker(ToolchainInvoker):
    async def compile(self, *args, **kwargs):  # noqa: ANN002, ANN003, ANN201
        raise RuntimeError("unexpected")


async def test_internal_fault_aborts_and_releases(fake_config: SandboxConfig, workspaces: WorkspaceManager) -> None:
    job = await JobController(fake_config, workspaces, _BrokenInvoker(fake_config)).execute(_job("print(1)"))
    assert job.state == JobState.ABORTED
    assert job.error_kind == ErrorKind.ABORTED
    assert job.error_message == "Internal error: RuntimeError"
    _assert_released(job, workspaces)


# ============================================================================
# Cancellation
# ============================================================================


async def test_cancel_while_running_aborts_and_releases(
    controller: JobController, workspaces: WorkspaceManager
) -> None:
    job = _job("import time\nprint('started', flush=True)\ntime.sleep(600)\n")
    task = asyncio.create_task(controller.execute(job))
    for _ in range(200):
        if job.state == JobState.RUNNING and job.run_stdout is not None and len(job.run_stdout):
            break
        await asyncio.sleep(0.025)
    assert job.state == JobState.RUNNING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert job.state == JobState.ABORTED
    assert job.error_kind == ErrorKind.ABORTED
    _assert_released(job, workspaces)


async def test_terminal_job_cannot_be_executed_again(controller: JobController) -> None:
    from compile_sandbox.exceptions import InvalidStateTransitionError  # noqa: PLC0415

    job = await controller.execute(_job("print(1)"))
    with pytest.raises(InvalidStateTransitionError):
        await controller.execute(job)
