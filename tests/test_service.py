"""End-to-end tests for CompileService.

The first sections use the fake compiler and run everywhere. The last
section compiles real C++ and is skipped when g++ is not installed.
"""

import asyncio
import textwrap

import pytest

from compile_sandbox.config import SandboxConfig
from compile_sandbox.exceptions import BusyError, SourceValidationError
from compile_sandbox.models import ErrorKind, JobState, Stage
from compile_sandbox.service import CompileService
from tests.conftest import skip_unless_compiler, workspace_entries

# ============================================================================
# Validation
# ============================================================================


@pytest.mark.parametrize("source", ["", "   \n\t  "])
async def test_empty_source_rejected(service: CompileService, source: str) -> None:
    with pytest.raises(SourceValidationError, match="No code provided"):
        await service.run(source)


async def test_nul_bytes_rejected(service: CompileService) -> None:
    with pytest.raises(SourceValidationError, match="NUL"):
        await service.run("int main() {}\x00")


async def test_oversized_source_rejected(fake_config: SandboxConfig) -> None:
    config = fake_config.model_copy(update={"max_source_bytes": 100})
    async with CompileService(config) as service:
        with pytest.raises(SourceValidationError) as exc_info:
            await service.run("x" * 101)
        assert exc_info.value.context["limit"] == 100
        assert service.snapshot().admitted_total == 0


# ============================================================================
# Outcomes
# ============================================================================


async def test_run_returns_program_output(service: CompileService) -> None:
    response = await service.run("print('hello')\n", logical_name="hello.cpp")
    assert response.ok
    assert response.stage == Stage.RUN
    assert response.stdout == "hello\n"
    assert response.display_name == "hello"
    assert response.state == JobState.COMPLETED


async def test_noisy_compiler_output_does_not_block(service: CompileService) -> None:
    """Diagnostics larger than a pipe buffer are drained while the compiler runs."""
    response = await service.run("#compile-noisy 200000\nprint('ran')\n")
    assert response.ok
    assert response.stdout == "ran\n"


async def test_workspace_gone_after_every_outcome(fake_config: SandboxConfig) -> None:
    sources = [
        "print('ok')\n",
        "#error nope\n",
        "import sys\nsys.exit(2)\n",
        "import time\ntime.sleep(60)\n",
    ]
    config = fake_config.model_copy(update={"run_timeout_seconds": 0.5})
    async with CompileService(config) as short:
        responses = await asyncio.gather(*(short.run(s) for s in sources))
    assert [r.state for r in responses] == [
        JobState.COMPLETED,
        JobState.COMPILE_FAILED,
        JobState.RUN_FAILED,
        JobState.TIMED_OUT,
    ]
    assert workspace_entries(config.get_workspace_root()) == []
    assert short.active_jobs == 0


async def test_missing_compiler_reported_not_raised(fake_config: SandboxConfig) -> None:
    config = fake_config.model_copy(update={"compiler": "no-such-compiler-xyz", "compiler_flags": ()})
    async with CompileService(config) as service:
        response = await service.run("int main() {}")
        info = await service.toolchain()
    assert not response.ok
    assert response.error == ErrorKind.TOOLCHAIN_UNAVAILABLE
    assert response.message is not None and "no-such-compiler-xyz" in response.message
    assert not info.available


# ============================================================================
# Isolation between concurrent jobs
# ============================================================================


async def test_concurrent_jobs_see_only_their_own_output(service: CompileService) -> None:
    template = textwrap.dedent(
        """\
        import os, time
        open("mine.txt", "w").write("{tag}")
        time.sleep(0.2)
        print(open("mine.txt").read(), sorted(os.listdir(".")))
        """
    )
    tags = [f"sentinel-{i:02d}" for i in range(8)]
    responses = await asyncio.gather(*(service.run(template.format(tag=t)) for t in tags))

    for tag, response in zip(tags, responses, strict=True):
        assert response.ok, response.stderr
        assert response.stdout.startswith(tag)
        assert "['main', 'main.cpp', 'mine.txt']" in response.stdout
        for other in tags:
            if other != tag:
                assert other not in response.stdout
    assert len({r.job_id for r in responses}) == len(tags)
    assert workspace_entries(service.workspaces.root) == []


# ============================================================================
# Admission
# ============================================================================


async def test_in_flight_never_exceeds_capacity(fake_config: SandboxConfig) -> None:
    config = fake_config.model_copy(update={"max_concurrent_jobs": 2})
    async with CompileService(config) as service:
        peak = 0

        async def watch() -> None:
            nonlocal peak
            while True:
                peak = max(peak, service.gate.in_flight, service.workspaces.live_count)
                await asyncio.sleep(0.005)

        watcher = asyncio.create_task(watch())
        try:
            responses = await asyncio.gather(
                *(service.run("import time\ntime.sleep(0.2)\n") for _ in range(6))
            )
        finally:
            watcher.cancel()
        assert all(r.ok for r in responses)
        assert peak == 2
        assert service.snapshot().admitted_total == 6


async def test_reject_mode_returns_busy(fake_config: SandboxConfig) -> None:
    config = fake_config.model_copy(update={"max_concurrent_jobs": 1, "admission_mode": "reject"})
    async with CompileService(config) as service:
        first = asyncio.create_task(service.run("import time\ntime.sleep(1)\n"))
        for _ in range(100):
            if service.gate.in_flight:
                break
            await asyncio.sleep(0.01)

        with pytest.raises(BusyError):
            await service.run("print(1)")
        assert (await first).ok


async def test_cancelled_request_releases_slot_and_workspace(service: CompileService) -> None:
    task = asyncio.create_task(service.run("import time\ntime.sleep(600)\n"))
    for _ in range(200):
        if service.workspaces.live_count and service.gate.in_flight:
            break
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert service.gate.in_flight == 0
    assert service.active_jobs == 0
    assert workspace_entries(service.workspaces.root) == []


async def test_background_child_does_not_turn_exit_into_timeout(fake_config: SandboxConfig) -> None:
    config = fake_config.model_copy(update={"run_timeout_seconds": 3})
    source = (
        "import subprocess, sys\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(600)'])\n"
        "print('parent done')\n"
    )
    async with CompileService(config) as service:
        response = await service.run(source)
    assert response.state == JobState.COMPLETED
    assert response.stdout == "parent done\n"
    assert response.duration_ms is not None and response.duration_ms < 3000


async def test_cancel_while_queued_aborts_job(fake_config: SandboxConfig) -> None:
    config = fake_config.model_copy(update={"max_concurrent_jobs": 1})
    async with CompileService(config) as service:
        first = asyncio.create_task(service.run("import time\ntime.sleep(1)\n"))
        for _ in range(100):
            if service.gate.in_flight:
                break
            await asyncio.sleep(0.01)

        queued = asyncio.create_task(service.run("print('never')\n"))
        for _ in range(100):
            if service.gate.queued:
                break
            await asyncio.sleep(0.01)
        (waiting,) = (job for job in service._active.values() if job.state == JobState.QUEUED)

        queued.cancel()
        with pytest.raises(asyncio.CancelledError):
            await queued
        assert waiting.state == JobState.ABORTED
        assert waiting.error_kind == ErrorKind.ABORTED
        assert service.gate.queued == 0
        assert (await first).ok


async def test_start_sweeps_orphans(fake_config: SandboxConfig) -> None:
    root = fake_config.get_workspace_root()
    root.mkdir(parents=True)
    (root / ("job-" + "a" * 32)).mkdir()
    async with CompileService(fake_config):
        assert workspace_entries(root) == []


# ============================================================================
# Real C++ scenarios
# ============================================================================

SORT_PROGRAM = textwrap.dedent(
    """\
    #include <algorithm>
    #include <iostream>
    #include <vector>

    int main() {
        std::vector<int> v = {3, 1, 4, 1, 5, 9, 2, 6};
        std::sort(v.begin(), v.end());
        std::cout << "Sorted array: ";
        for (int x : v) std::cout << x << " ";
        std::cout << std::endl;
        return 0;
    }
    """
)


@skip_unless_compiler
async def test_cpp_sorted_array(cpp_config: SandboxConfig) -> None:
    async with CompileService(cpp_config) as service:
        response = await service.run(SORT_PROGRAM, logical_name="sort.cpp")
    assert response.ok, response.stderr
    assert response.stdout == "Sorted array: 1 1 2 3 4 5 6 9 \n"
    assert response.exit_code == 0


@skip_unless_compiler
async def test_cpp_missing_semicolon(cpp_config: SandboxConfig) -> None:
    source = "#include <iostream>\nint main() {\n    std::cout << \"hi\"\n    return 0;\n}\n"
    async with CompileService(cpp_config) as service:
        response = await service.run(source)
    assert not response.ok
    assert response.state == JobState.COMPILE_FAILED
    assert response.stage == Stage.COMPILE
    assert "error" in response.stderr
    assert response.exit_code not in (None, 0)


@skip_unless_compiler
async def test_cpp_infinite_loop_times_out(cpp_config: SandboxConfig) -> None:
    async with CompileService(cpp_config) as service:
        response = await service.run("int main() { while (true) {} }\n")
    assert response.state == JobState.TIMED_OUT
    assert response.stage == Stage.RUN
    assert response.duration_ms is not None and response.duration_ms < 30_000


@skip_unless_compiler
async def test_cpp_flood_is_truncated(cpp_config: SandboxConfig) -> None:
    source = textwrap.dedent(
        """\
        #include <cstdio>
        #include <cstring>
        int main() {
            static char line[1024];
            memset(line, 'x', sizeof(line) - 1);
            for (int i = 0; i < 50 * 1024; ++i) puts(line);
            return 0;
        }
        """
    )
    async with CompileService(cpp_config) as service:
        response = await service.run(source)
    assert response.ok
    assert response.truncated
    assert len(response.stdout.encode()) == cpp_config.max_output_bytes


@skip_unless_compiler
async def test_cpp_runtime_crash(cpp_config: SandboxConfig) -> None:
    source = "#include <cstdlib>\nint main() { std::abort(); }\n"
    async with CompileService(cpp_config) as service:
        response = await service.run(source)
    assert response.state == JobState.RUN_FAILED
    assert response.message == "Program terminated by SIGABRT"
