"""Shared pytest fixtures for compile-sandbox tests."""

import os
import shutil
import stat
import sys
import textwrap
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from compile_sandbox.config import SandboxConfig
from compile_sandbox.platform_utils import HostOS, detect_host_os
from compile_sandbox.service import CompileService
from compile_sandbox.system_probes import _probe_cache

# ============================================================================
# Skip Markers
# ============================================================================

# Scenario tests that need a real C++ toolchain
skip_unless_compiler = pytest.mark.skipif(
    shutil.which("g++") is None,
    reason="Requires g++ on PATH",
)

# Process groups, rlimits and /proc are only exercised on Linux
skip_unless_linux = pytest.mark.skipif(
    detect_host_os() != HostOS.LINUX,
    reason="This test requires Linux (process groups, rlimits)",
)

# ============================================================================
# Fake Compiler
# ============================================================================
#
# A Python script standing in for g++. It is invoked exactly like the real
# compiler ("<flags> -o main main.cpp") and "compiles" by turning the source
# text, which the tests write in Python, into an executable script.
#
# Directives on the first line of the source steer it:
#   #error <text>     print a g++-style diagnostic to stderr, exit 1
#   #compile-hang     never finish compiling
#   #compile-noisy N  write N bytes of diagnostics to stderr, then succeed

FAKE_COMPILER = textwrap.dedent(
    """\
    import os
    import sys
    import time

    args = sys.argv[1:]
    output = args[args.index("-o") + 1]
    source_path = args[-1]
    with open(source_path, encoding="utf-8") as f:
        source = f.read()
    first = source.splitlines()[0] if source else ""

    if first.startswith("#error"):
        sys.stderr.write(f"{source_path}:1:1: error: {first[6:].strip() or 'expected ;'}\\n")
        sys.exit(1)
    if first.startswith("#compile-hang"):
        while True:
            time.sleep(1)
    if first.startswith("#compile-noisy"):
        sys.stderr.write("w" * int(first.split()[1]))

    with open(output, "w", encoding="utf-8") as f:
        f.write("#!" + sys.executable + "\\n" + source)
    os.chmod(output, 0o755)
    """
)


@pytest.fixture
def fake_compiler(tmp_path: Path) -> Path:
    """Path to the fake compiler script."""
    path = tmp_path / "fake_gxx.py"
    path.write_text(FAKE_COMPILER)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def fake_config(fake_compiler: Path, workspace_root: Path) -> SandboxConfig:
    """Pipeline config that compiles with the fake compiler.

    No address-space limit: interpreters reserve far more virtual memory
    than a compiled C++ program.
    """
    return SandboxConfig(
        compiler=sys.executable,
        compiler_flags=(str(fake_compiler),),
        workspace_root=workspace_root,
        max_concurrent_jobs=4,
        job_timeout_seconds=15,
        compile_timeout_seconds=10,
        run_timeout_seconds=5,
        run_memory_limit_mb=None,
    )


@pytest.fixture
async def service(fake_config: SandboxConfig) -> AsyncGenerator[CompileService, None]:
    async with CompileService(fake_config) as svc:
        yield svc


@pytest.fixture
def cpp_config(workspace_root: Path) -> SandboxConfig:
    """Pipeline config for the real g++ scenarios."""
    return SandboxConfig(
        workspace_root=workspace_root,
        job_timeout_seconds=30,
        compile_timeout_seconds=25,
        run_timeout_seconds=3,
    )


# ============================================================================
# Test Utilities
# ============================================================================


def workspace_entries(root: Path) -> list[str]:
    """Job directories currently under a workspace root."""
    if not root.exists():
        return []
    return sorted(name for name in os.listdir(root) if name.startswith("job-"))


@pytest.fixture(autouse=True)
def clear_probe_cache():
    """System probes are cached per process; start every test from scratch."""
    _probe_cache.clear()
    yield
    _probe_cache.clear()
