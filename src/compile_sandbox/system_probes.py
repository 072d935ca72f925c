"""System capability probes for the toolchain and network isolation.

These probes detect host capabilities once and cache the results.
Async probes use a shared cache container to avoid global statements.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass

from compile_sandbox._logging import get_logger
from compile_sandbox.platform_utils import HostOS, detect_host_os

logger = get_logger(__name__)

_PROBE_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class ToolchainInfo:
    """Result of probing a compiler binary."""

    compiler: str
    available: bool
    path: str | None = None
    version: str | None = None


class _ProbeCache:
    """Container for cached system probe results.

    Locks are lazily initialized to ensure they're created in the right
    event loop, and prevent a stampede of identical probe subprocesses when
    many jobs start at once.
    """

    __slots__ = ("_locks", "toolchains", "unshare_net")

    def __init__(self) -> None:
        self.toolchains: dict[str, ToolchainInfo] = {}
        self.unshare_net: bool | None = None
        self._locks: dict[str, asyncio.Lock] = {}

    def get_lock(self, name: str) -> asyncio.Lock:
        """Get or create a lock for the given probe (lazy initialization)."""
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def clear(self) -> None:
        self.toolchains.clear()
        self.unshare_net = None
        self._locks.clear()


_probe_cache = _ProbeCache()


async def probe_toolchain(compiler: str) -> ToolchainInfo:
    """Check that a compiler is on PATH and report its version line (cached).

    Args:
        compiler: Binary name or absolute path

    Returns:
        ToolchainInfo; available is False when the binary can't be found or run
    """
    if (cached := _probe_cache.toolchains.get(compiler)) is not None:
        return cached

    async with _probe_cache.get_lock(f"toolchain:{compiler}"):
        if (cached := _probe_cache.toolchains.get(compiler)) is not None:
            return cached

        path = shutil.which(compiler)
        if path is None:
            logger.warning("Compiler not found on PATH", extra={"compiler": compiler})
            info = ToolchainInfo(compiler=compiler, available=False)
            _probe_cache.toolchains[compiler] = info
            return info

        version: str | None = None
        try:
            proc = await asyncio.create_subprocess_exec(
                path,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_PROBE_TIMEOUT_SECONDS)
            if proc.returncode == 0 and stdout:
                version = stdout.decode(errors="replace").splitlines()[0].strip()
        except (OSError, TimeoutError) as e:
            logger.warning(
                "Compiler version probe failed",
                extra={"compiler": compiler, "error": str(e), "error_type": type(e).__name__},
            )

        info = ToolchainInfo(compiler=compiler, available=True, path=path, version=version)
        logger.info("Compiler detected", extra={"compiler": compiler, "path": path, "version": version})
        _probe_cache.toolchains[compiler] = info
        return info


async def probe_unshare_net() -> bool:
    """Probe for unprivileged network-namespace support (cached).

    Tests ``unshare --user --map-root-user --net -- true``. This needs
    unprivileged user namespaces (or root); containers commonly forbid it.

    Returns:
        True if programs can be started without network access
    """
    if _probe_cache.unshare_net is not None:
        return _probe_cache.unshare_net

    async with _probe_cache.get_lock("unshare_net"):
        if _probe_cache.unshare_net is not None:
            return _probe_cache.unshare_net

        if detect_host_os() != HostOS.LINUX or shutil.which("unshare") is None:
            _probe_cache.unshare_net = False
            return False

        try:
            proc = await asyncio.create_subprocess_exec(
                "unshare",
                "--user",
                "--map-root-user",
                "--net",
                "--",
                "true",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=_PROBE_TIMEOUT_SECONDS)

            if proc.returncode == 0:
                logger.info("unshare --net available (network isolation enabled)")
                _probe_cache.unshare_net = True
            else:
                stderr_text = stderr.decode().strip() if stderr else ""
                logger.warning(
                    "unshare --net unavailable (network isolation disabled)",
                    extra={"exit_code": proc.returncode, "stderr": stderr_text[:200]},
                )
                _probe_cache.unshare_net = False
        except (OSError, TimeoutError) as e:
            logger.warning(
                "unshare probe failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            _probe_cache.unshare_net = False

        return _probe_cache.unshare_net
