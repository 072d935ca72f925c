"""OS resource limits applied to the compiler and to the executed program.

The limits are installed in the child between fork() and exec() via
preexec_fn, so they bind the process and everything it spawns. They back
up the wall-clock deadline enforced by the toolchain invoker and never
replace it:

- the program's CPU limit is raised past its stage cap, so a plain spin
  loop always ends as a timeout rather than a kernel kill
- the CPU soft limit sits one second below the hard one, so a program that
  burns CPU on several threads gets SIGXCPU first and can be told apart
  from one that was killed for another reason
- the compiler gets memory and file-size ceilings only; its stage deadline
  already bounds its time
"""

from __future__ import annotations

import math
import resource
from collections.abc import Callable
from dataclasses import dataclass

from compile_sandbox.config import SandboxConfig

_MB = 1024 * 1024

# Seconds between SIGXCPU (soft) and SIGKILL (hard)
_CPU_HARD_GRACE = 1


def _mb(value: int | None) -> int | None:
    return value * _MB if value else None


@dataclass(frozen=True)
class ProcessLimits:
    """rlimit values for one child process (None = leave inherited limit)."""

    memory_bytes: int | None = None
    cpu_seconds: int | None = None
    file_size_bytes: int | None = None
    max_processes: int | None = None

    @classmethod
    def for_program(cls, config: SandboxConfig) -> ProcessLimits:
        cpu_seconds = config.run_cpu_seconds
        if cpu_seconds is not None:
            # Never fire before the run stage's own deadline
            cpu_seconds = max(cpu_seconds, math.ceil(config.run_timeout_seconds) + 1)
        return cls(
            memory_bytes=_mb(config.run_memory_limit_mb),
            cpu_seconds=cpu_seconds,
            file_size_bytes=_mb(config.run_max_file_size_mb),
            max_processes=config.run_max_processes,
        )

    @classmethod
    def for_compiler(cls, config: SandboxConfig) -> ProcessLimits:
        return cls(
            memory_bytes=_mb(config.compile_memory_limit_mb),
            file_size_bytes=_mb(config.compile_max_file_size_mb),
        )

    def as_rlimits(self) -> list[tuple[int, int]]:
        """(resource, value) pairs to install, core dumps always disabled."""
        pairs: list[tuple[int, int]] = [(resource.RLIMIT_CORE, 0)]
        if self.memory_bytes is not None:
            pairs.append((resource.RLIMIT_AS, self.memory_bytes))
        if self.cpu_seconds is not None:
            pairs.append((resource.RLIMIT_CPU, self.cpu_seconds))
        if self.file_size_bytes is not None:
            pairs.append((resource.RLIMIT_FSIZE, self.file_size_bytes))
        if self.max_processes is not None:
            pairs.append((resource.RLIMIT_NPROC, self.max_processes))
        return pairs

    def preexec_fn(self) -> Callable[[], None]:
        """Build the hook run in the child before exec().

        Never raises a hard limit above the inherited one (unprivileged
        processes can't).
        """
        pairs = self.as_rlimits()

        def _apply() -> None:
            for res, value in pairs:
                try:
                    _soft, hard = resource.getrlimit(res)
                    wanted = value + _CPU_HARD_GRACE if res == resource.RLIMIT_CPU else value
                    new_hard = wanted if hard == resource.RLIM_INFINITY else min(wanted, hard)
                    resource.setrlimit(res, (min(value, new_hard), new_hard))
                except (ValueError, OSError):
                    pass  # Limit unsupported on this platform (e.g. RLIMIT_AS on macOS)

        return _apply
