"""Constants for compile-sandbox configuration and limits."""

from typing import Final

# ============================================================================
# Concurrency Gate
# ============================================================================

DEFAULT_MAX_CONCURRENT_JOBS: Final[int] = 4
"""Default number of compile/run jobs allowed in flight at once."""

DEFAULT_MAX_QUEUE_LENGTH: Final[int] = 32
"""Default number of requests allowed to wait for a slot."""

DEFAULT_QUEUE_TIMEOUT_SECONDS: Final[float] = 30.0
"""How long a queued request waits for a slot before BusyError."""

# ============================================================================
# Timeouts
# ============================================================================

DEFAULT_JOB_TIMEOUT_SECONDS: Final[float] = 20.0
"""Wall-clock budget for a whole job (compile + run)."""

DEFAULT_COMPILE_TIMEOUT_SECONDS: Final[float] = 15.0
"""Per-stage cap for the compiler process."""

DEFAULT_RUN_TIMEOUT_SECONDS: Final[float] = 5.0
"""Per-stage cap for the compiled program."""

MAX_TIMEOUT_SECONDS: Final[float] = 300.0
"""Upper bound for any configured timeout (5 minutes)."""

OUTPUT_DRAIN_GRACE_SECONDS: Final[float] = 0.5
"""Time allowed for pipe readers to hit EOF after the direct child exits.
Grandchildren that inherited the pipes are killed once this expires."""

PROCESS_EXIT_POLL_SECONDS: Final[float] = 0.01
"""How often a waiter checks whether the direct child has been reaped."""

KILL_TERM_TIMEOUT_SECONDS: Final[float] = 0.5
"""Wait after SIGTERM to the process group before SIGKILL."""

KILL_WAIT_TIMEOUT_SECONDS: Final[float] = 2.0
"""Wait after SIGKILL before giving up on reaping."""

# Workspace removal retries (a straggler may still be writing when rmtree runs)
WORKSPACE_REMOVE_MAX_ATTEMPTS: Final[int] = 3
WORKSPACE_REMOVE_RETRY_MIN_SECONDS: Final[float] = 0.01
WORKSPACE_REMOVE_RETRY_MAX_SECONDS: Final[float] = 0.2

# ============================================================================
# Input and Output Limits
# ============================================================================

MAX_SOURCE_SIZE: Final[int] = 1024 * 1024  # 1MB
"""Default maximum size in bytes for source text."""

MAX_OUTPUT_SIZE: Final[int] = 1_000_000  # 1MB
"""Default per-stream cap for captured stdout/stderr in bytes."""

READ_CHUNK_SIZE: Final[int] = 64 * 1024
"""Pipe read size; matches the Linux default pipe buffer."""

MAX_DISPLAY_NAME_LENGTH: Final[int] = 64
"""Longest sanitized display name echoed back to clients."""

# ============================================================================
# Toolchain
# ============================================================================

DEFAULT_COMPILER: Final[str] = "g++"
"""Compiler binary, resolved via PATH."""

DEFAULT_COMPILER_FLAGS: Final[tuple[str, ...]] = ("-std=c++17",)
"""Fixed, minimal flag set passed before the output/source arguments."""

SOURCE_FILENAME: Final[str] = "main.cpp"
"""Name of the source file inside every workspace (never client-controlled)."""

EXECUTABLE_FILENAME: Final[str] = "main"
"""Name of the compiled artifact inside every workspace."""

WORKSPACE_DIR_PREFIX: Final[str] = "job-"
"""Prefix of per-job directories; the orphan sweep only touches these."""

WORKSPACE_ROOT_DIRNAME: Final[str] = "compile-sandbox"
"""Directory under the system temp dir used when no root is configured."""

# ============================================================================
# Resource Limits (rlimits)
# ============================================================================

DEFAULT_RUN_MEMORY_LIMIT_MB: Final[int] = 256
"""Address-space limit for the compiled program."""

DEFAULT_RUN_CPU_SECONDS: Final[int] = 10
"""CPU time limit for the compiled program (backstop for the wall-clock deadline)."""

DEFAULT_RUN_MAX_FILE_SIZE_MB: Final[int] = 16
"""Largest file the program may write inside its workspace."""

DEFAULT_COMPILE_MEMORY_LIMIT_MB: Final[int] = 2048
"""Address-space limit for the compiler (template-heavy code needs headroom)."""

DEFAULT_COMPILE_MAX_FILE_SIZE_MB: Final[int] = 256
"""Largest object file or executable the compiler may write."""

# ============================================================================
# AI collaborator
# ============================================================================

DEFAULT_GEMINI_MODEL: Final[str] = "gemini-1.5-flash"
"""Model used when none is configured."""

# ============================================================================
# HTTP server
# ============================================================================

DEFAULT_HTTP_HOST: Final[str] = "127.0.0.1"
DEFAULT_HTTP_PORT: Final[int] = 3001
MAX_REQUEST_BODY_BYTES: Final[int] = 10 * 1024 * 1024  # 10MB
"""Request body limit, as in the original JSON body parser."""

DISCONNECT_POLL_INTERVAL_SECONDS: Final[float] = 0.25
"""How often a pending /api/compile request checks for client disconnect."""
