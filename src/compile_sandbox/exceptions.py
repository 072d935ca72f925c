"""Exception hierarchy for compile-sandbox.

All exceptions inherit from SandboxError base class.

Hierarchy:
    SandboxError (base)
    ├── TransientError (retryable marker base)
    │   ├── ResourceError               ← workspace could not be allocated
    │   └── BusyError                   ← admission gate full / queue wait expired
    ├── PermanentError (non-retryable marker base)
    │   ├── ToolchainUnavailableError   ← compiler or program binary unspawnable
    │   └── InvalidStateTransitionError ← job state machine misuse (internal bug)
    ├── InputValidationError (caller-bug marker base)
    │   └── SourceValidationError       ← empty / NUL bytes / over size cap
    ├── SandboxDependencyError          ← optional dependency missing
    └── ReviewError                     ← AI collaborator unavailable

Compile failures, non-zero program exits and timeouts are NOT exceptions:
they are expected job outcomes reported by the result reporter.
"""

from __future__ import annotations

from typing import Any


class SandboxError(Exception):
    """Base exception for all sandbox errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class SandboxDependencyError(SandboxError):
    """Optional dependency missing.

    Raised when an optional dependency is required but not installed.
    For example, google-generativeai is required for the Gemini review backend.
    """


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(SandboxError):
    """Base for transient errors that may succeed on retry.

    Retrying is always a client decision; the pipeline never retries on its own.
    """


class PermanentError(SandboxError):
    """Base for permanent errors that won't succeed on retry.

    These indicate a configuration problem on the host (missing or
    unlaunchable compiler) or a programming error.
    """


# =============================================================================
# Transient Errors
# =============================================================================


class ResourceError(TransientError):
    """Workspace allocation failed.

    Raised when the per-job directory cannot be created (filesystem full,
    unwritable workspace root, inode exhaustion).
    """


class BusyError(TransientError):
    """Admission gate at capacity.

    Raised when the gate rejects a request immediately (reject mode or a full
    queue), or when a queued request's wait deadline expires.

    Attributes:
        in_flight: Jobs holding a slot when the request was turned away
        queued: Requests waiting in the queue at that moment
    """

    def __init__(
        self,
        message: str,
        *,
        in_flight: int,
        queued: int,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"in_flight": in_flight, "queued": queued})
        super().__init__(message, ctx)
        self.in_flight = in_flight
        self.queued = queued


# =============================================================================
# Permanent Errors
# =============================================================================


class ToolchainUnavailableError(PermanentError):
    """Compiler or compiled program could not be spawned.

    Distinct from a compile failure: the user's code was never looked at.
    Covers a missing binary, permission denied and other exec() failures.

    Attributes:
        binary: The executable that failed to start
    """

    def __init__(self, message: str, binary: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"binary": binary})
        super().__init__(message, ctx)
        self.binary = binary


class InvalidStateTransitionError(PermanentError):
    """A job was asked to move along an edge its state machine does not have.

    Terminal states have no outgoing edges, so this is also what a second
    attempt to finish a job raises.
    """


# =============================================================================
# Input Validation Errors
# =============================================================================


class InputValidationError(SandboxError):
    """Base for input validation errors (caller bugs, not pipeline failures)."""


class SourceValidationError(InputValidationError):
    """Source text rejected before a job was created.

    Raised when the source is empty, whitespace-only, contains NUL bytes,
    or exceeds the configured size cap.
    """


# =============================================================================
# AI collaborator
# =============================================================================


class ReviewError(SandboxError):
    """AI review backend is not configured or the call itself failed.

    Malformed replies never raise this; they degrade to empty results.
    """
