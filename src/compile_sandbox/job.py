"""Job record and its state machine.

A Job is owned by exactly one task (the one running JobController.execute)
from creation until it reaches a terminal state; only that task mutates it.
After that it is read-only and handed to the result reporter.

State graph:

    QUEUED ──admitted──▶ PREPARING ──workspace──▶ COMPILING ──exit 0──▶ RUNNING
                              │                      │                    │
                              ├─▶ ABORTED            ├─▶ COMPILE_FAILED   ├─▶ COMPLETED
                              └─▶ TIMED_OUT          ├─▶ TIMED_OUT        ├─▶ RUN_FAILED
                                                     └─▶ ABORTED          ├─▶ TIMED_OUT
                                                                          └─▶ ABORTED

Any non-terminal state may also go to ABORTED. Terminal states have no
outgoing edges.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Final
from uuid import uuid4

from compile_sandbox import constants
from compile_sandbox._logging import get_logger
from compile_sandbox.exceptions import InvalidStateTransitionError
from compile_sandbox.models import CompileRequest, ErrorKind, JobState, Stage
from compile_sandbox.subprocess_utils import CappedOutput

logger = get_logger(__name__)

TERMINAL_STATES: Final[frozenset[JobState]] = frozenset(
    {
        JobState.COMPLETED,
        JobState.COMPILE_FAILED,
        JobState.RUN_FAILED,
        JobState.TIMED_OUT,
        JobState.ABORTED,
    }
)

VALID_STATE_TRANSITIONS: Final[dict[JobState, frozenset[JobState]]] = {
    JobState.QUEUED: frozenset({JobState.PREPARING, JobState.ABORTED}),
    JobState.PREPARING: frozenset({JobState.COMPILING, JobState.TIMED_OUT, JobState.ABORTED}),
    JobState.COMPILING: frozenset(
        {JobState.RUNNING, JobState.COMPILE_FAILED, JobState.TIMED_OUT, JobState.ABORTED}
    ),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.RUN_FAILED, JobState.TIMED_OUT, JobState.ABORTED}),
    **{state: frozenset() for state in TERMINAL_STATES},
}

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def new_job_id() -> str:
    """Opaque, process-wide unique job id (128 random bits, hex)."""
    return uuid4().hex


def sanitize_display_name(logical_name: str | None) -> str | None:
    """Reduce a client-supplied file name to a short, inert display string.

    Only the stem of the last path component survives, restricted to
    ``[A-Za-z0-9._-]``. The result is never used to build a path.
    """
    if not logical_name:
        return None
    # Strip directories in both separator conventions
    base = PureWindowsPath(PurePosixPath(logical_name).name).name
    stem = PurePosixPath(base).stem if "." in base.lstrip(".") else base
    cleaned = _UNSAFE_NAME_CHARS.sub("_", stem).strip("._")
    return cleaned[: constants.MAX_DISPLAY_NAME_LENGTH] or None


@dataclass(eq=False)
class Job:
    """One compile-and-run attempt.

    Output buffers are capped at max_output_bytes each. run_stdout and
    run_stderr stay None until the run stage starts, so "no run phase" is
    distinguishable from "ran and printed nothing".
    """

    request: CompileRequest
    max_output_bytes: int = constants.MAX_OUTPUT_SIZE
    id: str = field(default_factory=new_job_id)
    state: JobState = JobState.QUEUED
    display_name: str | None = None

    workspace_path: Path | None = None

    compile_stdout: CappedOutput = field(init=False)
    compile_stderr: CappedOutput = field(init=False)
    compile_exit_code: int | None = None
    run_stdout: CappedOutput | None = None
    run_stderr: CappedOutput | None = None
    run_exit_code: int | None = None

    error_kind: ErrorKind | None = None
    error_message: str | None = None
    timed_out_stage: Stage | None = None

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: float | None = None  # time.monotonic()
    deadline: float | None = None  # time.monotonic()
    finished_at: float | None = None  # time.monotonic()
    history: list[JobState] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.compile_stdout = CappedOutput(self.max_output_bytes)
        self.compile_stderr = CappedOutput(self.max_output_bytes)
        if self.display_name is None:
            self.display_name = sanitize_display_name(self.request.logical_name)
        self.history.append(self.state)

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: JobState) -> None:
        """Move to new_state, validating the edge.

        Raises:
            InvalidStateTransitionError: Edge not in VALID_STATE_TRANSITIONS
        """
        allowed = VALID_STATE_TRANSITIONS[self.state]
        if new_state not in allowed:
            raise InvalidStateTransitionError(
                f"Invalid state transition: {self.state.value} -> {new_state.value}",
                context={
                    "job_id": self.id,
                    "current_state": self.state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in allowed),
                },
            )
        old_state = self.state
        self.state = new_state
        self.history.append(new_state)
        if new_state in TERMINAL_STATES:
            self.finished_at = time.monotonic()
        logger.debug(
            "Job state transition",
            extra={"job_id": self.id, "old_state": old_state.value, "new_state": new_state.value},
        )

    def fail(self, new_state: JobState, kind: ErrorKind, message: str | None = None) -> None:
        """Transition to a terminal failure state and record why."""
        self.transition(new_state)
        self.error_kind = kind
        self.error_message = message

    # -------------------------------------------------------------------------
    # Deadline
    # -------------------------------------------------------------------------

    def start_clock(self, timeout_seconds: float) -> None:
        """Fix started_at and deadline; called once on admission."""
        self.started_at = time.monotonic()
        self.deadline = self.started_at + timeout_seconds

    def remaining(self) -> float:
        """Seconds left before the deadline (<= 0 when expired, inf if unset)."""
        if self.deadline is None:
            return float("inf")
        return self.deadline - time.monotonic()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None:
            return None
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return round((end - self.started_at) * 1000)

    @property
    def run_started(self) -> bool:
        return self.run_stdout is not None
