"""Data models for compile-sandbox."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobState(str, Enum):
    """Lifecycle states of a compile-and-run job."""

    QUEUED = "queued"
    PREPARING = "preparing"
    COMPILING = "compiling"
    COMPILE_FAILED = "compile_failed"
    RUNNING = "running"
    COMPLETED = "completed"
    RUN_FAILED = "run_failed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


class Stage(str, Enum):
    """Pipeline stage a response refers to."""

    COMPILE = "compile"
    RUN = "run"


class ErrorKind(str, Enum):
    """Classification of a non-successful job outcome.

    compile_failed / run_failed / timed_out mean "your code is wrong";
    resource_error / toolchain_unavailable mean "the service is broken";
    aborted covers cancellation and unexpected internal faults.
    """

    RESOURCE_ERROR = "resource_error"
    TOOLCHAIN_UNAVAILABLE = "toolchain_unavailable"
    COMPILE_FAILED = "compile_failed"
    RUN_FAILED = "run_failed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


class CompileRequest(BaseModel):
    """Immutable input for one compile-and-run job."""

    model_config = ConfigDict(frozen=True)

    source_text: str = Field(description="Raw program text")
    logical_name: str | None = Field(
        default=None,
        description="Client-supplied name; only used to derive a display name, never a path",
    )


class CompileResponse(BaseModel):
    """Stable response contract produced by the result reporter."""

    ok: bool = Field(description="True iff the program compiled, ran and exited 0")
    stage: Stage = Field(description="Last pipeline stage the job reached")
    stdout: str = Field(description="Program stdout (compiler stdout if the run stage never started)")
    stderr: str = Field(description="Program stderr (compiler diagnostics if the run stage never started)")
    exit_code: int | None = Field(default=None, description="Exit code of the last process that exited")
    truncated: bool = Field(default=False, description="Some captured output was dropped at the size cap")
    error: ErrorKind | None = Field(default=None, description="Outcome classification when ok is False")
    message: str | None = Field(default=None, description="Human-readable explanation for operational errors")
    job_id: str = Field(description="Process-wide unique job identifier")
    state: JobState = Field(description="Terminal job state")
    display_name: str | None = Field(default=None, description="Sanitized logical name")
    duration_ms: int | None = Field(default=None, description="Wall-clock time from admission to terminal state")


class SuggestionKind(str, Enum):
    """Category of an AI review suggestion."""

    ERROR = "ERROR"
    WARNING = "WARNING"
    STYLE = "STYLE"
    PERFORMANCE = "PERFORMANCE"
    SECURITY = "SECURITY"


class Suggestion(BaseModel):
    """One suggestion returned by the AI collaborator."""

    kind: SuggestionKind = Field(default=SuggestionKind.WARNING, alias="type")
    message: str
    line: int | None = None
    fix: str | None = None
    explanation: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: object) -> object:
        """Models answer "error" or "Warning" as often as "ERROR"; unknown kinds become WARNING."""
        if isinstance(value, str):
            upper = value.strip().upper()
            return upper if upper in SuggestionKind.__members__ else SuggestionKind.WARNING
        return value


class GeneratedCode(BaseModel):
    """Code produced by the AI collaborator from a free-form prompt."""

    code: str = ""
    explanation: str = ""
