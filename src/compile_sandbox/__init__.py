"""compile-sandbox: compile and run untrusted single-file C++ programs.

The backend of a browser-based C++ editor. Every request becomes a Job that
gets its own throwaway workspace, a bounded compiler process and a bounded
program process; the workspace is removed on every exit path.

Quick Start:
    ```python
    from compile_sandbox import CompileService

    async with CompileService() as service:
        response = await service.run(
            '#include <iostream>\\nint main() { std::cout << "hi"; }',
            logical_name="hello.cpp",
        )
        print(response.ok, response.stdout)  # True hi
    ```

With Configuration:
    ```python
    from compile_sandbox import CompileService, SandboxConfig

    config = SandboxConfig(
        max_concurrent_jobs=8,
        admission_mode="reject",
        run_timeout_seconds=2,
    )
    async with CompileService(config) as service:
        response = await service.run(source)
    ```

HTTP API:
    csbx serve --port 3001

Requirements:
    - g++ (or another compiler set via SandboxConfig.compiler) on PATH
    - Python 3.12+

For the AI review endpoints:
    pip install compile-sandbox[ai]
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("compile-sandbox")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

from compile_sandbox.admission import AdmissionGate, GateSnapshot  # noqa: E402
from compile_sandbox.config import SandboxConfig  # noqa: E402
from compile_sandbox.exceptions import (  # noqa: E402
    BusyError,
    InputValidationError,
    InvalidStateTransitionError,
    PermanentError,
    ResourceError,
    ReviewError,
    SandboxDependencyError,
    SandboxError,
    SourceValidationError,
    ToolchainUnavailableError,
    TransientError,
)
from compile_sandbox.models import (  # noqa: E402
    CompileRequest,
    CompileResponse,
    ErrorKind,
    GeneratedCode,
    JobState,
    Stage,
    Suggestion,
    SuggestionKind,
)
from compile_sandbox.service import CompileService  # noqa: E402

__all__ = [
    "AdmissionGate",
    "BusyError",
    "CompileRequest",
    "CompileResponse",
    "CompileService",
    "ErrorKind",
    "GateSnapshot",
    "GeneratedCode",
    "InputValidationError",
    "InvalidStateTransitionError",
    "JobState",
    "PermanentError",
    "ResourceError",
    "ReviewError",
    "SandboxConfig",
    "SandboxDependencyError",
    "SandboxError",
    "SourceValidationError",
    "Stage",
    "Suggestion",
    "SuggestionKind",
    "ToolchainUnavailableError",
    "TransientError",
    "__version__",
]
