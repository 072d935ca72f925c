"""Command-line interface for compile-sandbox.

Usage:
    csbx run main.cpp                  # Compile and run a file
    csbx run -c 'int main(){}'         # Inline code
    cat main.cpp | csbx run -          # From stdin
    csbx run --json main.cpp | jq .    # Structured result
    csbx serve --port 3001             # HTTP API for the editor
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import NoReturn

import click

from compile_sandbox import __version__
from compile_sandbox._logging import configure_logging
from compile_sandbox.config import SandboxConfig
from compile_sandbox.exceptions import BusyError, InputValidationError, SandboxError
from compile_sandbox.models import CompileResponse, ErrorKind
from compile_sandbox.service import CompileService

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_SANDBOX_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def exit_code_for(response: CompileResponse) -> int:
    """Map a compile response to a process exit code.

    Program exit codes pass through (signals as 128+N, like a shell);
    timeouts are 124; service-side failures are 125.
    """
    if response.ok:
        return EXIT_SUCCESS
    if response.error == ErrorKind.TIMED_OUT:
        return EXIT_TIMEOUT
    if response.error in (ErrorKind.RESOURCE_ERROR, ErrorKind.TOOLCHAIN_UNAVAILABLE, ErrorKind.ABORTED):
        return EXIT_SANDBOX_ERROR
    if response.exit_code is None:
        return 1
    if response.exit_code < 0:
        return 128 - response.exit_code
    return response.exit_code or 1


def read_source(source: str | None, inline_code: str | None) -> tuple[str, str | None]:
    """Resolve the code to run and its display file name.

    Raises:
        click.UsageError: No code, unreadable file, or empty stdin
    """
    if inline_code:
        return inline_code, None
    if source == "-":
        if sys.stdin.isatty():
            raise click.UsageError("No input provided. Pipe code to stdin or use -c flag.")
        return sys.stdin.read(), None
    if source:
        path = Path(source)
        if not path.is_file():
            raise click.UsageError(f"File not found: {source}")
        try:
            return path.read_text(encoding="utf-8"), path.name
        except (OSError, UnicodeDecodeError) as e:
            raise click.UsageError(f"Cannot read {source}: {e}") from e
    raise click.UsageError("No code provided. Provide SOURCE argument or use -c flag.")


async def run_code(code: str, filename: str | None, config: SandboxConfig, json_output: bool, quiet: bool) -> int:
    """Compile and run through the full pipeline; return the CLI exit code."""
    try:
        async with CompileService(config) as service:
            response = await service.run(code, filename)
    except InputValidationError as e:
        click.echo(format_error("Invalid source", e.message), err=True)
        return EXIT_CLI_ERROR
    except BusyError as e:
        click.echo(format_error("Sandbox busy", e.message), err=True)
        return EXIT_SANDBOX_ERROR
    except SandboxError as e:
        click.echo(
            format_error(
                "Sandbox error",
                e.message,
                ["Check that the workspace directory is writable"],
            ),
            err=True,
        )
        return EXIT_SANDBOX_ERROR

    if json_output:
        click.echo(json.dumps(response.model_dump(mode="json"), indent=2))
        return exit_code_for(response)

    if response.stdout:
        click.echo(response.stdout, nl=False)
    if response.stderr:
        click.echo(response.stderr, nl=False, err=True)

    if response.error == ErrorKind.TOOLCHAIN_UNAVAILABLE:
        click.echo(
            format_error(
                "Compiler unavailable",
                response.message or "The compiler could not be started.",
                [f"Install {config.compiler} or pass --compiler"],
            ),
            err=True,
        )
    elif response.error == ErrorKind.TIMED_OUT:
        click.echo(
            format_error(
                "Execution timed out",
                response.message or "Time limit exceeded.",
                ["Increase timeout with -t/--timeout", "Check for infinite loops in your code"],
            ),
            err=True,
        )
    elif response.error in (ErrorKind.RESOURCE_ERROR, ErrorKind.ABORTED):
        click.echo(format_error("Sandbox error", response.message or "Job aborted."), err=True)

    if response.truncated and not quiet:
        click.echo(click.style("[output truncated]", fg="yellow"), err=True)
    if sys.stdout.isatty() and not quiet and response.ok:
        click.echo()
        click.echo(click.style(f"✓ Done in {response.duration_ms}ms", fg="green", dim=True), err=True)

    return exit_code_for(response)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", prog_name="compile-sandbox")
def main() -> None:
    """Compile and run single-file C++ programs in isolated workspaces."""


@main.command()
@click.argument("source", required=False)
@click.option("-c", "--code", "inline_code", help="Code to compile (alternative to SOURCE)")
@click.option("-t", "--timeout", type=float, default=20, show_default=True, help="Job timeout in seconds")
@click.option("--compiler", default="g++", show_default=True, help="Compiler binary")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress output")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def run(
    source: str | None,
    inline_code: str | None,
    timeout: float,
    compiler: str,
    json_output: bool,
    quiet: bool,
    verbose: bool,
) -> NoReturn:
    """Compile SOURCE with the configured compiler and run it.

    SOURCE can be:

    \b
      - File path:    csbx run main.cpp
      - Stdin:        cat main.cpp | csbx run -
    """
    configure_logging(level="DEBUG" if verbose else None, quiet=quiet)
    code, filename = read_source(source, inline_code)
    if not code.strip():
        raise click.UsageError("Empty code provided.")

    try:
        config = SandboxConfig(
            max_concurrent_jobs=1,
            job_timeout_seconds=timeout,
            compile_timeout_seconds=timeout,
            run_timeout_seconds=timeout,
            compiler=compiler,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    sys.exit(asyncio.run(run_code(code, filename, config, json_output, quiet)))


@main.command()
@click.option("--host", default=None, help="Bind address (default from COMPILE_SANDBOX_HOST)")
@click.option("--port", type=int, default=None, help="Port (default from COMPILE_SANDBOX_PORT)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def serve(host: str | None, port: int | None, verbose: bool) -> None:
    """Start the HTTP API."""
    import uvicorn  # noqa: PLC0415

    from compile_sandbox.api import create_app  # noqa: PLC0415
    from compile_sandbox.settings import Settings  # noqa: PLC0415

    configure_logging(level="DEBUG" if verbose else "INFO")
    settings = Settings()
    app = create_app(settings)
    uvicorn.run(
        app,
        host=host or settings.host,
        port=port or settings.port,
        log_level="debug" if verbose else "info",
    )


if __name__ == "__main__":
    main()
