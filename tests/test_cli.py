"""Tests for the csbx command-line interface."""

import json
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from compile_sandbox.cli import (
    EXIT_CLI_ERROR,
    EXIT_SANDBOX_ERROR,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    exit_code_for,
    main,
    run_code,
)
from compile_sandbox.config import SandboxConfig
from compile_sandbox.models import CompileResponse, ErrorKind, JobState, Stage


def _response(**kwargs) -> CompileResponse:  # noqa: ANN003
    defaults = {
        "ok": False,
        "stage": Stage.RUN,
        "stdout": "",
        "stderr": "",
        "job_id": "0" * 32,
        "state": JobState.RUN_FAILED,
    }
    return CompileResponse(**{**defaults, **kwargs})


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def isolated_tempdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Default workspace root lives under the temp dir; keep it per-test."""
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))


# ============================================================================
# Exit codes
# ============================================================================


class TestExitCodeFor:
    def test_success(self) -> None:
        assert exit_code_for(_response(ok=True, exit_code=0, state=JobState.COMPLETED)) == EXIT_SUCCESS

    def test_timeout(self) -> None:
        assert exit_code_for(_response(error=ErrorKind.TIMED_OUT, state=JobState.TIMED_OUT)) == EXIT_TIMEOUT

    @pytest.mark.parametrize("kind", [ErrorKind.RESOURCE_ERROR, ErrorKind.TOOLCHAIN_UNAVAILABLE, ErrorKind.ABORTED])
    def test_service_failures(self, kind: ErrorKind) -> None:
        assert exit_code_for(_response(error=kind, state=JobState.ABORTED)) == EXIT_SANDBOX_ERROR

    def test_program_exit_code_passes_through(self) -> None:
        assert exit_code_for(_response(error=ErrorKind.RUN_FAILED, exit_code=42)) == 42

    def test_signal(self) -> None:
        assert exit_code_for(_response(error=ErrorKind.RUN_FAILED, exit_code=-9)) == 137

    def test_compile_failure(self) -> None:
        response = _response(error=ErrorKind.COMPILE_FAILED, stage=Stage.COMPILE, exit_code=1)
        assert exit_code_for(response) == 1


# ============================================================================
# run_code
# ============================================================================


async def test_run_code_prints_program_output(fake_config: SandboxConfig, capsys: pytest.CaptureFixture[str]) -> None:
    code = await run_code("print('from program')\n", "p.cpp", fake_config, json_output=False, quiet=True)
    assert code == EXIT_SUCCESS
    assert capsys.readouterr().out == "from program\n"


async def test_run_code_json(fake_config: SandboxConfig, capsys: pytest.CaptureFixture[str]) -> None:
    code = await run_code("import sys\nsys.exit(7)\n", None, fake_config, json_output=True, quiet=True)
    assert code == 7
    data = json.loads(capsys.readouterr().out)
    assert data["state"] == "run_failed"
    assert data["exit_code"] == 7


async def test_run_code_compile_error_goes_to_stderr(
    fake_config: SandboxConfig, capsys: pytest.CaptureFixture[str]
) -> None:
    code = await run_code("#error expected ';'\n", None, fake_config, json_output=False, quiet=True)
    assert code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "expected ';'" in captured.err


async def test_run_code_timeout(fake_config: SandboxConfig, capsys: pytest.CaptureFixture[str]) -> None:
    config = fake_config.model_copy(update={"run_timeout_seconds": 0.5})
    code = await run_code("while True:\n    pass\n", None, config, json_output=False, quiet=True)
    assert code == EXIT_TIMEOUT
    assert "timed out" in capsys.readouterr().err


# ============================================================================
# Command line
# ============================================================================


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "compile-sandbox" in result.output


def test_run_without_code_is_usage_error(runner: CliRunner) -> None:
    result = runner.invoke(main, ["run"])
    assert result.exit_code == EXIT_CLI_ERROR
    assert "No code provided" in result.output


def test_run_missing_file(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(main, ["run", str(tmp_path / "nope.cpp")])
    assert result.exit_code == EXIT_CLI_ERROR
    assert "File not found" in result.output


def test_run_empty_code(runner: CliRunner) -> None:
    result = runner.invoke(main, ["run", "-c", "   "])
    assert result.exit_code == EXIT_CLI_ERROR


def test_run_invalid_timeout(runner: CliRunner) -> None:
    result = runner.invoke(main, ["run", "-t", "0", "-c", "int main(){}"])
    assert result.exit_code == EXIT_CLI_ERROR


def test_run_with_missing_compiler(runner: CliRunner) -> None:
    result = runner.invoke(main, ["run", "--compiler", "no-such-compiler-xyz", "-q", "-c", "int main(){}"])
    assert result.exit_code == EXIT_SANDBOX_ERROR
    assert "Compiler unavailable" in result.output
