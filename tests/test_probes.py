"""Tests for cached system probes."""

import shutil
import sys
from pathlib import Path

import pytest

from compile_sandbox import system_probes
from compile_sandbox.config import SandboxConfig
from compile_sandbox.system_probes import probe_toolchain, probe_unshare_net
from compile_sandbox.toolchain import ToolchainInvoker


async def test_probe_existing_binary() -> None:
    info = await probe_toolchain(sys.executable)
    assert info.available
    assert info.path is not None
    assert info.version is not None and "Python" in info.version


async def test_probe_missing_binary() -> None:
    info = await probe_toolchain("no-such-compiler-xyz")
    assert not info.available
    assert info.path is None
    assert info.version is None


async def test_probe_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    first = await probe_toolchain(sys.executable)
    monkeypatch.setattr(shutil, "which", lambda _name: None)
    assert await probe_toolchain(sys.executable) is first


async def test_unshare_probe_returns_bool_and_caches() -> None:
    result = await probe_unshare_net()
    assert isinstance(result, bool)
    assert system_probes._probe_cache.unshare_net is result


async def test_unshare_probe_without_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(shutil, "which", lambda _name: None)
    assert await probe_unshare_net() is False


async def test_run_argv_falls_back_without_unshare(
    fake_config: SandboxConfig, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(shutil, "which", lambda _name: None)
    config = fake_config.model_copy(update={"isolate_network": True})
    assert await ToolchainInvoker(config).run_argv(tmp_path / "main") == [str(tmp_path / "main")]
