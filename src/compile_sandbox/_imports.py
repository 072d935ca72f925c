"""Lazy imports for optional dependencies."""

from __future__ import annotations

from typing import Any

from compile_sandbox.exceptions import SandboxDependencyError


def require_genai() -> Any:
    """Import google.generativeai or raise a helpful error.

    Returns:
        The google.generativeai module

    Raises:
        SandboxDependencyError: google-generativeai is not installed
    """
    try:
        import google.generativeai as genai  # noqa: PLC0415
    except ImportError as e:
        raise SandboxDependencyError(
            "google-generativeai is required for the Gemini review backend. "
            "Install with: pip install compile-sandbox[ai]"
        ) from e
    return genai
